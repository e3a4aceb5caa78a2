"""Typed records produced by decoding and reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Marker for metadata that no scanned log could supply.
UNAVAILABLE = "N/A"

STATUS_MATCHED = "matched"
STATUS_ORPHANED = "orphaned"

KIND_ASSET_REGISTERED = "AssetRegistered"
KIND_EVENT_LOGGED = "EventLogged"


@dataclass(frozen=True)
class RegistrationEvent:
    token_id: str
    asset_id: int
    timestamp: str
    block_number: int
    log_index: int
    transaction_hash: str

    kind = KIND_ASSET_REGISTERED

    @property
    def position(self) -> tuple[int, int]:
        return self.block_number, self.log_index

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "token_id": self.token_id,
            "asset_id": self.asset_id,
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "transaction_hash": self.transaction_hash,
        }


@dataclass(frozen=True)
class LoggedEvent:
    asset_id: int
    token_id: str
    event_index: int
    message: str
    timestamp: str
    block_number: int
    log_index: int
    transaction_hash: str

    kind = KIND_EVENT_LOGGED

    @property
    def position(self) -> tuple[int, int]:
        return self.block_number, self.log_index

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "asset_id": self.asset_id,
            "token_id": self.token_id,
            "event_index": self.event_index,
            "message": self.message,
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "transaction_hash": self.transaction_hash,
        }


@dataclass(frozen=True)
class TimelineEntry:
    event_index: int
    message: str
    status: str
    timestamp: str = UNAVAILABLE
    block_number: int | str = UNAVAILABLE
    transaction_hash: str = UNAVAILABLE

    @classmethod
    def matched(cls, event_index: int, message: str, log: LoggedEvent) -> TimelineEntry:
        return cls(
            event_index=event_index,
            message=message,
            status=STATUS_MATCHED,
            timestamp=log.timestamp,
            block_number=log.block_number,
            transaction_hash=log.transaction_hash,
        )

    @classmethod
    def orphaned(cls, event_index: int, message: str) -> TimelineEntry:
        return cls(event_index=event_index, message=message, status=STATUS_ORPHANED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_index": self.event_index,
            "message": self.message,
            "status": self.status,
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
        }


@dataclass
class ReconciledTimeline:
    asset_id: int
    event_count: int
    token_id: str | None = None
    entries: list[TimelineEntry] = field(default_factory=list)
    skipped_indices: list[dict[str, Any]] = field(default_factory=list)
    pending_logs: list[LoggedEvent] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.skipped_indices and len(self.entries) == self.event_count

    @property
    def orphaned_count(self) -> int:
        return sum(1 for entry in self.entries if entry.status == STATUS_ORPHANED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "token_id": self.token_id,
            "event_count": self.event_count,
            "entries": [entry.to_dict() for entry in self.entries],
            "orphaned": self.orphaned_count,
            "skipped_indices": list(self.skipped_indices),
            "pending_logs": [log.to_dict() for log in self.pending_logs],
        }
