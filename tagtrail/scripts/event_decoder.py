"""Raw log entry -> typed registry event."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable

from abi_codec import EventDeclaration, decode_log
from error_map import DecodeError
from log_setup import setup_logger
from quantity import parse_quantity
from registry_config import ContractDescriptor
from registry_models import KIND_ASSET_REGISTERED, KIND_EVENT_LOGGED, LoggedEvent, RegistrationEvent

logger = setup_logger(__name__)

RegistryEvent = RegistrationEvent | LoggedEvent


@dataclass(frozen=True)
class EventSignature:
    kind: str
    declaration: EventDeclaration


def build_signature_table(descriptor: ContractDescriptor) -> dict[str, EventSignature]:
    """Map each event's topic0 to its kind and parsed declaration."""
    table: dict[str, EventSignature] = {}
    for kind in (KIND_ASSET_REGISTERED, KIND_EVENT_LOGGED):
        declaration = descriptor.event(kind)
        table[declaration.topic0] = EventSignature(kind=kind, declaration=declaration)
    return table


def iso_timestamp(seconds: int) -> str:
    return datetime.fromtimestamp(int(seconds), UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _log_meta(raw_log: dict[str, Any]) -> tuple[int, int, str]:
    tx_hash = raw_log.get("transactionHash")
    if not isinstance(tx_hash, str):
        raise ValueError("log has no transactionHash")
    return parse_quantity(raw_log.get("blockNumber")), parse_quantity(raw_log.get("logIndex", 0)), tx_hash.lower()


def decode(raw_log: Any, signature_table: dict[str, EventSignature]) -> RegistryEvent:
    if not isinstance(raw_log, dict):
        raise DecodeError("log entry must be an object")
    topics = raw_log.get("topics")
    if not isinstance(topics, list) or not topics or not isinstance(topics[0], str):
        raise DecodeError("log entry has no topic0")

    signature = signature_table.get(topics[0].lower())
    if signature is None:
        raise DecodeError(f"unknown event topic {topics[0]}", details={"topic0": topics[0]})

    try:
        args = decode_log(signature.declaration, topics, str(raw_log.get("data", "0x")))
        block_number, log_index, tx_hash = _log_meta(raw_log)
        timestamp = iso_timestamp(args["timestamp"])
        if signature.kind == KIND_ASSET_REGISTERED:
            return RegistrationEvent(
                token_id=args["tokenId"],
                asset_id=args["assetId"],
                timestamp=timestamp,
                block_number=block_number,
                log_index=log_index,
                transaction_hash=tx_hash,
            )
        return LoggedEvent(
            asset_id=args["assetId"],
            token_id=args["tokenId"],
            event_index=args["eventIndex"],
            message=str(args["message"]),
            timestamp=timestamp,
            block_number=block_number,
            log_index=log_index,
            transaction_hash=tx_hash,
        )
    except (ValueError, KeyError, OverflowError, OSError) as err:
        raise DecodeError(
            f"failed to decode {signature.kind} log: {err}",
            details={"transaction_hash": raw_log.get("transactionHash")},
        ) from err


def decode_logs(
    raw_logs: Iterable[Any],
    signature_table: dict[str, EventSignature],
) -> tuple[list[RegistryEvent], list[dict[str, Any]]]:
    """Decode what can be decoded; failing entries are dropped and reported."""
    events: list[RegistryEvent] = []
    failures: list[dict[str, Any]] = []
    for raw_log in raw_logs:
        try:
            events.append(decode(raw_log, signature_table))
        except DecodeError as err:
            logger.warning("dropping log: %s", err.message)
            failures.append(err.to_dict())
    return events, failures
