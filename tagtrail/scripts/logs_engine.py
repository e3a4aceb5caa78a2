"""Chunked eth_getLogs scanning over endpoint-sized block windows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from abi_codec import EventDeclaration, encode_topic, parse_event_declaration
from error_map import RegistryError, ScanWindowError, ValidationError
from log_setup import setup_logger
from quantity import parse_block_bound, parse_quantity, to_hex_quantity

logger = setup_logger(__name__)

DEFAULT_WINDOW_SIZE = 500


class LogsProvider(Protocol):
    def get_block_number(self) -> int: ...

    def get_logs(self, logs_filter: dict[str, Any]) -> list[dict[str, Any]]: ...


@dataclass
class ScanResult:
    logs: list[dict[str, Any]] = field(default_factory=list)
    failed_windows: list[ScanWindowError] = field(default_factory=list)
    from_block: int = 0
    to_block: int = 0
    window_size: int = DEFAULT_WINDOW_SIZE
    attempted_windows: int = 0
    deduped_logs: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed_windows

    def summary(self) -> dict[str, Any]:
        return {
            "attempted_windows": self.attempted_windows,
            "successful_windows": self.attempted_windows - len(self.failed_windows),
            "failed_windows": len(self.failed_windows),
            "deduped_logs": self.deduped_logs,
            "returned_logs": len(self.logs),
            "requested_range": {
                "from_block": self.from_block,
                "to_block": self.to_block,
                "blocks": max(0, self.to_block - self.from_block + 1),
            },
            "window_size": self.window_size,
        }


def partition_windows(from_block: int, to_block: int, window_size: int) -> list[tuple[int, int]]:
    """Split ``[from_block, to_block]`` into closed windows of at most ``window_size`` blocks."""
    if isinstance(window_size, bool) or not isinstance(window_size, int) or window_size <= 0:
        raise ValidationError("window_size must be a positive integer")
    if from_block > to_block:
        return []
    windows: list[tuple[int, int]] = []
    cursor = from_block
    while cursor <= to_block:
        window_end = min(cursor + window_size - 1, to_block)
        windows.append((cursor, window_end))
        cursor = window_end + 1
    return windows


def build_topics(declaration: EventDeclaration, indexed_filters: dict[str, Any] | None) -> list[Any]:
    """topic0 followed by one slot per indexed param; ``None`` slots match anything.

    Trailing wildcard slots are dropped.
    """
    filters = dict(indexed_filters or {})
    indexed_names = {p.name for p in declaration.indexed_params}
    unknown = sorted(set(filters) - indexed_names)
    if unknown:
        raise ValidationError(
            f"{declaration.name} has no indexed field(s) {unknown}",
            details={"indexed_fields": sorted(indexed_names)},
        )

    topics: list[Any] = [declaration.topic0]
    for param in declaration.indexed_params:
        value = filters.get(param.name)
        if value is None:
            topics.append(None)
            continue
        try:
            topics.append(encode_topic(param.abi_type, value))
        except ValueError as err:
            raise ValidationError(f"invalid filter value for {param.name}: {err}") from err
    while topics and topics[-1] is None:
        topics.pop()
    return topics


def _log_key(log_item: Any) -> tuple[Any, Any, Any]:
    if not isinstance(log_item, dict):
        return ("raw", str(log_item), None)
    return (
        log_item.get("blockNumber"),
        log_item.get("logIndex"),
        log_item.get("transactionHash"),
    )


def log_position(log_item: dict[str, Any]) -> tuple[int, int]:
    """(block number, log index) ordering key of a raw log entry."""
    return parse_quantity(log_item.get("blockNumber", 0)), parse_quantity(log_item.get("logIndex", 0))


def resolve_to_block(provider: LogsProvider, to_block: Any) -> int:
    bound = parse_block_bound(to_block, field="to_block")
    if isinstance(bound, int):
        return bound
    if bound == "earliest":
        return 0
    try:
        return provider.get_block_number()
    except RegistryError as err:
        raise ScanWindowError(f"failed to resolve {bound!r} block: {err.message}") from err


def scan_logs(
    provider: LogsProvider,
    *,
    address: str,
    event_declaration: EventDeclaration | str,
    indexed_filters: dict[str, Any] | None = None,
    from_block: Any = 0,
    to_block: Any = "latest",
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> ScanResult:
    """Collect every matching log in ``[from_block, to_block]``, one query per window.

    A failed window is logged, recorded in ``failed_windows`` and skipped; later
    windows still run. Logs keep ascending (block, log index) order because
    windows are visited in ascending order.
    """
    declaration = (
        event_declaration
        if isinstance(event_declaration, EventDeclaration)
        else parse_event_declaration(event_declaration)
    )
    try:
        start = parse_block_bound(from_block, field="from_block")
    except ValueError as err:
        raise ValidationError(str(err)) from err
    try:
        end = resolve_to_block(provider, to_block)
    except ValueError as err:
        raise ValidationError(str(err)) from err
    # Tags other than "earliest" only resolve to the head block.
    if not isinstance(start, int):
        start = 0 if start == "earliest" else end

    topics = build_topics(declaration, indexed_filters)
    result = ScanResult(from_block=start, to_block=end, window_size=window_size)
    windows = partition_windows(start, end, window_size)
    seen_keys: set[tuple[Any, Any, Any]] = set()

    logger.debug("scanning %s over %d window(s) [%d, %d]", declaration.name, len(windows), start, end)
    for window_start, window_end in windows:
        result.attempted_windows += 1
        request_filter = {
            "address": address,
            "fromBlock": to_hex_quantity(window_start),
            "toBlock": to_hex_quantity(window_end),
            "topics": topics,
        }
        try:
            window_logs = provider.get_logs(request_filter)
        except RegistryError as err:
            logger.warning(
                "skipping %s window %d-%d: %s", declaration.name, window_start, window_end, err.message
            )
            result.failed_windows.append(
                ScanWindowError(err.message, from_block=window_start, to_block=window_end)
            )
            continue

        for log_item in window_logs:
            key = _log_key(log_item)
            if key in seen_keys:
                result.deduped_logs += 1
                continue
            seen_keys.add(key)
            result.logs.append(log_item)

    logger.info(
        "%s scan done: %d log(s), %d failed window(s)",
        declaration.name,
        len(result.logs),
        len(result.failed_windows),
    )
    return result
