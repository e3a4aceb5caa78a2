"""Retrieval workflows: connect, scan, decode, reconcile, wrap in a JSON envelope.

Every ``run_*`` function returns ``(exit_code, payload)``. Recoverable
problems (failed windows, undecodable logs, unreadable state) are collected
into the result; only a failed connection, a failed head-block lookup or an
invalid request turns the payload into an error. With ``strict=True`` any
collected problem also produces an error payload (``INCOMPLETE_RESULT``)
that still carries the partial result.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable

from endpoint_selector import connect
from error_map import (
    ERR_INCOMPLETE_RESULT,
    EXIT_INCOMPLETE,
    EXIT_OK,
    RegistryError,
    StateQueryError,
    ValidationError,
    exit_code_for,
)
from event_decoder import RegistryEvent, build_signature_table, decode_logs
from log_setup import setup_logger
from logs_engine import ScanResult, resolve_to_block, scan_logs
from quantity import parse_block_bound
from registry_config import RegistryConfig
from registry_models import (
    KIND_ASSET_REGISTERED,
    KIND_EVENT_LOGGED,
    UNAVAILABLE,
    LoggedEvent,
    RegistrationEvent,
)
from registry_state import RegistryState
from state_reconciler import reconcile, reconcile_assets
from transforms import normalize_token_id

logger = setup_logger(__name__)

ConnectFn = Callable[..., Any]


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def build_ok_payload(method: str, result: dict[str, Any]) -> dict[str, Any]:
    return {
        "timestamp_utc": _timestamp(),
        "method": method,
        "status": "ok",
        "ok": True,
        "error_code": None,
        "error_message": None,
        "result": result,
    }


def build_error_payload(
    method: str,
    *,
    code: str,
    message: str,
    error: dict[str, Any],
    result: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "timestamp_utc": _timestamp(),
        "method": method,
        "status": "error",
        "ok": False,
        "error_code": code,
        "error_message": message,
        "result": {**(result or {}), "error": error},
    }


def _error_response(method: str, err: RegistryError) -> tuple[int, dict[str, Any]]:
    return exit_code_for(err), build_error_payload(
        method,
        code=err.code,
        message=err.message,
        error=err.to_dict(),
    )


def _finish(method: str, result: dict[str, Any], issues: dict[str, int], strict: bool) -> tuple[int, dict[str, Any]]:
    problems = {name: count for name, count in issues.items() if count}
    result["complete"] = not problems
    if problems:
        logger.warning("%s finished with partial data: %s", method, problems)
    if strict and problems:
        message = "result is incomplete: " + ", ".join(f"{count} {name}" for name, count in problems.items())
        return EXIT_INCOMPLETE, build_error_payload(
            method,
            code=ERR_INCOMPLETE_RESULT,
            message=message,
            error={"code": ERR_INCOMPLETE_RESULT, "message": message, "details": problems},
            result=result,
        )
    return EXIT_OK, build_ok_payload(method, result)


def _parse_bounds(from_block: Any, to_block: Any) -> tuple[int | str, int | str]:
    try:
        return (
            parse_block_bound(from_block, field="from_block"),
            parse_block_bound(to_block, field="to_block"),
        )
    except ValueError as err:
        raise ValidationError(str(err)) from err


def _connect(config: RegistryConfig, connect_fn: ConnectFn) -> Any:
    endpoints = config.endpoints
    return connect_fn(
        endpoints.primary_url,
        endpoints.fallback_url,
        endpoints.chain_id,
        timeout_seconds=endpoints.timeout_seconds,
        retries=endpoints.retries,
    )


def _resolve_range(endpoint: Any, start: int | str, end: int | str) -> tuple[int, int]:
    """Resolve the head block at most once so every scan in a run shares one range."""
    end_block = resolve_to_block(endpoint, end)
    if isinstance(start, int):
        return start, end_block
    return (0 if start == "earliest" else end_block), end_block


def _scan(
    endpoint: Any,
    config: RegistryConfig,
    kind: str,
    block_range: tuple[int, int],
    indexed_filters: dict[str, Any] | None = None,
) -> ScanResult:
    return scan_logs(
        endpoint,
        address=config.contract.address,
        event_declaration=config.contract.event(kind),
        indexed_filters=indexed_filters,
        from_block=block_range[0],
        to_block=block_range[1],
        window_size=config.window_size,
    )


def _decode(scan: ScanResult, table: dict[str, Any]) -> tuple[list[RegistryEvent], list[dict[str, Any]]]:
    return decode_logs(scan.logs, table)


def stable_registrations(
    registrations: list[RegistrationEvent],
) -> tuple[list[RegistrationEvent], list[dict[str, Any]]]:
    """Keep the first registration per TokenId; a later one naming another asset is a conflict."""
    kept: dict[str, RegistrationEvent] = {}
    conflicts: list[dict[str, Any]] = []
    for event in sorted(registrations, key=lambda e: e.position):
        first = kept.get(event.token_id)
        if first is None:
            kept[event.token_id] = event
            continue
        if first.asset_id != event.asset_id:
            logger.warning(
                "token %s already maps to asset %s; ignoring registration for asset %s in %s",
                event.token_id,
                first.asset_id,
                event.asset_id,
                event.transaction_hash,
            )
            conflicts.append(
                {
                    "token_id": event.token_id,
                    "kept_asset_id": first.asset_id,
                    "ignored_asset_id": event.asset_id,
                    "transaction_hash": event.transaction_hash,
                }
            )
    return list(kept.values()), conflicts


def _failed_windows(*scans: ScanResult) -> list[dict[str, Any]]:
    return [window.to_dict() for scan in scans for window in scan.failed_windows]


def _range_payload(block_range: tuple[int, int]) -> dict[str, int]:
    return {"from_block": block_range[0], "to_block": block_range[1]}


def run_scan(
    config: RegistryConfig,
    *,
    from_block: Any = None,
    to_block: Any = "latest",
    strict: bool = False,
    connect_fn: ConnectFn = connect,
) -> tuple[int, dict[str, Any]]:
    """Full history: every registration and every asset's reconciled timeline."""
    method = "registry_scan"
    try:
        bounds = _parse_bounds(config.start_block if from_block is None else from_block, to_block)
        endpoint = _connect(config, connect_fn)
        block_range = _resolve_range(endpoint, *bounds)
    except RegistryError as err:
        return _error_response(method, err)

    table = build_signature_table(config.contract)
    registration_scan = _scan(endpoint, config, KIND_ASSET_REGISTERED, block_range)
    logged_scan = _scan(endpoint, config, KIND_EVENT_LOGGED, block_range)

    registration_events, registration_failures = _decode(registration_scan, table)
    logged_decoded, logged_failures = _decode(logged_scan, table)
    registrations, conflicts = stable_registrations(
        [e for e in registration_events if isinstance(e, RegistrationEvent)]
    )
    logged_events = sorted((e for e in logged_decoded if isinstance(e, LoggedEvent)), key=lambda e: e.position)

    assets: dict[int, str | None] = {}
    for registration in registrations:
        assets.setdefault(registration.asset_id, registration.token_id)
    for event in logged_events:
        assets.setdefault(event.asset_id, event.token_id)

    state = RegistryState(endpoint, config.contract)
    timelines, skipped_assets = reconcile_assets(state, list(assets.items()), logged_events)

    decode_failures = registration_failures + logged_failures
    failed_windows = _failed_windows(registration_scan, logged_scan)
    result = {
        "network": config.network_name,
        "contract": config.contract.address,
        "range": _range_payload(block_range),
        "registrations": [e.to_dict() for e in registrations],
        "logged_events": [e.to_dict() for e in logged_events],
        "timelines": [t.to_dict() for t in timelines],
        "conflicting_registrations": conflicts,
        "failed_windows": failed_windows,
        "skipped_assets": skipped_assets,
        "decode_failures": decode_failures,
        "summary": {
            "registrations": len(registrations),
            "logged_events": len(logged_events),
            "assets": len(assets),
            "orphaned_entries": sum(t.orphaned_count for t in timelines),
            "pending_logs": sum(len(t.pending_logs) for t in timelines),
            "scans": {
                KIND_ASSET_REGISTERED: registration_scan.summary(),
                KIND_EVENT_LOGGED: logged_scan.summary(),
            },
        },
    }
    return _finish(
        method,
        result,
        {
            "failed windows": len(failed_windows),
            "decode failures": len(decode_failures),
            "skipped assets": len(skipped_assets),
            "skipped indices": sum(len(t.skipped_indices) for t in timelines),
        },
        strict,
    )


def run_lookup(
    config: RegistryConfig,
    token_id: Any,
    *,
    from_block: Any = None,
    to_block: Any = "latest",
    strict: bool = False,
    connect_fn: ConnectFn = connect,
) -> tuple[int, dict[str, Any]]:
    """One tag's registration status, owner and reconciled timeline."""
    method = "registry_lookup"
    try:
        token = normalize_token_id(token_id)
        bounds = _parse_bounds(config.start_block if from_block is None else from_block, to_block)
        endpoint = _connect(config, connect_fn)
        state = RegistryState(endpoint, config.contract)
        if not state.is_token_registered(token):
            logger.info("token %s is not registered", token)
            return EXIT_OK, build_ok_payload(method, {"token_id": token, "registered": False})
        asset_id = state.asset_id_for(token)
    except RegistryError as err:
        return _error_response(method, err)

    state_failures: list[dict[str, Any]] = []
    try:
        owner: str = state.owner_of(asset_id)
    except StateQueryError as err:
        logger.warning("owner of asset %s unavailable: %s", asset_id, err.message)
        owner = UNAVAILABLE
        state_failures.append(err.to_dict())

    try:
        block_range = _resolve_range(endpoint, *bounds)
    except RegistryError as err:
        return _error_response(method, err)

    table = build_signature_table(config.contract)
    logged_scan = _scan(endpoint, config, KIND_EVENT_LOGGED, block_range, {"tokenId": token})
    decoded, decode_failures = _decode(logged_scan, table)
    logged_events = [e for e in decoded if isinstance(e, LoggedEvent)]

    result: dict[str, Any] = {
        "token_id": token,
        "registered": True,
        "asset_id": asset_id,
        "owner": owner,
        "range": _range_payload(block_range),
    }
    skipped_indices: list[dict[str, Any]] = []
    try:
        timeline = reconcile(state, asset_id, logged_events, token_id=token)
    except StateQueryError as err:
        logger.warning("event counter of asset %s unavailable: %s", asset_id, err.message)
        state_failures.append(err.to_dict())
        result.update({"event_count": UNAVAILABLE, "events": [], "pending_logs": []})
    else:
        skipped_indices = timeline.skipped_indices
        result.update(
            {
                "event_count": timeline.event_count,
                "events": [entry.to_dict() for entry in timeline.entries],
                "pending_logs": [log.to_dict() for log in timeline.pending_logs],
            }
        )

    failed_windows = _failed_windows(logged_scan)
    result.update(
        {
            "skipped_indices": skipped_indices,
            "state_failures": state_failures,
            "failed_windows": failed_windows,
            "decode_failures": decode_failures,
        }
    )
    return _finish(
        method,
        result,
        {
            "failed windows": len(failed_windows),
            "decode failures": len(decode_failures),
            "state failures": len(state_failures),
            "skipped indices": len(skipped_indices),
        },
        strict,
    )


def run_token_history(
    config: RegistryConfig,
    token_id: Any,
    *,
    from_block: Any = None,
    to_block: Any = "latest",
    strict: bool = False,
    connect_fn: ConnectFn = connect,
) -> tuple[int, dict[str, Any]]:
    """Every registration and logged event carrying this TokenId, in chain order."""
    method = "registry_history"
    try:
        token = normalize_token_id(token_id)
        bounds = _parse_bounds(config.start_block if from_block is None else from_block, to_block)
        endpoint = _connect(config, connect_fn)
        block_range = _resolve_range(endpoint, *bounds)
    except RegistryError as err:
        return _error_response(method, err)

    table = build_signature_table(config.contract)
    registration_scan = _scan(endpoint, config, KIND_ASSET_REGISTERED, block_range, {"tokenId": token})
    logged_scan = _scan(endpoint, config, KIND_EVENT_LOGGED, block_range, {"tokenId": token})
    registration_events, registration_failures = _decode(registration_scan, table)
    logged_events, logged_failures = _decode(logged_scan, table)

    events = sorted(registration_events + logged_events, key=lambda e: e.position)
    decode_failures = registration_failures + logged_failures
    failed_windows = _failed_windows(registration_scan, logged_scan)
    result = {
        "token_id": token,
        "range": _range_payload(block_range),
        "events": [e.to_dict() for e in events],
        "failed_windows": failed_windows,
        "decode_failures": decode_failures,
        "summary": {
            "registrations": len(registration_events),
            "logged_events": len(logged_events),
        },
    }
    return _finish(
        method,
        result,
        {"failed windows": len(failed_windows), "decode failures": len(decode_failures)},
        strict,
    )


def run_list_tokens(
    config: RegistryConfig,
    *,
    from_block: Any = None,
    to_block: Any = "latest",
    strict: bool = False,
    connect_fn: ConnectFn = connect,
) -> tuple[int, dict[str, Any]]:
    """One row per registered TokenId with its asset id and registration metadata."""
    method = "registry_tokens"
    try:
        bounds = _parse_bounds(config.start_block if from_block is None else from_block, to_block)
        endpoint = _connect(config, connect_fn)
        block_range = _resolve_range(endpoint, *bounds)
    except RegistryError as err:
        return _error_response(method, err)

    table = build_signature_table(config.contract)
    registration_scan = _scan(endpoint, config, KIND_ASSET_REGISTERED, block_range)
    decoded, decode_failures = _decode(registration_scan, table)
    registrations, conflicts = stable_registrations([e for e in decoded if isinstance(e, RegistrationEvent)])

    failed_windows = _failed_windows(registration_scan)
    result = {
        "range": _range_payload(block_range),
        "tokens": [
            {
                "token_id": e.token_id,
                "asset_id": e.asset_id,
                "timestamp": e.timestamp,
                "block_number": e.block_number,
                "transaction_hash": e.transaction_hash,
            }
            for e in registrations
        ],
        "count": len(registrations),
        "conflicting_registrations": conflicts,
        "failed_windows": failed_windows,
        "decode_failures": decode_failures,
    }
    return _finish(
        method,
        result,
        {"failed windows": len(failed_windows), "decode failures": len(decode_failures)},
        strict,
    )


def run_contract_info(
    config: RegistryConfig,
    *,
    connect_fn: ConnectFn = connect,
) -> tuple[int, dict[str, Any]]:
    """Connected network, head block and the registry contract's owner."""
    method = "registry_info"
    try:
        endpoint = _connect(config, connect_fn)
        latest_block = endpoint.get_block_number()
        owner = RegistryState(endpoint, config.contract).contract_owner()
    except RegistryError as err:
        return _error_response(method, err)
    return EXIT_OK, build_ok_payload(
        method,
        {
            "network": config.network_name,
            "chain_id": endpoint.chain_id,
            "endpoint": endpoint.label,
            "contract": config.contract.address,
            "owner": owner,
            "latest_block": latest_block,
            "start_block": config.start_block,
        },
    )
