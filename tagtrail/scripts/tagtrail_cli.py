#!/usr/bin/env python3
"""JSON command-line interface for the RFID tag registry history reader."""

from __future__ import annotations

import argparse
import json
import queue
import sys
import time
from pathlib import Path
from typing import Any

# Local imports for script execution (python3 scripts/tagtrail_cli.py ...)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from endpoint_selector import connect  # noqa: E402
from error_map import EXIT_OK, ConfigError, RegistryError, exit_code_for  # noqa: E402
from log_setup import configure_root  # noqa: E402
from registry_config import RegistryConfig, build_execution_env, load_config  # noqa: E402
from registry_models import KIND_ASSET_REGISTERED, KIND_EVENT_LOGGED  # noqa: E402
from registry_orchestrator import (  # noqa: E402
    build_error_payload,
    build_ok_payload,
    run_contract_info,
    run_list_tokens,
    run_lookup,
    run_scan,
    run_token_history,
)
from subscription import DEFAULT_POLL_INTERVAL, DEFAULT_QUEUE_SIZE, subscribe  # noqa: E402
from transforms import derive_token_id, normalize_token_id  # noqa: E402

WATCH_KINDS = {"registered": KIND_ASSET_REGISTERED, "logged": KIND_EVENT_LOGGED}


def _json_dump(payload: Any, pretty: bool = True) -> str:
    return json.dumps(payload, indent=2 if pretty else None, sort_keys=False)


def _render_output(*, payload: dict[str, Any], compact: bool, result_only: bool) -> None:
    if result_only and bool(payload.get("ok", False)):
        print(_json_dump(payload.get("result"), pretty=not compact))
        return
    print(_json_dump(payload, pretty=not compact))


def _render_and_exit(args: argparse.Namespace, exit_code: int, payload: dict[str, Any]) -> int:
    _render_output(payload=payload, compact=bool(args.compact), result_only=bool(args.result_only))
    return int(exit_code)


def _error_and_exit(args: argparse.Namespace, method: str, err: RegistryError) -> int:
    payload = build_error_payload(method, code=err.code, message=err.message, error=err.to_dict())
    return _render_and_exit(args, exit_code_for(err), payload)


def _load_config(args: argparse.Namespace) -> RegistryConfig:
    config = load_config(args.config, env=build_execution_env(args.env_json))
    window_size = getattr(args, "window_size", None)
    if window_size is not None:
        if window_size <= 0:
            raise ConfigError("--window-size must be positive")
        config = config.with_overrides(window_size=window_size)
    return config


def cmd_scan(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except RegistryError as err:
        return _error_and_exit(args, "registry_scan", err)
    exit_code, payload = run_scan(
        config,
        from_block=args.from_block,
        to_block=args.to_block,
        strict=args.strict,
    )
    return _render_and_exit(args, exit_code, payload)


def cmd_lookup(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except RegistryError as err:
        return _error_and_exit(args, "registry_lookup", err)
    exit_code, payload = run_lookup(
        config,
        args.token_id,
        from_block=args.from_block,
        to_block=args.to_block,
        strict=args.strict,
    )
    return _render_and_exit(args, exit_code, payload)


def cmd_history(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except RegistryError as err:
        return _error_and_exit(args, "registry_history", err)
    exit_code, payload = run_token_history(
        config,
        args.token_id,
        from_block=args.from_block,
        to_block=args.to_block,
        strict=args.strict,
    )
    return _render_and_exit(args, exit_code, payload)


def cmd_tokens(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except RegistryError as err:
        return _error_and_exit(args, "registry_tokens", err)
    exit_code, payload = run_list_tokens(
        config,
        from_block=args.from_block,
        to_block=args.to_block,
        strict=args.strict,
    )
    return _render_and_exit(args, exit_code, payload)


def cmd_info(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except RegistryError as err:
        return _error_and_exit(args, "registry_info", err)
    exit_code, payload = run_contract_info(config)
    return _render_and_exit(args, exit_code, payload)


def cmd_token_id(args: argparse.Namespace) -> int:
    try:
        token_id = derive_token_id(args.epc, args.tid)
    except RegistryError as err:
        return _error_and_exit(args, "registry_token_id", err)
    payload = build_ok_payload("registry_token_id", {"epc": args.epc, "tid": args.tid, "token_id": token_id})
    return _render_and_exit(args, EXIT_OK, payload)


def cmd_watch(args: argparse.Namespace) -> int:
    """Stream events as one compact JSON object per line until stopped."""
    method = "registry_watch"
    try:
        config = _load_config(args)
        indexed_filters = {"tokenId": normalize_token_id(args.token_id)} if args.token_id else None
        endpoints = config.endpoints
        endpoint = connect(
            endpoints.primary_url,
            endpoints.fallback_url,
            endpoints.chain_id,
            timeout_seconds=endpoints.timeout_seconds,
            retries=endpoints.retries,
        )
        subscription = subscribe(
            endpoint,
            config.contract,
            WATCH_KINDS[args.kind],
            indexed_filters=indexed_filters,
            queue_size=args.queue_size,
            poll_interval=args.poll_interval,
            from_block=args.from_block or "latest",
            window_size=config.window_size,
        )
    except RegistryError as err:
        return _error_and_exit(args, method, err)

    deadline = time.monotonic() + args.duration if args.duration else None
    received = 0
    try:
        with subscription:
            while args.max_events is None or received < args.max_events:
                if deadline is not None and time.monotonic() >= deadline:
                    break
                try:
                    event = subscription.get(timeout=args.poll_interval)
                except queue.Empty:
                    continue
                print(_json_dump(event.to_dict(), pretty=False), flush=True)
                received += 1
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def _add_output_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--compact", action="store_true", help="compact JSON output")
    parser.add_argument("--result-only", action="store_true", help="print only result field")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="registry YAML config path (defaults to references/registry.yaml)")
    parser.add_argument("--env-json", help="runtime env object as JSON")
    parser.add_argument("--window-size", type=int, help="blocks per eth_getLogs query")


def _add_range_args(parser: argparse.ArgumentParser, *, default_to: str = "latest") -> None:
    parser.add_argument("--from-block", help="first block (number, hex or tag); defaults to the deployment block")
    parser.add_argument("--to-block", default=default_to, help="last block (number, hex or tag)")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="fail with INCOMPLETE_RESULT when any window, log or state read was skipped",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (env REGISTRY_LOG_LEVEL)")
    parser.add_argument("--log-format", choices=("text", "json"), help="stderr log format (env REGISTRY_LOG_FORMAT)")
    sub = parser.add_subparsers(dest="command", required=True)

    scan_parser = sub.add_parser("scan", help="Full history: registrations and reconciled per-asset timelines")
    _add_config_args(scan_parser)
    _add_range_args(scan_parser)
    _add_output_args(scan_parser)
    scan_parser.set_defaults(func=cmd_scan)

    lookup_parser = sub.add_parser("lookup", help="Registration status, owner and timeline of one TokenId")
    lookup_parser.add_argument("token_id", help="bytes32 TokenId (0x + 64 hex)")
    _add_config_args(lookup_parser)
    _add_range_args(lookup_parser)
    _add_output_args(lookup_parser)
    lookup_parser.set_defaults(func=cmd_lookup)

    history_parser = sub.add_parser("history", help="Every event carrying one TokenId, in chain order")
    history_parser.add_argument("token_id", help="bytes32 TokenId (0x + 64 hex)")
    _add_config_args(history_parser)
    _add_range_args(history_parser)
    _add_output_args(history_parser)
    history_parser.set_defaults(func=cmd_history)

    tokens_parser = sub.add_parser("tokens", help="List registered TokenIds")
    _add_config_args(tokens_parser)
    _add_range_args(tokens_parser)
    _add_output_args(tokens_parser)
    tokens_parser.set_defaults(func=cmd_tokens)

    info_parser = sub.add_parser("info", help="Connected network, head block and contract owner")
    _add_config_args(info_parser)
    _add_output_args(info_parser)
    info_parser.set_defaults(func=cmd_info)

    token_id_parser = sub.add_parser("token-id", help="Derive TokenId = keccak256(EPC || TID) offline")
    token_id_parser.add_argument("--epc", required=True, help="EPC bytes as 0x hex")
    token_id_parser.add_argument("--tid", required=True, help="TID bytes as 0x hex")
    _add_output_args(token_id_parser)
    token_id_parser.set_defaults(func=cmd_token_id)

    watch_parser = sub.add_parser("watch", help="Stream new registry events as JSON lines")
    watch_parser.add_argument("--kind", choices=sorted(WATCH_KINDS), default="logged")
    watch_parser.add_argument("--token-id", help="only events carrying this TokenId")
    watch_parser.add_argument("--from-block", help="first block to watch (defaults to the next new block)")
    watch_parser.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL)
    watch_parser.add_argument("--queue-size", type=int, default=DEFAULT_QUEUE_SIZE)
    watch_parser.add_argument("--max-events", type=int, help="stop after N events")
    watch_parser.add_argument("--duration", type=float, help="stop after N seconds")
    _add_config_args(watch_parser)
    _add_output_args(watch_parser)
    watch_parser.set_defaults(func=cmd_watch)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_root(level=args.log_level, fmt=args.log_format)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
