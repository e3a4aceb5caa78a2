"""Configuration loading: YAML deployment file plus REGISTRY_* environment overrides."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from abi_codec import EventDeclaration, parse_event_declaration, parse_function_signature, parse_types
from error_map import ConfigError
from registry_models import KIND_ASSET_REGISTERED, KIND_EVENT_LOGGED

SCRIPT_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = (SCRIPT_DIR.parent / "references" / "registry.yaml").resolve()

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

REQUIRED_EVENT_FIELDS: dict[str, set[str]] = {
    KIND_ASSET_REGISTERED: {"tokenId", "assetId", "timestamp"},
    KIND_EVENT_LOGGED: {"assetId", "tokenId", "eventIndex", "message", "timestamp"},
}
REQUIRED_VIEWS = ("event_count", "event_message", "is_registered", "asset_id", "owner_of")

ENV_OVERRIDES = {
    "REGISTRY_RPC_URL": ("endpoints", "primary_url"),
    "REGISTRY_FALLBACK_RPC_URL": ("endpoints", "fallback_url"),
    "REGISTRY_CHAIN_ID": ("network", "chain_id"),
    "REGISTRY_TIMEOUT_SECONDS": ("endpoints", "timeout_seconds"),
    "REGISTRY_CONTRACT_ADDRESS": ("contract", "address"),
    "REGISTRY_START_BLOCK": ("scan", "start_block"),
    "REGISTRY_WINDOW_SIZE": ("scan", "window_size"),
}


@dataclass(frozen=True)
class ViewFunction:
    signature: str
    returns: tuple[str, ...]


@dataclass(frozen=True)
class ContractDescriptor:
    """Static description of the registry contract; read-only after load."""

    address: str
    events: dict[str, str] = field(default_factory=dict)
    views: dict[str, ViewFunction] = field(default_factory=dict)

    def event(self, kind: str) -> EventDeclaration:
        try:
            return parse_event_declaration(self.events[kind])
        except KeyError:
            raise ConfigError(f"contract descriptor declares no {kind} event") from None

    def view(self, name: str) -> ViewFunction:
        try:
            return self.views[name]
        except KeyError:
            raise ConfigError(f"contract descriptor declares no {name} view") from None


@dataclass(frozen=True)
class EndpointConfig:
    primary_url: str
    fallback_url: str | None
    chain_id: int
    timeout_seconds: float = 20.0
    retries: int = 0


@dataclass(frozen=True)
class RegistryConfig:
    endpoints: EndpointConfig
    contract: ContractDescriptor
    start_block: int
    window_size: int = 500
    network_name: str = ""

    def with_overrides(self, **changes: Any) -> RegistryConfig:
        return replace(self, **changes)


def _positive_int(raw: Any, *, field_name: str, allow_zero: bool = False) -> int:
    if isinstance(raw, bool):
        raise ConfigError(f"{field_name} must be an integer")
    try:
        value = int(str(raw).strip(), 0) if isinstance(raw, str) else int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name} must be an integer, got {raw!r}") from None
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{field_name} must be {'>= 0' if allow_zero else 'positive'}")
    return value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return value


def _build_descriptor(contract_raw: dict[str, Any]) -> ContractDescriptor:
    address = str(contract_raw.get("address") or "").strip()
    if not address:
        raise ConfigError("contract address is not configured; set REGISTRY_CONTRACT_ADDRESS")
    if not ADDRESS_RE.fullmatch(address):
        raise ConfigError(f"contract address must be a 0x-prefixed 20-byte hex string, got {address!r}")

    events_raw = contract_raw.get("events") or {}
    if not isinstance(events_raw, dict):
        raise ConfigError("contract.events must be a mapping of kind -> declaration")
    events: dict[str, str] = {}
    for kind, required in REQUIRED_EVENT_FIELDS.items():
        declaration_raw = events_raw.get(kind)
        if not isinstance(declaration_raw, str):
            raise ConfigError(f"contract.events.{kind} must be an event declaration string")
        try:
            declaration = parse_event_declaration(declaration_raw)
        except ValueError as err:
            raise ConfigError(f"contract.events.{kind}: {err}") from err
        missing = required - {p.name for p in declaration.params}
        if missing:
            raise ConfigError(f"contract.events.{kind} is missing field(s) {sorted(missing)}")
        events[kind] = declaration_raw

    views_raw = contract_raw.get("views") or {}
    if not isinstance(views_raw, dict):
        raise ConfigError("contract.views must be a mapping")
    views: dict[str, ViewFunction] = {}
    for name, entry in views_raw.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("signature"), str):
            raise ConfigError(f"contract.views.{name} needs a signature")
        returns = entry.get("returns") or []
        try:
            parse_function_signature(entry["signature"])
            parse_types(list(returns))
        except ValueError as err:
            raise ConfigError(f"contract.views.{name}: {err}") from err
        views[str(name)] = ViewFunction(signature=entry["signature"], returns=tuple(returns))
    missing_views = [name for name in REQUIRED_VIEWS if name not in views]
    if missing_views:
        raise ConfigError(f"contract.views is missing {missing_views}")

    return ContractDescriptor(address=address.lower(), events=events, views=views)


def apply_env_overrides(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    out = {key: dict(value) if isinstance(value, dict) else value for key, value in raw.items()}
    for env_key, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_key)
        if value is None or not str(value).strip():
            continue
        target = out.setdefault(section, {})
        if not isinstance(target, dict):
            raise ConfigError(f"config section {section!r} must be a mapping")
        target[key] = str(value).strip()
    return out


def config_from_mapping(raw: dict[str, Any]) -> RegistryConfig:
    network = _section(raw, "network")
    endpoints = _section(raw, "endpoints")
    scan = _section(raw, "scan")

    try:
        timeout_seconds = float(endpoints.get("timeout_seconds", 20.0))
    except (TypeError, ValueError):
        raise ConfigError("endpoints.timeout_seconds must be a number") from None
    if timeout_seconds <= 0:
        raise ConfigError("endpoints.timeout_seconds must be positive")

    endpoint_config = EndpointConfig(
        primary_url=str(endpoints.get("primary_url") or "").strip(),
        fallback_url=str(endpoints.get("fallback_url") or "").strip() or None,
        chain_id=_positive_int(network.get("chain_id"), field_name="network.chain_id"),
        timeout_seconds=timeout_seconds,
        retries=_positive_int(endpoints.get("retries", 0), field_name="endpoints.retries", allow_zero=True),
    )
    if not endpoint_config.primary_url and not endpoint_config.fallback_url:
        raise ConfigError("no rpc endpoint configured; set REGISTRY_RPC_URL")

    return RegistryConfig(
        endpoints=endpoint_config,
        contract=_build_descriptor(_section(raw, "contract")),
        start_block=_positive_int(scan.get("start_block", 0), field_name="scan.start_block", allow_zero=True),
        window_size=_positive_int(scan.get("window_size", 500), field_name="scan.window_size"),
        network_name=str(network.get("name") or ""),
    )


def load_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> RegistryConfig:
    config_path = Path(path).resolve() if path else DEFAULT_CONFIG_PATH
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as err:
        raise ConfigError(f"failed reading config {config_path}: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"invalid YAML in {config_path}: {err}") from err
    if not isinstance(raw, dict):
        raise ConfigError(f"config {config_path} must be a mapping")
    return config_from_mapping(apply_env_overrides(raw, os.environ if env is None else env))


def build_execution_env(env_json: str | None) -> dict[str, str]:
    """``os.environ`` with the entries of a ``--env-json`` object layered on top."""
    env = os.environ.copy()
    if not env_json:
        return env
    try:
        extra = json.loads(env_json)
    except json.JSONDecodeError as err:
        raise ConfigError(f"--env-json is not valid JSON: {err}") from err
    if not isinstance(extra, dict):
        raise ConfigError("--env-json must be a JSON object")
    for key, value in extra.items():
        env[str(key)] = str(value)
    return env
