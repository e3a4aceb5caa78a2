from __future__ import annotations

import json

import pytest

from error_map import ConfigError
from registry_config import apply_env_overrides, build_execution_env, config_from_mapping, load_config

from ._registry_rpc_helpers import CONTRACT, DEFAULT_CONFIG, _config_mapping, _write_config


def test_default_config_needs_contract_address():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={})
    assert excinfo.value.code == "INVALID_CONFIG"
    assert "REGISTRY_CONTRACT_ADDRESS" in excinfo.value.message


def test_default_config_with_env_overrides():
    config = load_config(
        DEFAULT_CONFIG,
        env={
            "REGISTRY_CONTRACT_ADDRESS": CONTRACT.upper().replace("0X", "0x"),
            "REGISTRY_RPC_URL": "https://rpc.example/v2/key",
            "REGISTRY_WINDOW_SIZE": "250",
        },
    )
    assert config.contract.address == CONTRACT
    assert config.endpoints.primary_url == "https://rpc.example/v2/key"
    assert config.endpoints.chain_id == 80002
    assert config.start_block == 23149844
    assert config.window_size == 250
    assert config.contract.event("EventLogged").name == "EventLogged"
    assert config.contract.event("AssetRegistered").name == "NFTRegistered"


def test_yaml_file_round_trip(tmp_path):
    path = _write_config(tmp_path / "registry.yaml", "http://127.0.0.1:8545", start_block=7, window_size=100)
    config = load_config(path, env={"REGISTRY_CHAIN_ID": "0x13882"})
    assert config.endpoints.fallback_url is None
    assert config.endpoints.chain_id == 80002
    assert (config.start_block, config.window_size) == (7, 100)


def test_empty_env_values_do_not_override():
    raw = apply_env_overrides(_config_mapping("http://a"), {"REGISTRY_RPC_URL": "  "})
    assert raw["endpoints"]["primary_url"] == "http://a"


@pytest.mark.parametrize(
    "section,key,value",
    [
        ("scan", "window_size", 0),
        ("network", "chain_id", "mainnet"),
        ("endpoints", "timeout_seconds", -1),
        ("contract", "address", "0x1234"),
    ],
)
def test_invalid_values_are_rejected(section, key, value):
    raw = _config_mapping("http://a")
    raw[section][key] = value
    with pytest.raises(ConfigError):
        config_from_mapping(raw)


def test_event_declaration_must_carry_required_fields():
    raw = _config_mapping("http://a")
    raw["contract"]["events"]["EventLogged"] = "EventLogged(uint256 indexed assetId, string message)"
    with pytest.raises(ConfigError):
        config_from_mapping(raw)


def test_missing_views_and_endpoints_are_rejected():
    raw = _config_mapping("http://a")
    del raw["contract"]["views"]["event_count"]
    with pytest.raises(ConfigError):
        config_from_mapping(raw)
    with pytest.raises(ConfigError):
        config_from_mapping(_config_mapping(""))


def test_invalid_yaml_is_a_config_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("network: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path, env={})


def test_build_execution_env():
    env = build_execution_env(json.dumps({"REGISTRY_CHAIN_ID": 80002}))
    assert env["REGISTRY_CHAIN_ID"] == "80002"
    with pytest.raises(ConfigError):
        build_execution_env("[1, 2]")
    with pytest.raises(ConfigError):
        build_execution_env("{not json")


def test_config_mappings_do_not_share_view_tables():
    first = _config_mapping("http://a")
    del first["contract"]["views"]["event_count"]
    config = config_from_mapping(_config_mapping("http://a"))
    assert config.contract.view("event_count").signature == "eventCounts(uint256)"
