from __future__ import annotations

import json

from transforms import derive_token_id

from ._registry_rpc_helpers import (
    CONTRACT,
    TOKEN_A,
    FakeRegistryChain,
    _logged_log,
    _registration_log,
    _run_cmd,
    _serve,
    _stop,
    _write_config,
)


def _chain() -> FakeRegistryChain:
    chain = FakeRegistryChain(head=800)
    chain.add_logs(
        _registration_log(TOKEN_A, 1, block=3),
        _logged_log(1, TOKEN_A, 0, "made", block=4),
    )
    chain.register(TOKEN_A, 1, ["made", "packed"])
    return chain


def test_token_id_is_derived_offline():
    proc = _run_cmd("token-id", ["--epc", "0xe280", "--tid", "0x01", "--compact"])
    assert proc.returncode == 0, proc.stdout + proc.stderr
    payload = json.loads(proc.stdout)
    assert payload["ok"] is True
    assert payload["method"] == "registry_token_id"
    assert payload["result"]["token_id"] == derive_token_id("0xe280", "0x01")


def test_default_config_without_contract_is_invalid_config():
    proc = _run_cmd("scan", [])
    assert proc.returncode == 2
    payload = json.loads(proc.stdout)
    assert payload["error_code"] == "INVALID_CONFIG"


def test_scan_result_only(tmp_path):
    server, url = _serve(chain=_chain())
    try:
        config = _write_config(tmp_path / "registry.yaml", url)
        proc = _run_cmd("scan", ["--config", str(config), "--result-only"])
    finally:
        _stop(server)
    assert proc.returncode == 0, proc.stdout + proc.stderr
    result = json.loads(proc.stdout)
    assert result["timelines"][0]["event_count"] == 2
    assert [e["status"] for e in result["timelines"][0]["entries"]] == ["matched", "orphaned"]


def test_lookup_with_env_json_overrides(tmp_path):
    server, url = _serve(chain=_chain())
    try:
        env_json = json.dumps({"REGISTRY_RPC_URL": url, "REGISTRY_CONTRACT_ADDRESS": CONTRACT})
        proc = _run_cmd("lookup", [TOKEN_A, "--env-json", env_json, "--from-block", "0", "--compact"])
    finally:
        _stop(server)
    assert proc.returncode == 0, proc.stdout + proc.stderr
    payload = json.loads(proc.stdout)
    assert payload["result"]["asset_id"] == 1
    assert payload["result"]["event_count"] == 2


def test_lookup_rejects_bad_token(tmp_path):
    config = _write_config(tmp_path / "registry.yaml", "http://127.0.0.1:1")
    proc = _run_cmd("lookup", ["0x1234", "--config", str(config)])
    assert proc.returncode == 2
    payload = json.loads(proc.stdout)
    assert payload["error_code"] == "INVALID_REQUEST"
    assert payload["ok"] is False


def test_connection_failure_exit_code(tmp_path):
    config = _write_config(tmp_path / "registry.yaml", "http://127.0.0.1:1")
    proc = _run_cmd("tokens", ["--config", str(config)])
    assert proc.returncode == 1
    assert json.loads(proc.stdout)["error_code"] == "CONNECTION_FAILED"
    assert "primary rpc endpoint unusable" in proc.stderr


def test_strict_scan_exit_code(tmp_path):
    chain = _chain()
    chain.failing_windows.add((500, 800))
    server, url = _serve(chain=chain)
    try:
        config = _write_config(tmp_path / "registry.yaml", url)
        proc = _run_cmd("scan", ["--config", str(config), "--strict"])
    finally:
        _stop(server)
    assert proc.returncode == 3
    payload = json.loads(proc.stdout)
    assert payload["error_code"] == "INCOMPLETE_RESULT"
    assert payload["result"]["failed_windows"]


def test_json_log_format_goes_to_stderr(tmp_path):
    config = _write_config(tmp_path / "registry.yaml", "http://127.0.0.1:1")
    proc = _run_cmd("info", ["--config", str(config)], {"REGISTRY_LOG_FORMAT": "json"})
    assert proc.returncode == 1
    records = [json.loads(line) for line in proc.stderr.splitlines() if line.strip()]
    assert records and records[0]["level"] == "WARNING"
    assert records[0]["logger"] == "tagtrail.endpoint_selector"


def test_watch_streams_json_lines(tmp_path):
    server, url = _serve(chain=_chain())
    try:
        config = _write_config(tmp_path / "registry.yaml", url)
        proc = _run_cmd(
            "watch",
            [
                "--config",
                str(config),
                "--from-block",
                "0",
                "--poll-interval",
                "0.1",
                "--max-events",
                "1",
                "--duration",
                "10",
            ],
        )
    finally:
        _stop(server)
    assert proc.returncode == 0, proc.stderr
    lines = [json.loads(line) for line in proc.stdout.splitlines()]
    assert len(lines) == 1
    assert lines[0]["event"] == "EventLogged"
    assert lines[0]["message"] == "made"
