from __future__ import annotations

import pytest

from endpoint_selector import connect
from error_map import EndpointConnectionError, RpcCallError
from rpc_endpoint import RpcEndpoint

from ._registry_rpc_helpers import CHAIN_ID, FakeRegistryChain, _RPCHandler, _serve, _stop


def _chain_id_response(chain_id: int) -> dict:
    return {"jsonrpc": "2.0", "id": 1, "result": hex(chain_id)}


def test_primary_with_expected_chain_id_is_used():
    server, url = _serve([_chain_id_response(CHAIN_ID)])
    try:
        endpoint = connect(url, None, CHAIN_ID, timeout_seconds=5)
        assert endpoint.label == "primary"
        assert endpoint.chain_id == CHAIN_ID
        assert [c["method"] for c in _RPCHandler.calls] == ["eth_chainId"]
    finally:
        _stop(server)


def test_wrong_network_on_primary_falls_back():
    server, url = _serve([_chain_id_response(1), _chain_id_response(CHAIN_ID)])
    try:
        endpoint = connect(url, url, CHAIN_ID, timeout_seconds=5)
        assert endpoint.label == "fallback"
        assert len(_RPCHandler.calls) == 2
    finally:
        _stop(server)


def test_remote_error_on_primary_falls_back():
    server, url = _serve(
        [
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "rate limited"}},
            _chain_id_response(CHAIN_ID),
        ]
    )
    try:
        assert connect(url, url, CHAIN_ID, timeout_seconds=5).label == "fallback"
    finally:
        _stop(server)


def test_unreachable_primary_falls_back():
    server, url = _serve([_chain_id_response(CHAIN_ID)])
    try:
        endpoint = connect("http://127.0.0.1:1", url, CHAIN_ID, timeout_seconds=5)
        assert endpoint.url == url
    finally:
        _stop(server)


def test_both_endpoints_failing_raises_one_error_with_both_causes():
    server, url = _serve([_chain_id_response(1), (503, {"error": "unavailable"})])
    try:
        with pytest.raises(EndpointConnectionError) as excinfo:
            connect(url, url, CHAIN_ID, timeout_seconds=5)
    finally:
        _stop(server)
    attempts = excinfo.value.details["attempts"]
    assert [a["endpoint"] for a in attempts] == ["primary", "fallback"]
    assert attempts[0]["code"] == "CONNECTION_FAILED"
    assert attempts[1]["code"] == "RPC_TRANSPORT"


def test_missing_primary_without_fallback_fails_without_network():
    with pytest.raises(EndpointConnectionError) as excinfo:
        connect("", None, CHAIN_ID)
    assert len(excinfo.value.details["attempts"]) == 1


def test_truncated_reply_is_a_transport_error():
    chain = FakeRegistryChain()
    chain.truncated_windows.add((0, 10))
    server, url = _serve(chain=chain)
    try:
        with pytest.raises(RpcCallError) as exc:
            RpcEndpoint(url=url, timeout_seconds=5).get_logs({"fromBlock": 0, "toBlock": 10})
    finally:
        _stop(server)
    assert exc.value.code == "RPC_TRANSPORT"
    assert exc.value.details["method"] == "eth_getLogs"
