from __future__ import annotations

import pytest

from error_map import RpcCallError, ScanWindowError, ValidationError
from logs_engine import build_topics, log_position, partition_windows, scan_logs

from ._registry_rpc_helpers import (
    CONTRACT,
    LOGGED,
    REGISTERED,
    TOKEN_A,
    TOKEN_B,
    ChainProvider,
    FakeRegistryChain,
    _logged_log,
    _registration_log,
)


def _chain_with_logs() -> FakeRegistryChain:
    chain = FakeRegistryChain(head=1200)
    chain.add_logs(
        _logged_log(1, TOKEN_A, 0, "made", block=5),
        _logged_log(1, TOKEN_A, 1, "packed", block=499, log_index=3),
        _logged_log(2, TOKEN_B, 0, "made", block=500),
        _logged_log(1, TOKEN_A, 2, "shipped", block=1200),
        _registration_log(TOKEN_A, 1, block=4),
    )
    return chain


def test_partition_windows_closed_and_non_overlapping():
    assert partition_windows(0, 1200, 500) == [(0, 499), (500, 999), (1000, 1200)]
    assert partition_windows(10, 10, 500) == [(10, 10)]
    assert partition_windows(11, 10, 500) == []


def test_partition_windows_rejects_bad_size():
    for size in (0, -1, True):
        with pytest.raises(ValidationError):
            partition_windows(0, 10, size)


def test_scan_issues_one_query_per_window_and_resolves_latest_once():
    provider = ChainProvider(_chain_with_logs())
    result = scan_logs(provider, address=CONTRACT, event_declaration=LOGGED, from_block=0, to_block="latest")

    methods = [method for method, _ in provider.calls]
    assert methods == ["eth_blockNumber", "eth_getLogs", "eth_getLogs", "eth_getLogs"]
    windows = [(p[0]["fromBlock"], p[0]["toBlock"]) for m, p in provider.calls if m == "eth_getLogs"]
    assert windows == [("0x0", "0x1f3"), ("0x1f4", "0x3e7"), ("0x3e8", "0x4b0")]
    assert result.complete
    assert len(result.logs) == 4
    positions = [log_position(log) for log in result.logs]
    assert positions == sorted(positions)
    assert result.summary()["attempted_windows"] == 3


def test_scan_skips_failed_window_and_continues():
    chain = _chain_with_logs()
    chain.failing_windows.add((500, 999))
    result = scan_logs(ChainProvider(chain), address=CONTRACT, event_declaration=LOGGED, to_block=1200)

    assert not result.complete
    assert [(w.from_block, w.to_block) for w in result.failed_windows] == [(500, 999)]
    assert all(isinstance(w, ScanWindowError) for w in result.failed_windows)
    assert len(result.logs) == 3
    summary = result.summary()
    assert summary["successful_windows"] == 2
    assert summary["failed_windows"] == 1


def test_scan_drops_duplicate_entries():
    class _RepeatingProvider:
        def __init__(self, log):
            self.log = log

        def get_block_number(self):
            return 999

        def get_logs(self, logs_filter):
            return [self.log]

    result = scan_logs(
        _RepeatingProvider(_logged_log(1, TOKEN_A, 0, "made", block=5)),
        address=CONTRACT,
        event_declaration=LOGGED,
        to_block="latest",
    )
    assert len(result.logs) == 1
    assert result.deduped_logs == 1


def test_scan_filters_by_indexed_token():
    result = scan_logs(
        ChainProvider(_chain_with_logs()),
        address=CONTRACT,
        event_declaration=LOGGED,
        indexed_filters={"tokenId": TOKEN_B},
        to_block=1200,
    )
    assert [log["topics"][2] for log in result.logs] == [TOKEN_B]


def test_scan_latest_to_latest_covers_head_block_only():
    provider = ChainProvider(_chain_with_logs())
    result = scan_logs(provider, address=CONTRACT, event_declaration=LOGGED, from_block="latest", to_block="latest")
    assert (result.from_block, result.to_block) == (1200, 1200)
    assert len(result.logs) == 1
    assert [m for m, _ in provider.calls].count("eth_blockNumber") == 1


def test_scan_raises_when_head_block_unavailable():
    class _NoHead:
        def get_block_number(self):
            raise RpcCallError("connection refused")

        def get_logs(self, logs_filter):
            raise AssertionError("no window may run")

    with pytest.raises(ScanWindowError):
        scan_logs(_NoHead(), address=CONTRACT, event_declaration=LOGGED, to_block="latest")


def test_build_topics_wildcards_and_validation():
    assert build_topics(LOGGED, {"tokenId": TOKEN_A}) == [LOGGED.topic0, None, TOKEN_A]
    assert build_topics(LOGGED, {"assetId": 1}) == [LOGGED.topic0, "0x" + "00" * 31 + "01"]
    assert build_topics(REGISTERED, None) == [REGISTERED.topic0]
    with pytest.raises(ValidationError):
        build_topics(LOGGED, {"message": "x"})
    with pytest.raises(ValidationError):
        build_topics(LOGGED, {"tokenId": "0x1234"})


@pytest.mark.parametrize("window_size", [1, 7, 499, 500, 501, 1201, 5000])
def test_any_window_size_returns_the_same_ordered_logs(window_size):
    chain = _chain_with_logs()
    whole = scan_logs(ChainProvider(chain), address=CONTRACT, event_declaration=LOGGED, to_block=1200, window_size=1201)
    result = scan_logs(
        ChainProvider(chain), address=CONTRACT, event_declaration=LOGGED, to_block=1200, window_size=window_size
    )

    assert result.complete
    assert result.logs == whole.logs
    assert len(result.logs) == 4
    positions = [log_position(log) for log in result.logs]
    assert positions == sorted(positions)
    assert result.summary()["attempted_windows"] == -(-1201 // window_size)
