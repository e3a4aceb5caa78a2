from __future__ import annotations

import pytest

from error_map import RpcCallError, StateQueryError
from registry_models import STATUS_MATCHED, STATUS_ORPHANED, UNAVAILABLE, LoggedEvent
from registry_state import RegistryState
from state_reconciler import reconcile, reconcile_assets

from ._registry_rpc_helpers import TOKEN_A, TOKEN_B, ChainProvider, FakeRegistryChain, _config


class _State:
    def __init__(self, counters, messages, failing_messages=()):
        self.counters = counters
        self.messages = messages
        self.failing_messages = set(failing_messages)

    def event_count(self, asset_id):
        if asset_id not in self.counters:
            raise StateQueryError(f"eventCounts({asset_id}) reverted")
        return self.counters[asset_id]

    def event_message(self, asset_id, event_index):
        if (asset_id, event_index) in self.failing_messages:
            raise StateQueryError("getEventMessage timed out")
        return self.messages[(asset_id, event_index)]


def _logged(asset_id, index, *, block, token_id=TOKEN_A, message="log text"):
    return LoggedEvent(
        asset_id=asset_id,
        token_id=token_id,
        event_index=index,
        message=message,
        timestamp="2023-11-14T22:13:20Z",
        block_number=block,
        log_index=0,
        transaction_hash=f"0x{block:064x}",
    )


def _state_for(asset_id, messages, **kwargs):
    return _State(
        {asset_id: len(messages)},
        {(asset_id, i): m for i, m in enumerate(messages)},
        **kwargs,
    )


def test_counter_of_three_with_two_logs_yields_one_orphan():
    state = _state_for(1, ["made", "packed", "shipped"])
    timeline = reconcile(state, 1, [_logged(1, 0, block=10), _logged(1, 2, block=30)], token_id=TOKEN_A)

    assert len(timeline.entries) == 3
    assert [e.status for e in timeline.entries] == [STATUS_MATCHED, STATUS_ORPHANED, STATUS_MATCHED]
    orphan = timeline.entries[1].to_dict()
    assert orphan["message"] == "packed"
    assert orphan["timestamp"] == orphan["block_number"] == orphan["transaction_hash"] == UNAVAILABLE
    assert timeline.orphaned_count == 1
    assert timeline.complete


def test_messages_come_from_contract_state_not_logs():
    state = _state_for(1, ["authoritative"])
    timeline = reconcile(state, 1, [_logged(1, 0, block=10, message="from log")])
    assert timeline.entries[0].message == "authoritative"
    assert timeline.entries[0].block_number == 10


def test_failed_message_read_skips_only_that_index():
    state = _state_for(1, ["a", "b", "c"], failing_messages=[(1, 1)])
    timeline = reconcile(state, 1, [])
    assert [e.event_index for e in timeline.entries] == [0, 2]
    assert [s["event_index"] for s in timeline.skipped_indices] == [1]
    assert timeline.skipped_indices[0]["code"] == "STATE_QUERY_FAILED"
    assert not timeline.complete


def test_logs_beyond_counter_are_pending_and_never_attached():
    state = _state_for(1, ["a"])
    timeline = reconcile(state, 1, [_logged(1, 0, block=10), _logged(1, 1, block=11), _logged(1, 5, block=12)])
    assert len(timeline.entries) == timeline.event_count == 1
    assert [log.event_index for log in timeline.pending_logs] == [1, 5]


def test_first_log_per_index_wins_and_other_assets_are_ignored():
    state = _state_for(1, ["a"])
    timeline = reconcile(
        state,
        1,
        [_logged(2, 0, block=5, token_id=TOKEN_B), _logged(1, 0, block=10), _logged(1, 0, block=20)],
    )
    assert timeline.entries[0].block_number == 10


def test_counter_failure_raises_and_batch_skips_the_asset():
    state = _State({1: 1}, {(1, 0): "a"})
    with pytest.raises(StateQueryError):
        reconcile(state, 2, [])

    timelines, skipped = reconcile_assets(state, [(1, TOKEN_A), (2, TOKEN_B)], [])
    assert [t.asset_id for t in timelines] == [1]
    assert skipped[0]["asset_id"] == 2
    assert skipped[0]["token_id"] == TOKEN_B


def test_registry_state_reads_through_eth_call():
    chain = FakeRegistryChain()
    chain.register(TOKEN_A, 9, ["made", "packed"])
    state = RegistryState(ChainProvider(chain), _config("http://127.0.0.1:1").contract)

    assert state.is_token_registered(TOKEN_A) is True
    assert state.asset_id_for(TOKEN_A) == 9
    assert state.event_count(9) == 2
    assert state.event_message(9, 1) == "packed"
    assert state.owner_of(9) == "0x" + "cd" * 20


def test_registry_state_wraps_reverts_and_bad_output():
    class _Provider:
        def __init__(self, output):
            self.output = output

        def call(self, to, data, block="latest"):
            if isinstance(self.output, Exception):
                raise self.output
            return self.output

    descriptor = _config("http://127.0.0.1:1").contract
    with pytest.raises(StateQueryError) as excinfo:
        RegistryState(_Provider(RpcCallError("execution reverted")), descriptor).event_count(1)
    assert excinfo.value.details["view"] == "event_count"
    with pytest.raises(StateQueryError):
        RegistryState(_Provider("0x"), descriptor).event_count(1)
