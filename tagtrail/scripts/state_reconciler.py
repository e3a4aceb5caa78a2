"""Merge log-derived metadata with the registry's authoritative event counter."""

from __future__ import annotations

from typing import Iterable

from error_map import RegistryError, StateQueryError
from log_setup import setup_logger
from registry_models import LoggedEvent, ReconciledTimeline, TimelineEntry
from registry_state import RegistryState

logger = setup_logger(__name__)


def index_logged_events(logged_events: Iterable[LoggedEvent], asset_id: int) -> dict[int, LoggedEvent]:
    """First log per event index for one asset; later duplicates are ignored."""
    by_index: dict[int, LoggedEvent] = {}
    for event in logged_events:
        if event.asset_id != asset_id:
            continue
        if event.event_index in by_index:
            logger.debug("duplicate log for asset %s index %s ignored", asset_id, event.event_index)
            continue
        by_index[event.event_index] = event
    return by_index


def reconcile(
    state: RegistryState,
    asset_id: int,
    logged_events: Iterable[LoggedEvent],
    *,
    token_id: str | None = None,
) -> ReconciledTimeline:
    """Build the asset's timeline for indices ``[0, counter)``.

    The counter is read once; it raises StateQueryError if that read fails.
    An index whose message cannot be read is skipped and listed in
    ``skipped_indices``. Logs at or beyond the counter are not attached and
    end up in ``pending_logs``.
    """
    event_count = state.event_count(asset_id)
    by_index = index_logged_events(logged_events, asset_id)
    timeline = ReconciledTimeline(asset_id=asset_id, event_count=event_count, token_id=token_id)

    for event_index in range(event_count):
        try:
            message = state.event_message(asset_id, event_index)
        except RegistryError as err:
            logger.warning("skipping asset %s event %s: %s", asset_id, event_index, err.message)
            timeline.skipped_indices.append({"event_index": event_index, **err.to_dict()})
            continue

        log = by_index.get(event_index)
        if log is None:
            timeline.entries.append(TimelineEntry.orphaned(event_index, message))
        else:
            timeline.entries.append(TimelineEntry.matched(event_index, message, log))

    timeline.pending_logs = sorted(
        (log for index, log in by_index.items() if index >= event_count),
        key=lambda log: log.position,
    )
    if timeline.pending_logs:
        logger.info("asset %s has %d log(s) beyond counter %d", asset_id, len(timeline.pending_logs), event_count)
    return timeline


def reconcile_assets(
    state: RegistryState,
    assets: Iterable[tuple[int, str | None]],
    logged_events: list[LoggedEvent],
) -> tuple[list[ReconciledTimeline], list[dict[str, object]]]:
    """Reconcile each (asset id, token id); an asset whose counter read fails is skipped."""
    timelines: list[ReconciledTimeline] = []
    skipped: list[dict[str, object]] = []
    for asset_id, token_id in assets:
        try:
            timelines.append(reconcile(state, asset_id, logged_events, token_id=token_id))
        except StateQueryError as err:
            logger.warning("skipping asset %s: %s", asset_id, err.message)
            skipped.append({"asset_id": asset_id, "token_id": token_id, **err.to_dict()})
    return timelines, skipped
