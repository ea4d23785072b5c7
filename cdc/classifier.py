from __future__ import annotations

from typing import AbstractSet, FrozenSet, List, Optional, Sequence

from cdc.models import ConfiguredStream, StateMode, StreamIdentifier, SyncState


def classify(
    all_streams: AbstractSet[StreamIdentifier],
    prior_state: Optional[SyncState],
    defer_initial_snapshot: bool = True,
) -> FrozenSet[StreamIdentifier]:
    """Return the streams that need a full snapshot before change streaming.

    With no saved global progress at all (no shared position and nothing
    snapshotted yet) the sync starts from the current log position and, while
    ``defer_initial_snapshot`` is set, snapshots nothing. Otherwise every
    stream not yet in ``streams_initial_sync`` is returned.
    """
    if prior_state is not None and prior_state.mode is not StateMode.GLOBAL:
        # per-stream sources have no shared log to snapshot against
        return frozenset()
    if prior_state is None or prior_state.global_state is None:
        return frozenset() if defer_initial_snapshot else frozenset(all_streams)

    cdc_state = prior_state.global_state
    if cdc_state.is_empty and defer_initial_snapshot:
        return frozenset()
    return frozenset(all_streams) - cdc_state.streams_initial_sync


def select_snapshot_streams(
    catalog: Sequence[ConfiguredStream],
    prior_state: Optional[SyncState],
    defer_initial_snapshot: bool = True,
) -> List[ConfiguredStream]:
    """Incremental streams needing a snapshot, in catalog order."""
    incremental = [configured for configured in catalog if configured.is_incremental]
    needed = classify({configured.stream for configured in incremental}, prior_state, defer_initial_snapshot)
    return [configured for configured in incremental if configured.stream in needed]
