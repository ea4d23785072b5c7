from __future__ import annotations

import logging
from typing import Any, FrozenSet, Iterable, Optional

from cdc.errors import ConfigError
from cdc.models import (
    CdcState,
    ReplicationPosition,
    StateMode,
    StreamIdentifier,
    StreamState,
    StreamStateEntry,
    SyncState,
)
from core.logging import log_event

logger = logging.getLogger(__name__)


def empty_initial_state(mode: StateMode) -> SyncState:
    if mode is StateMode.GLOBAL:
        return SyncState(mode=mode, global_state=CdcState())
    return SyncState(mode=mode)


def reset_streams(state: SyncState, streams: Iterable[StreamIdentifier]) -> SyncState:
    """Forget that the given streams were snapshotted (or their cursors) so the next run re-reads them."""
    targets = set(streams)
    if state.mode is StateMode.GLOBAL:
        remaining = frozenset(stream for stream in state.global_state.streams_initial_sync if stream not in targets)
        return state.model_copy(update={"global_state": state.global_state.model_copy(update={"streams_initial_sync": remaining})})
    entries = tuple(entry for entry in state.streams if entry.stream not in targets)
    return state.model_copy(update={"streams": entries})


class StateManager:
    """Owns sync progress.

    The held SyncState is frozen; every mutation swaps in a new value and
    returns it. Not thread-safe: the orchestrator serialises all calls and only
    mutates after the matching record or stream has been delivered.
    """

    def __init__(self, state: SyncState) -> None:
        self._state = state

    @classmethod
    def from_prior(cls, prior: Optional[SyncState], mode: StateMode) -> "StateManager":
        if prior is None:
            return cls(empty_initial_state(mode))
        if prior.mode is not mode:
            raise ConfigError(f"saved state is {prior.mode.value}-mode but the source only supports {mode.value}-mode")
        return cls(prior)

    @property
    def mode(self) -> StateMode:
        return self._state.mode

    @property
    def shared_position(self) -> Optional[ReplicationPosition]:
        return self._cdc_state().shared_position

    @property
    def streams_initial_sync(self) -> FrozenSet[StreamIdentifier]:
        return self._cdc_state().streams_initial_sync

    def mark_stream_snapshot_complete(self, stream: StreamIdentifier) -> SyncState:
        cdc_state = self._cdc_state()
        if stream in cdc_state.streams_initial_sync:
            return self._state
        synced = cdc_state.streams_initial_sync | {stream}
        self._replace_cdc_state(cdc_state.model_copy(update={"streams_initial_sync": synced}))
        log_event(logger, "state.snapshot_complete", stream=str(stream))
        return self._state

    def advance_position(self, position: ReplicationPosition) -> SyncState:
        cdc_state = self._cdc_state()
        current = cdc_state.shared_position
        if current is not None and not position > current:
            if position < current:
                logger.debug("Ignoring position regression", extra={"position": str(position), "current": str(current)})
            return self._state
        self._replace_cdc_state(cdc_state.model_copy(update={"shared_position": position}))
        return self._state

    def cursor(self, stream: StreamIdentifier) -> Optional[Any]:
        stream_state = self._state.stream_state(stream)
        return stream_state.cursor if stream_state else None

    def advance_stream_cursor(self, stream: StreamIdentifier, cursor_field: Optional[str], cursor: Any) -> SyncState:
        if self._state.mode is not StateMode.STREAM:
            raise ConfigError("per-stream cursors are only tracked in stream-mode state", stream=stream)
        current = self._state.stream_state(stream)
        if cursor is None:
            return self._state
        if current is not None and current.cursor is not None and not cursor > current.cursor:
            return self._state
        entry = StreamStateEntry(stream=stream, state=StreamState(cursor_field=cursor_field, cursor=cursor))
        entries = [entry if existing.stream == stream else existing for existing in self._state.streams]
        if current is None:
            entries.append(entry)
        self._state = self._state.model_copy(update={"streams": tuple(entries)})
        return self._state

    def snapshot(self) -> SyncState:
        # deep copy: positions and cursors are opaque and may be mutable containers
        return self._state.model_copy(deep=True)

    def _cdc_state(self) -> CdcState:
        if self._state.mode is not StateMode.GLOBAL or self._state.global_state is None:
            raise ConfigError("shared replication position is only tracked in global-mode state")
        return self._state.global_state

    def _replace_cdc_state(self, cdc_state: CdcState) -> None:
        self._state = self._state.model_copy(update={"global_state": cdc_state})
