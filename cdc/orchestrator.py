from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from cdc.catalog import validate_catalog
from cdc.change_stream import ChangeStreamReader
from cdc.classifier import select_snapshot_streams
from cdc.errors import SyncError, SyncTimeout, TransientIOError
from cdc.metadata import change_record_data, snapshot_record_data
from cdc.metrics import CHECKPOINTS_EMITTED, RECORDS_EMITTED, SYNC_FAILURES, SYNC_PHASE, TRANSIENT_RETRIES
from cdc.models import (
    Checkpoint,
    ConfiguredStream,
    Record,
    ReplicationPosition,
    SourceCapabilities,
    StateMode,
    StreamIdentifier,
    SyncEvent,
    SyncState,
)
from cdc.snapshot import SnapshotProducer, StreamSnapshotted
from cdc.state import StateManager
from connectors.base import ChangeTransport, SnapshotSource
from core.logging import log_event, set_sync_phase

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunConfig:
    checkpoint_every_records: int = 1000
    checkpoint_every_seconds: float = 60.0
    max_transient_retries: int = 3
    timeout_seconds: Optional[float] = None
    bounded: bool = False
    defer_initial_snapshot: bool = True
    snapshot_concurrency: int = 1

    @classmethod
    def from_settings(cls, settings: Any) -> "RunConfig":
        return cls(
            checkpoint_every_records=settings.checkpoint_every_records,
            checkpoint_every_seconds=settings.checkpoint_every_seconds,
            max_transient_retries=settings.max_transient_retries,
            timeout_seconds=settings.sync_timeout_seconds,
            bounded=settings.bounded_runs,
            defer_initial_snapshot=settings.defer_initial_snapshot,
            snapshot_concurrency=settings.snapshot_concurrency,
        )


class _CheckpointPolicy:
    """Checkpoint after N records or T seconds since the last one, whichever comes first."""

    def __init__(self, config: RunConfig, clock: Callable[[], float]) -> None:
        self._every_records = config.checkpoint_every_records
        self._every_seconds = config.checkpoint_every_seconds
        self._clock = clock
        self._pending = 0
        self._last = clock()

    def record(self) -> None:
        self._pending += 1

    def due(self) -> bool:
        if not self._pending:
            return False
        return self._pending >= self._every_records or self._clock() - self._last >= self._every_seconds

    def reset(self) -> None:
        self._pending = 0
        self._last = self._clock()


class SyncOrchestrator:
    """Runs one sync: snapshot what needs it, then stream changes, emitting records and checkpoints.

    The snapshot phase is fully closed (every snapshot cursor released) before
    the change transport is opened. State only moves after the record or
    stream it describes has been handed to the caller.
    """

    def __init__(
        self,
        snapshot_source: SnapshotSource,
        transport: ChangeTransport,
        capabilities: SourceCapabilities,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._snapshot_source = snapshot_source
        self._transport = transport
        self._capabilities = capabilities
        self._clock = clock
        self._phase = SyncPhase.IDLE
        self._history: List[SyncPhase] = [SyncPhase.IDLE]
        self._cancelled = False
        self._reader: Optional[ChangeStreamReader] = None

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def phase_history(self) -> List[SyncPhase]:
        return list(self._history)

    def cancel(self) -> None:
        self._cancelled = True
        if self._reader is not None:
            self._reader.cancel()

    async def run(
        self,
        catalog: Sequence[ConfiguredStream],
        prior_state: Optional[SyncState],
        config: Optional[RunConfig] = None,
    ) -> AsyncIterator[SyncEvent]:
        config = config or RunConfig()
        self._cancelled = False
        self._phase = SyncPhase.IDLE
        self._history = [SyncPhase.IDLE]
        deadline = self._clock() + config.timeout_seconds if config.timeout_seconds else None
        manager: Optional[StateManager] = None
        try:
            validate_catalog(catalog, self._capabilities)
            manager = StateManager.from_prior(prior_state, self._capabilities.state_mode)
            if manager.mode is StateMode.GLOBAL:
                phases = self._run_global(catalog, manager, config, deadline)
            else:
                phases = self._run_per_stream(catalog, manager, config, deadline)
            async with aclosing(phases) as events:
                async for event in events:
                    yield event
            yield self._checkpoint(manager)
            self._transition(SyncPhase.DONE)
        except SyncTimeout as exc:
            if manager is not None:
                yield self._checkpoint(manager)
            self._fail(exc)
            raise
        except Exception as exc:
            self._fail(exc)
            raise

    async def _run_global(
        self,
        catalog: Sequence[ConfiguredStream],
        manager: StateManager,
        config: RunConfig,
        deadline: Optional[float],
    ) -> AsyncIterator[SyncEvent]:
        incremental = [configured for configured in catalog if configured.is_incremental]
        full_refresh = [configured for configured in catalog if not configured.is_incremental]
        to_snapshot = select_snapshot_streams(catalog, manager.snapshot(), config.defer_initial_snapshot)

        resume_from = manager.shared_position
        if incremental and resume_from is None:
            # nothing saved yet: changes are replayed from the log tip as of now
            resume_from = await self._transport.current_position()
            log_event(logger, "sync.start_position", position=resume_from)

        snapshot_streams = full_refresh + to_snapshot
        if snapshot_streams:
            self._transition(SyncPhase.SNAPSHOTTING)
            async with aclosing(self._snapshot(snapshot_streams, manager, config, deadline, resume_from)) as events:
                async for event in events:
                    yield event
        # snapshot cursors are all released past this point

        if self._cancelled:
            return
        self._transition(SyncPhase.STREAMING)
        if not incremental:
            return
        manager.advance_position(resume_from)
        async with aclosing(self._stream(incremental, manager, config, deadline)) as events:
            async for event in events:
                yield event

    async def _snapshot(
        self,
        streams: Sequence[ConfiguredStream],
        manager: StateManager,
        config: RunConfig,
        deadline: Optional[float],
        position: Optional[ReplicationPosition],
    ) -> AsyncIterator[SyncEvent]:
        by_id: Dict[StreamIdentifier, ConfiguredStream] = {configured.stream: configured for configured in streams}
        producer = SnapshotProducer(
            self._snapshot_source,
            max_transient_retries=config.max_transient_retries,
            concurrency=config.snapshot_concurrency,
        )
        async with aclosing(producer.produce(streams)) as items:
            while not self._cancelled:
                try:
                    item = await self._next(items, deadline)
                except StopAsyncIteration:
                    break
                configured = by_id[item.stream]
                if isinstance(item, StreamSnapshotted):
                    if configured.is_incremental:
                        manager.advance_position(position)
                        manager.mark_stream_snapshot_complete(item.stream)
                        yield self._checkpoint(manager)
                    continue
                if configured.is_incremental:
                    item = Record(
                        stream=item.stream,
                        data=snapshot_record_data(item.data, position, item.emitted_at),
                        position=position,
                        emitted_at=item.emitted_at,
                    )
                yield item
                RECORDS_EMITTED.labels(SyncPhase.SNAPSHOTTING.value).inc()

    async def _stream(
        self,
        streams: Sequence[ConfiguredStream],
        manager: StateManager,
        config: RunConfig,
        deadline: Optional[float],
    ) -> AsyncIterator[SyncEvent]:
        stream_ids = frozenset(configured.stream for configured in streams)
        stop_at = await self._transport.current_position() if config.bounded else None
        policy = _CheckpointPolicy(config, self._clock)
        resume_from = manager.shared_position
        last_checkpoint = manager.snapshot()
        attempts = 0
        while True:
            reader = ChangeStreamReader(self._transport, streams=stream_ids, stop_at=stop_at)
            self._reader = reader
            if self._cancelled:
                reader.cancel()
            try:
                async with aclosing(reader.read(resume_from)) as events:
                    while not self._cancelled:
                        try:
                            event = await self._next(events, deadline)
                        except StopAsyncIteration:
                            break
                        if event is not None:
                            yield Record(stream=event.stream, data=change_record_data(event), position=event.position)
                            RECORDS_EMITTED.labels(SyncPhase.STREAMING.value).inc()
                            manager.advance_position(event.position)
                            policy.record()
                        if policy.due():
                            checkpoint = self._checkpoint(manager)
                            yield checkpoint
                            last_checkpoint = checkpoint.state
                            policy.reset()
                return
            except TransientIOError as exc:
                attempts += 1
                if attempts > config.max_transient_retries:
                    raise
                TRANSIENT_RETRIES.labels(SyncPhase.STREAMING.value).inc()
                resume_from = last_checkpoint.global_state.shared_position
                logger.warning(
                    "Reopening change stream from last checkpoint",
                    extra={"attempt": attempts, "position": str(resume_from), "error": str(exc)},
                )
            finally:
                self._reader = None

    async def _run_per_stream(
        self,
        catalog: Sequence[ConfiguredStream],
        manager: StateManager,
        config: RunConfig,
        deadline: Optional[float],
    ) -> AsyncIterator[SyncEvent]:
        if not catalog:
            return
        self._transition(SyncPhase.SNAPSHOTTING)
        by_id = {configured.stream: configured for configured in catalog}
        cursors = {configured.stream: manager.cursor(configured.stream) for configured in catalog if configured.is_incremental}
        producer = SnapshotProducer(
            self._snapshot_source,
            max_transient_retries=config.max_transient_retries,
            concurrency=config.snapshot_concurrency,
        )
        policy = _CheckpointPolicy(config, self._clock)
        # last cursor value delivered per stream, committed once a greater value arrives
        delivered: Dict[StreamIdentifier, Any] = {}
        async with aclosing(producer.produce(catalog, cursors)) as items:
            while not self._cancelled:
                try:
                    item = await self._next(items, deadline)
                except StopAsyncIteration:
                    break
                configured = by_id[item.stream]
                if not configured.is_incremental:
                    if not isinstance(item, StreamSnapshotted):
                        yield item
                        RECORDS_EMITTED.labels(SyncPhase.SNAPSHOTTING.value).inc()
                    continue
                cursor_field = configured.effective_cursor_field
                if isinstance(item, StreamSnapshotted):
                    if item.stream in delivered:
                        manager.advance_stream_cursor(item.stream, cursor_field, delivered.pop(item.stream))
                    yield self._checkpoint(manager)
                    policy.reset()
                    continue
                value = item.data.get(cursor_field)
                previous = delivered.get(item.stream)
                if value is not None and previous is not None and previous < value:
                    manager.advance_stream_cursor(item.stream, cursor_field, previous)
                if policy.due():
                    yield self._checkpoint(manager)
                    policy.reset()
                yield item
                RECORDS_EMITTED.labels(SyncPhase.SNAPSHOTTING.value).inc()
                if value is not None and (previous is None or previous < value):
                    delivered[item.stream] = value
                policy.record()

    async def _next(self, items: AsyncIterator[Any], deadline: Optional[float]) -> Any:
        if deadline is None:
            return await items.__anext__()
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise SyncTimeout("sync ran past its deadline", phase=self._phase.value)
        try:
            return await asyncio.wait_for(items.__anext__(), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise SyncTimeout("sync ran past its deadline", phase=self._phase.value) from exc

    def _checkpoint(self, manager: StateManager) -> Checkpoint:
        CHECKPOINTS_EMITTED.inc()
        return Checkpoint(state=manager.snapshot())

    def _transition(self, phase: SyncPhase) -> None:
        SYNC_PHASE.labels(self._phase.value).set(0)
        SYNC_PHASE.labels(phase.value).set(1)
        self._phase = phase
        self._history.append(phase)
        set_sync_phase(phase.value)
        log_event(logger, "sync.phase", phase=phase.value)

    def _fail(self, exc: BaseException) -> None:
        SYNC_FAILURES.labels(type(exc).__name__).inc()
        if isinstance(exc, SyncError):
            logger.error("Sync failed", extra={"error": type(exc).__name__, **exc.context()})
        else:
            logger.exception("Sync failed")
        self._transition(SyncPhase.FAILED)
