from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional, Sequence, Union

from cdc.errors import SnapshotFailure, TransientIOError
from cdc.metrics import TRANSIENT_RETRIES
from cdc.models import ConfiguredStream, Record, StreamIdentifier
from connectors.base import SnapshotSource
from core.logging import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamSnapshotted:
    """Emitted once a stream's rows have all been delivered and its resources released."""

    stream: StreamIdentifier
    rows: int


SnapshotItem = Union[Record, StreamSnapshotted]


@dataclass(frozen=True)
class _WorkerFailed:
    error: BaseException


_WORKER_DONE = object()


class SnapshotProducer:
    def __init__(
        self,
        source: SnapshotSource,
        max_transient_retries: int = 0,
        concurrency: int = 1,
        queue_size: int = 1000,
    ) -> None:
        self._source = source
        self._max_transient_retries = max_transient_retries
        self._concurrency = max(concurrency, 1)
        self._queue_size = queue_size

    async def produce(
        self,
        streams: Sequence[ConfiguredStream],
        cursors: Optional[Mapping[StreamIdentifier, Any]] = None,
    ) -> AsyncIterator[SnapshotItem]:
        cursors = cursors or {}
        if self._concurrency == 1 or len(streams) <= 1:
            for configured in streams:
                async with aclosing(self._read_with_retry(configured, cursors.get(configured.stream))) as items:
                    async for item in items:
                        yield item
            return

        async with aclosing(self._produce_concurrently(streams, cursors)) as items:
            async for item in items:
                yield item

    async def _read_with_retry(self, configured: ConfiguredStream, cursor: Optional[Any]) -> AsyncIterator[SnapshotItem]:
        attempt = 0
        while True:
            try:
                async with aclosing(self._read_stream(configured, cursor)) as items:
                    async for item in items:
                        yield item
                return
            except TransientIOError as exc:
                attempt += 1
                if attempt > self._max_transient_retries:
                    raise SnapshotFailure(
                        f"snapshot gave up after {attempt} attempts: {exc.message}",
                        stream=configured.stream,
                        phase="snapshot",
                    ) from exc
                TRANSIENT_RETRIES.labels("snapshot").inc()
                logger.warning("Restarting stream snapshot", extra={"stream": str(configured.stream), "attempt": attempt})
            except SnapshotFailure:
                raise
            except Exception as exc:
                raise SnapshotFailure(f"snapshot failed: {exc}", stream=configured.stream, phase="snapshot") from exc

    async def _read_stream(self, configured: ConfiguredStream, cursor: Optional[Any]) -> AsyncIterator[SnapshotItem]:
        rows = 0
        log_event(logger, "snapshot.stream_start", stream=str(configured.stream), cursor=cursor)
        try:
            async with self._source.open(configured, cursor) as results:
                async for row in results:
                    rows += 1
                    yield Record(stream=configured.stream, data=row)
        except OSError as exc:
            raise TransientIOError(str(exc), stream=configured.stream, phase="snapshot") from exc
        log_event(logger, "snapshot.stream_complete", stream=str(configured.stream), rows=rows)
        yield StreamSnapshotted(stream=configured.stream, rows=rows)

    async def _produce_concurrently(
        self,
        streams: Sequence[ConfiguredStream],
        cursors: Mapping[StreamIdentifier, Any],
    ) -> AsyncIterator[SnapshotItem]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(configured: ConfiguredStream) -> None:
            async with semaphore:
                try:
                    async with aclosing(self._read_with_retry(configured, cursors.get(configured.stream))) as items:
                        async for item in items:
                            await queue.put(item)
                except Exception as exc:
                    await queue.put(_WorkerFailed(exc))
                    return
            await queue.put(_WORKER_DONE)

        tasks = [asyncio.create_task(worker(configured)) for configured in streams]
        remaining = len(tasks)
        try:
            while remaining:
                item = await queue.get()
                if item is _WORKER_DONE:
                    remaining -= 1
                    continue
                if isinstance(item, _WorkerFailed):
                    raise item.error
                yield item
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
