from __future__ import annotations

import logging
from typing import AbstractSet, AsyncIterator, Optional

from cdc.errors import TransientIOError
from cdc.models import ChangeEvent, ReplicationPosition, StreamIdentifier
from connectors.base import ChangeTransport
from core.logging import log_event

logger = logging.getLogger(__name__)


class ChangeStreamReader:
    """Replays committed changes after a resume position.

    ``read`` yields change events in log order, plus ``None`` whenever the
    transport polled empty, so callers can act on idle time. Events behind the
    resume position or the last delivered position are re-deliveries and are
    dropped; events sharing a position keep their arrival order.
    """

    def __init__(
        self,
        transport: ChangeTransport,
        streams: Optional[AbstractSet[StreamIdentifier]] = None,
        stop_at: Optional[ReplicationPosition] = None,
    ) -> None:
        self._transport = transport
        self._streams = streams
        self._stop_at = stop_at
        self._open = False
        self._cancelled = False
        self._position: Optional[ReplicationPosition] = None

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def position(self) -> Optional[ReplicationPosition]:
        return self._position

    def cancel(self) -> None:
        self._cancelled = True

    async def read(self, resume_from: Optional[ReplicationPosition]) -> AsyncIterator[Optional[ChangeEvent]]:
        if self._open:
            raise RuntimeError("change stream reader is already open")
        self._open = True
        self._position = resume_from
        log_event(logger, "stream.open", resume_from=resume_from, stop_at=self._stop_at)
        try:
            async with self._transport.open(resume_from) as events:
                async for event in events:
                    if self._cancelled:
                        break
                    if event is None:
                        if self._reached_target():
                            break
                        yield None
                        continue
                    if self._position is not None and event.position < self._position:
                        logger.debug("Dropping re-delivered change", extra={"position": str(event.position)})
                        continue
                    if self._stop_at is not None and self._stop_at < event.position:
                        break
                    self._position = event.position
                    if self._streams is not None and event.stream not in self._streams:
                        if self._reached_target():
                            break
                        continue
                    yield event
                    if self._cancelled or self._reached_target():
                        break
        except OSError as exc:
            raise TransientIOError(f"change transport failed: {exc}", position=self._position, phase="streaming") from exc
        finally:
            self._open = False
            log_event(logger, "stream.closed", position=self._position, cancelled=self._cancelled)

    def _reached_target(self) -> bool:
        if self._stop_at is None or self._position is None:
            return False
        return not self._position < self._stop_at
