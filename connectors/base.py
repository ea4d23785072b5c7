from __future__ import annotations

import abc
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Optional

from cdc.models import ChangeEvent, ConfiguredStream, ReplicationPosition

Row = Dict[str, Any]


class SnapshotSource(abc.ABC):
    """Database-access side of a snapshot: runs the full (or after-cursor) query for one stream."""

    @abc.abstractmethod
    def open(self, stream: ConfiguredStream, cursor: Optional[Any] = None) -> AsyncContextManager[AsyncIterator[Row]]:
        """Acquire a connection/cursor for ``stream`` and yield its rows.

        Rows of an incremental stream are always ordered by its cursor column.
        With ``cursor`` set, only rows whose cursor column sorts after it are
        returned. Resources are released on exit.
        """


class ChangeTransport(abc.ABC):
    """Log-based replication transport, consumed as an opaque ordered event source."""

    @abc.abstractmethod
    async def current_position(self) -> ReplicationPosition:
        """Position of the tip of the change log right now."""

    @abc.abstractmethod
    def open(self, resume_from: Optional[ReplicationPosition]) -> AsyncContextManager[AsyncIterator[Optional[ChangeEvent]]]:
        """Start replaying committed changes from ``resume_from``.

        The iterator yields ``None`` when a poll returned nothing. Raises
        ``PositionExpired`` when ``resume_from`` is no longer retained.
        """
