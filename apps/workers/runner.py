from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from cdc.models import Checkpoint, ConfiguredStream, Record, SyncState
from cdc.orchestrator import RunConfig, SyncOrchestrator
from connectors import state_store
from core.cache import ValkeyClient, valkey_client
from core.config import settings
from core.logging import configure_logging, log_event, set_sync_id

logger = logging.getLogger("cdc.worker")
configure_logging(settings.log_level)


class SyncRunner:
    """Wraps one orchestrator: loads the last checkpoint, forwards records to the queue, persists checkpoints."""

    def __init__(
        self,
        name: str,
        orchestrator: SyncOrchestrator,
        catalog: Sequence[ConfiguredStream],
        config: Optional[RunConfig] = None,
        cache: ValkeyClient | None = None,
        store: Any = None,
        queue: str | None = None,
    ) -> None:
        self.name = name
        self._orchestrator = orchestrator
        self._catalog = list(catalog)
        self._config = config or RunConfig.from_settings(settings)
        self._cache = cache or valkey_client
        self._store = store or state_store
        self._queue = queue or settings.record_queue
        self._lock = asyncio.Lock()

    def cancel(self) -> None:
        self._orchestrator.cancel()

    async def run_once(self) -> Optional[SyncState]:
        if self._lock.locked():
            logger.warning("Sync already running, skipping", extra={"sync": self.name})
            return None
        async with self._lock:
            set_sync_id()
            prior = await self._store.load_state(self.name)
            latest = prior
            records = 0
            log_event(logger, "sync.run_start", sync=self.name, has_state=prior is not None)
            async for event in self._orchestrator.run(self._catalog, prior, self._config):
                if isinstance(event, Record):
                    await self._cache.enqueue(self._queue, event.to_payload())
                    records += 1
                elif isinstance(event, Checkpoint):
                    await self._store.save_state(self.name, event.state)
                    latest = event.state
            log_event(logger, "sync.run_complete", sync=self.name, records=records)
            return latest
