from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

registry = CollectorRegistry()
RECORDS_EMITTED = Counter("cdc_records_emitted", "Records delivered to the caller", ["phase"], registry=registry)
CHECKPOINTS_EMITTED = Counter("cdc_checkpoints_emitted", "Checkpoint events delivered to the caller", registry=registry)
SYNC_FAILURES = Counter("cdc_sync_failures", "Sync invocations that ended in the failed phase", ["error"], registry=registry)
TRANSIENT_RETRIES = Counter("cdc_transient_retries", "Phase restarts after a transient I/O error", ["phase"], registry=registry)
SYNC_PHASE = Gauge("cdc_sync_phase", "Current orchestrator phase (1 for the active phase)", ["phase"], registry=registry)


def serve_metrics(port: int) -> None:
    """Expose the sync registry on ``/metrics`` from a background thread."""
    start_http_server(port, registry=registry)