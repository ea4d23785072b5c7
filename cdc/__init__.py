from .errors import ConfigError, PositionExpired, SnapshotFailure, SyncError, SyncTimeout, TransientIOError
from .models import (
    CdcState,
    ChangeEvent,
    ChangeOperation,
    Checkpoint,
    ConfiguredStream,
    Record,
    SourceCapabilities,
    StateMode,
    StreamIdentifier,
    StreamState,
    SyncMode,
    SyncState,
)
from .orchestrator import RunConfig, SyncOrchestrator, SyncPhase

__all__ = [
    "CdcState",
    "ChangeEvent",
    "ChangeOperation",
    "Checkpoint",
    "ConfigError",
    "ConfiguredStream",
    "PositionExpired",
    "Record",
    "RunConfig",
    "SnapshotFailure",
    "SourceCapabilities",
    "StateMode",
    "StreamIdentifier",
    "StreamState",
    "SyncError",
    "SyncMode",
    "SyncOrchestrator",
    "SyncPhase",
    "SyncState",
    "SyncTimeout",
    "TransientIOError",
]
