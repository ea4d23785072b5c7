from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Opaque, totally ordered marker in the change log (an LSN, binlog offset...).
# Positions are compared, persisted and handed back to the transport; never parsed.
ReplicationPosition = Any


class SyncMode(str, Enum):
    FULL_REFRESH = "full_refresh"
    INCREMENTAL = "incremental"


class StateMode(str, Enum):
    GLOBAL = "global"
    STREAM = "stream"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class StreamIdentifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}.{self.name}"
        return self.name


class ConfiguredStream(BaseModel):
    """A catalog entry: which stream to sync and how."""

    model_config = ConfigDict(frozen=True)

    stream: StreamIdentifier
    sync_mode: SyncMode = SyncMode.FULL_REFRESH
    cursor_field: Optional[str] = None
    source_defined_cursor: bool = False
    default_cursor_field: Optional[str] = None
    primary_key: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def _no_cursor_override(self) -> "ConfiguredStream":
        if self.source_defined_cursor and self.cursor_field is not None:
            raise ValueError(f"stream {self.stream} has a source-defined cursor; cursor_field cannot be overridden")
        return self

    @property
    def effective_cursor_field(self) -> Optional[str]:
        return self.cursor_field or self.default_cursor_field

    @property
    def is_incremental(self) -> bool:
        return self.sync_mode is SyncMode.INCREMENTAL


class CdcState(BaseModel):
    model_config = ConfigDict(frozen=True)

    shared_position: Optional[ReplicationPosition] = None
    streams_initial_sync: FrozenSet[StreamIdentifier] = frozenset()

    @property
    def is_empty(self) -> bool:
        return self.shared_position is None and not self.streams_initial_sync


class StreamState(BaseModel):
    model_config = ConfigDict(frozen=True)

    cursor_field: Optional[str] = None
    cursor: Optional[Any] = None


class StreamStateEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream: StreamIdentifier
    state: StreamState


class SyncState(BaseModel):
    """Top-level persisted progress. Either one CdcState or one StreamState per stream."""

    model_config = ConfigDict(frozen=True)

    mode: StateMode
    global_state: Optional[CdcState] = None
    streams: Tuple[StreamStateEntry, ...] = ()

    @model_validator(mode="after")
    def _mode_matches_content(self) -> "SyncState":
        if self.mode is StateMode.GLOBAL:
            if self.global_state is None:
                raise ValueError("global sync state requires a global_state")
            if self.streams:
                raise ValueError("global sync state cannot carry per-stream entries")
        elif self.global_state is not None:
            raise ValueError("per-stream sync state cannot carry a global_state")
        seen = [entry.stream for entry in self.streams]
        if len(seen) != len(set(seen)):
            raise ValueError("duplicate stream entries in sync state")
        return self

    @property
    def is_empty(self) -> bool:
        if self.mode is StateMode.GLOBAL:
            return self.global_state is None or self.global_state.is_empty
        return not self.streams

    def stream_state(self, stream: StreamIdentifier) -> Optional[StreamState]:
        for entry in self.streams:
            if entry.stream == stream:
                return entry.state
        return None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "SyncState":
        return cls.model_validate(payload)


@dataclass(frozen=True)
class SourceCapabilities:
    """What the source can do; replaces per-source subclass overrides."""

    state_mode: StateMode
    allowed_cursor_types: FrozenSet[str] = frozenset(
        {
            "timestamp",
            "timestamp_with_timezone",
            "time",
            "time_with_timezone",
            "date",
            "bit",
            "boolean",
            "tinyint",
            "smallint",
            "integer",
            "bigint",
            "float",
            "double",
            "real",
            "numeric",
            "decimal",
            "char",
            "nchar",
            "nvarchar",
            "varchar",
            "longvarchar",
            "binary",
            "blob",
        }
    )
    excluded_namespaces: FrozenSet[str] = frozenset({"information_schema", "pg_catalog", "pg_internal", "catalog_history"})

    @property
    def supports_global_position(self) -> bool:
        return self.state_mode is StateMode.GLOBAL


@dataclass(frozen=True)
class ChangeEvent:
    stream: StreamIdentifier
    operation: ChangeOperation
    position: ReplicationPosition
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    committed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Record:
    stream: StreamIdentifier
    data: Dict[str, Any]
    position: Optional[ReplicationPosition] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "record",
            "stream": self.stream.name,
            "namespace": self.stream.namespace,
            "data": self.data,
            "emitted_at": self.emitted_at.isoformat(),
        }


@dataclass(frozen=True)
class Checkpoint:
    state: SyncState

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "state", "state": self.state.to_json()}


SyncEvent = Union[Record, Checkpoint]
