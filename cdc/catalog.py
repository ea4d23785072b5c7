"""Catalog discovery and validation.

Discovery output describes what a source offers; a configured catalog is what
the caller asked for. Everything here returns new values instead of editing
descriptors in place.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cdc.errors import ConfigError
from cdc.metadata import METADATA_COLUMNS
from cdc.models import ConfiguredStream, SourceCapabilities, StateMode, StreamIdentifier, SyncMode

logger = logging.getLogger(__name__)


class StreamDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream: StreamIdentifier
    columns: Dict[str, str] = Field(default_factory=dict)
    json_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    supported_sync_modes: Tuple[SyncMode, ...] = (SyncMode.FULL_REFRESH,)
    source_defined_primary_key: Tuple[str, ...] = ()
    source_defined_cursor: bool = False
    default_cursor_field: Optional[str] = None


def is_cdc(config: Mapping[str, Any]) -> bool:
    method = config.get("replication_method") or {}
    enabled = isinstance(method, Mapping) and bool(method.get("replication_slot")) and bool(method.get("publication"))
    logger.info("Resolved replication method", extra={"cdc": enabled})
    return enabled


def capabilities_from_config(config: Mapping[str, Any], **overrides: Any) -> SourceCapabilities:
    mode = StateMode.GLOBAL if is_cdc(config) else StateMode.STREAM
    return SourceCapabilities(state_mode=mode, **overrides)


def cursor_fields(descriptor: StreamDescriptor, capabilities: SourceCapabilities) -> List[str]:
    return [name for name, column_type in descriptor.columns.items() if column_type.lower() in capabilities.allowed_cursor_types]


def prepare_for_cdc(descriptor: StreamDescriptor) -> StreamDescriptor:
    modes: Tuple[SyncMode, ...] = (SyncMode.FULL_REFRESH, SyncMode.INCREMENTAL)
    # logical replication cannot rebuild rows without a key, so keyless tables are full refresh only
    if not descriptor.source_defined_primary_key:
        modes = (SyncMode.FULL_REFRESH,)
    schema = dict(descriptor.json_schema)
    properties = dict(schema.get("properties") or {})
    properties.update({name: dict(spec) for name, spec in METADATA_COLUMNS.items()})
    schema["properties"] = properties
    return descriptor.model_copy(
        update={
            "supported_sync_modes": modes,
            "source_defined_cursor": SyncMode.INCREMENTAL in modes,
            "json_schema": schema,
        }
    )


def discover(descriptors: Iterable[StreamDescriptor], capabilities: SourceCapabilities) -> List[StreamDescriptor]:
    discovered: List[StreamDescriptor] = []
    for descriptor in descriptors:
        if descriptor.stream.namespace in capabilities.excluded_namespaces:
            continue
        if capabilities.supports_global_position:
            descriptor = prepare_for_cdc(descriptor)
        discovered.append(descriptor)
    return discovered


def configure_stream(descriptor: StreamDescriptor, sync_mode: SyncMode, cursor_field: Optional[str] = None) -> ConfiguredStream:
    if sync_mode not in descriptor.supported_sync_modes:
        raise ConfigError(f"sync mode {sync_mode.value} is not supported", stream=descriptor.stream)
    try:
        return ConfiguredStream(
            stream=descriptor.stream,
            sync_mode=sync_mode,
            cursor_field=cursor_field,
            source_defined_cursor=descriptor.source_defined_cursor,
            default_cursor_field=descriptor.default_cursor_field,
            primary_key=descriptor.source_defined_primary_key,
        )
    except ValidationError as exc:
        raise ConfigError(str(exc), stream=descriptor.stream) from exc


def validate_catalog(catalog: Sequence[ConfiguredStream], capabilities: SourceCapabilities) -> None:
    seen = set()
    for configured in catalog:
        if configured.stream in seen:
            raise ConfigError("stream configured more than once", stream=configured.stream)
        seen.add(configured.stream)
        if configured.stream.namespace in capabilities.excluded_namespaces:
            raise ConfigError("stream lives in an excluded internal namespace", stream=configured.stream)
        if (
            configured.is_incremental
            and capabilities.state_mode is StateMode.STREAM
            and configured.effective_cursor_field is None
        ):
            raise ConfigError("incremental stream needs a cursor field", stream=configured.stream)
