from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cdc.models import ChangeEvent, ChangeOperation, ReplicationPosition

CDC_POSITION = "_cdc_position"
CDC_UPDATED_AT = "_cdc_updated_at"
CDC_DELETED_AT = "_cdc_deleted_at"

METADATA_COLUMNS: Dict[str, Dict[str, str]] = {
    CDC_POSITION: {"type": "number"},
    CDC_UPDATED_AT: {"type": "string"},
    CDC_DELETED_AT: {"type": "string"},
}


def change_record_data(event: ChangeEvent) -> Dict[str, Any]:
    """Row image for a change event, stamped with the CDC metadata columns."""
    committed = event.committed_at or datetime.now(timezone.utc)
    if event.operation is ChangeOperation.DELETE:
        data = dict(event.before or event.after or {})
        deleted_at: Optional[str] = committed.isoformat()
    else:
        data = dict(event.after or {})
        deleted_at = None
    data[CDC_POSITION] = event.position
    data[CDC_UPDATED_AT] = committed.isoformat()
    data[CDC_DELETED_AT] = deleted_at
    return data


def snapshot_record_data(row: Dict[str, Any], position: ReplicationPosition, read_at: datetime) -> Dict[str, Any]:
    data = dict(row)
    data[CDC_POSITION] = position
    data[CDC_UPDATED_AT] = read_at.isoformat()
    data[CDC_DELETED_AT] = None
    return data
