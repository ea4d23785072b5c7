from __future__ import annotations

from typing import List, Optional

from cdc.models import SyncState
from core.cache import valkey_client
from core.config import settings


def _state_key(connector_name: str) -> str:
    return f"{settings.state_key_prefix}:{connector_name}:state"


async def load_state(connector_name: str) -> Optional[SyncState]:
    payload = await valkey_client.get(_state_key(connector_name))
    if not payload:
        return None
    return SyncState.from_json(payload)


async def save_state(connector_name: str, state: SyncState) -> None:
    await valkey_client.set(_state_key(connector_name), state.to_json())


async def clear_state(connector_name: str) -> None:
    await valkey_client.delete(_state_key(connector_name))


async def list_synced() -> List[str]:
    prefix = f"{settings.state_key_prefix}:"
    keys = await valkey_client.keys(f"{prefix}*:state")
    return sorted(key[len(prefix) : -len(":state")] for key in keys)
