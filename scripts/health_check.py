from __future__ import annotations

import asyncio
import json
from typing import Any, Dict

from cdc.models import StateMode
from connectors.state_store import list_synced, load_state
from core.cache import valkey_client


async def check_valkey() -> bool:
    return await valkey_client.ping()


async def describe_syncs() -> Dict[str, Any]:
    summary: Dict[str, Any] = {}
    for name in await list_synced():
        state = await load_state(name)
        if state is None:
            continue
        if state.mode is StateMode.GLOBAL:
            summary[name] = {
                "mode": state.mode.value,
                "position": state.global_state.shared_position,
                "snapshotted": sorted(str(stream) for stream in state.global_state.streams_initial_sync),
            }
        else:
            summary[name] = {
                "mode": state.mode.value,
                "cursors": {str(entry.stream): entry.state.cursor for entry in state.streams},
            }
    return summary


async def main() -> None:
    valkey_status = await check_valkey()
    result = {
        "valkey": valkey_status,
        "syncs": await describe_syncs() if valkey_status else {},
    }
    print(json.dumps(result, indent=2, default=str))
    await valkey_client.close()


if __name__ == "__main__":
    asyncio.run(main())
