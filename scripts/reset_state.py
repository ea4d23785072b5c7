from __future__ import annotations

import asyncio
import json
from typing import List

from cdc.models import StreamIdentifier
from cdc.state import reset_streams
from connectors.state_store import clear_state, load_state, save_state


def _parse_stream(value: str) -> StreamIdentifier:
    namespace, _, name = value.rpartition(".")
    return StreamIdentifier(name=name, namespace=namespace or None)


async def main(sync_name: str, streams: List[str], drop_all: bool = False) -> None:
    if drop_all:
        await clear_state(sync_name)
        print(json.dumps({"sync": sync_name, "state": None}))
        return
    state = await load_state(sync_name)
    if state is None:
        raise SystemExit(f"No saved state for {sync_name}")
    if not streams:
        raise SystemExit("Name at least one stream to reset, or pass --all")
    updated = reset_streams(state, [_parse_stream(stream) for stream in streams])
    await save_state(sync_name, updated)
    print(json.dumps({"sync": sync_name, "state": updated.to_json()}, indent=2, default=str))


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Reset saved sync progress so streams are read again")
    parser.add_argument("sync", help="Sync name the state is stored under")
    parser.add_argument("streams", nargs="*", help="Streams to re-snapshot, as namespace.name")
    parser.add_argument("--all", action="store_true", dest="drop_all", help="Drop the whole saved state")
    args = parser.parse_args()
    asyncio.run(main(args.sync, args.streams, args.drop_all))
