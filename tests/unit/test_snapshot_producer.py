import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest

from cdc.errors import SnapshotFailure
from cdc.models import ConfiguredStream, Record, StreamIdentifier, SyncMode
from cdc.snapshot import SnapshotProducer, StreamSnapshotted
from connectors.base import SnapshotSource


def sid(name: str) -> StreamIdentifier:
    return StreamIdentifier(namespace="public", name=name)


def configured(name: str, cursor_field: Optional[str] = None) -> ConfiguredStream:
    mode = SyncMode.INCREMENTAL if cursor_field else SyncMode.FULL_REFRESH
    return ConfiguredStream(stream=sid(name), sync_mode=mode, cursor_field=cursor_field)


class FakeSnapshotSource(SnapshotSource):
    def __init__(self, tables: Dict[str, List[Dict[str, Any]]], failures: Optional[Dict[str, List[BaseException]]] = None) -> None:
        self.tables = tables
        self.failures = failures or {}
        self.log: List[str] = []
        self.cursors: Dict[str, Any] = {}

    @asynccontextmanager
    async def open(self, stream, cursor=None):
        name = stream.stream.name
        self.log.append(f"acquire:{name}")
        self.cursors[name] = cursor
        try:
            yield self._rows(stream, cursor)
        finally:
            self.log.append(f"release:{name}")

    async def _rows(self, stream, cursor):
        name = stream.stream.name
        pending = self.failures.get(name) or []
        for index, row in enumerate(self.tables[name]):
            if pending and index == 1:
                raise pending.pop(0)
            field = stream.effective_cursor_field
            if cursor is not None and field and not row[field] > cursor:
                continue
            await asyncio.sleep(0)
            yield row


async def drain(producer: SnapshotProducer, streams, cursors=None) -> List[Any]:
    return [item async for item in producer.produce(streams, cursors)]


@pytest.mark.asyncio
async def test_streams_are_read_in_catalog_order_and_released_before_the_next():
    source = FakeSnapshotSource({"users": [{"id": 1}, {"id": 2}], "orders": [{"id": 10}]})
    items = await drain(SnapshotProducer(source), [configured("users"), configured("orders")])

    assert [type(item) for item in items] == [Record, Record, StreamSnapshotted, Record, StreamSnapshotted]
    assert items[2] == StreamSnapshotted(stream=sid("users"), rows=2)
    assert [item.data["id"] for item in items if isinstance(item, Record)] == [1, 2, 10]
    assert source.log == ["acquire:users", "release:users", "acquire:orders", "release:orders"]


@pytest.mark.asyncio
async def test_transient_failure_restarts_the_stream_from_scratch():
    source = FakeSnapshotSource(
        {"users": [{"id": 1}, {"id": 2}, {"id": 3}]},
        failures={"users": [ConnectionResetError("server closed the connection")]},
    )
    items = await drain(SnapshotProducer(source, max_transient_retries=1), [configured("users")])
    rows = [item.data["id"] for item in items if isinstance(item, Record)]
    assert rows == [1, 1, 2, 3]
    assert items[-1] == StreamSnapshotted(stream=sid("users"), rows=3)
    assert source.log == ["acquire:users", "release:users", "acquire:users", "release:users"]


@pytest.mark.asyncio
async def test_exhausted_retries_abort_the_whole_snapshot():
    source = FakeSnapshotSource(
        {"users": [{"id": 1}], "orders": [{"id": 1}, {"id": 2}]},
        failures={"orders": [ConnectionResetError("reset"), ConnectionResetError("reset again")]},
    )
    producer = SnapshotProducer(source, max_transient_retries=1)
    with pytest.raises(SnapshotFailure) as excinfo:
        await drain(producer, [configured("users"), configured("orders")])
    assert excinfo.value.stream == sid("orders")
    assert excinfo.value.phase == "snapshot"
    assert source.log[-1] == "release:orders"


@pytest.mark.asyncio
async def test_non_transient_error_is_a_snapshot_failure():
    source = FakeSnapshotSource({"users": [{"id": 1}, {"id": 2}]}, failures={"users": [ValueError("bad row")]})
    with pytest.raises(SnapshotFailure):
        await drain(SnapshotProducer(source, max_transient_retries=5), [configured("users")])
    assert source.log == ["acquire:users", "release:users"]


@pytest.mark.asyncio
async def test_cursor_is_handed_to_the_source():
    source = FakeSnapshotSource({"items": [{"id": 1, "updated_at": 1}, {"id": 2, "updated_at": 2}, {"id": 3, "updated_at": 3}]})
    items = await drain(SnapshotProducer(source), [configured("items", "updated_at")], {sid("items"): 1})
    assert [item.data["id"] for item in items if isinstance(item, Record)] == [2, 3]
    assert source.cursors == {"items": 1}


@pytest.mark.asyncio
async def test_closing_early_releases_the_open_stream():
    source = FakeSnapshotSource({"users": [{"id": 1}, {"id": 2}, {"id": 3}]})
    produced = SnapshotProducer(source).produce([configured("users")])
    first = await produced.__anext__()
    assert first.data == {"id": 1}
    await produced.aclose()
    assert source.log == ["acquire:users", "release:users"]


@pytest.mark.asyncio
async def test_parallel_workers_keep_each_stream_ordered():
    tables = {name: [{"id": index} for index in range(20)] for name in ("a", "b", "c")}
    source = FakeSnapshotSource(tables)
    items = await drain(SnapshotProducer(source, concurrency=3, queue_size=4), [configured(name) for name in tables])

    for name in tables:
        rows = [item.data["id"] for item in items if isinstance(item, Record) and item.stream == sid(name)]
        assert rows == list(range(20))
        marker_index = items.index(StreamSnapshotted(stream=sid(name), rows=20))
        last_row_index = max(i for i, item in enumerate(items) if isinstance(item, Record) and item.stream == sid(name))
        assert marker_index > last_row_index
    assert sorted(entry for entry in source.log if entry.startswith("release")) == ["release:a", "release:b", "release:c"]


@pytest.mark.asyncio
async def test_parallel_failure_cancels_other_workers_and_releases_them():
    tables = {"a": [{"id": index} for index in range(50)], "b": [{"id": 1}, {"id": 2}]}
    source = FakeSnapshotSource(tables, failures={"b": [ValueError("corrupt page")]})
    with pytest.raises(SnapshotFailure):
        await drain(SnapshotProducer(source, concurrency=2, queue_size=1), [configured("a"), configured("b")])
    assert source.log.count("acquire:a") == source.log.count("release:a")
    assert source.log.count("acquire:b") == source.log.count("release:b")
