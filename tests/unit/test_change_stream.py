from contextlib import asynccontextmanager
from typing import List, Optional

import pytest

from cdc.change_stream import ChangeStreamReader
from cdc.errors import PositionExpired, TransientIOError
from cdc.models import ChangeEvent, ChangeOperation, StreamIdentifier
from connectors.base import ChangeTransport


def sid(name: str) -> StreamIdentifier:
    return StreamIdentifier(namespace="public", name=name)


def change(position: int, name: str = "users") -> ChangeEvent:
    return ChangeEvent(stream=sid(name), operation=ChangeOperation.INSERT, position=position, after={"id": position})


class FakeTransport(ChangeTransport):
    def __init__(self, events: List[Optional[ChangeEvent]], tip: int = 0, oldest: Optional[int] = None, fail_after: Optional[int] = None) -> None:
        self.events = events
        self.tip = tip
        self.oldest = oldest
        self.fail_after = fail_after
        self.log: List[str] = []

    async def current_position(self):
        return self.tip

    @asynccontextmanager
    async def open(self, resume_from):
        self.log.append("acquire")
        try:
            if self.oldest is not None and resume_from is not None and resume_from < self.oldest:
                raise PositionExpired("replication slot no longer holds the position", position=resume_from)
            yield self._iterate()
        finally:
            self.log.append("release")

    async def _iterate(self):
        for index, event in enumerate(self.events):
            if self.fail_after is not None and index == self.fail_after:
                raise ConnectionResetError("connection reset by peer")
            yield event


async def drain(reader: ChangeStreamReader, resume_from) -> List[Optional[ChangeEvent]]:
    return [event async for event in reader.read(resume_from)]


@pytest.mark.asyncio
async def test_replays_from_resume_position_in_order():
    transport = FakeTransport([change(1), change(2), change(3), change(3), change(4)])
    reader = ChangeStreamReader(transport)
    events = await drain(reader, 3)
    assert [event.position for event in events] == [3, 3, 4]
    assert transport.log == ["acquire", "release"]
    assert reader.position == 4


@pytest.mark.asyncio
async def test_redelivered_positions_are_dropped():
    transport = FakeTransport([change(5), change(6), change(4), change(6), change(7)])
    events = await drain(ChangeStreamReader(transport), None)
    assert [event.position for event in events] == [5, 6, 6, 7]


@pytest.mark.asyncio
async def test_idle_polls_are_forwarded_not_treated_as_end():
    transport = FakeTransport([None, change(1), None, None, change(2)])
    events = await drain(ChangeStreamReader(transport), 0)
    assert events[0] is None
    assert [event.position for event in events if event is not None] == [1, 2]
    assert len(events) == 5


@pytest.mark.asyncio
async def test_events_for_unselected_streams_are_filtered():
    transport = FakeTransport([change(1, "users"), change(2, "audit"), change(3, "users")])
    reader = ChangeStreamReader(transport, streams=frozenset({sid("users")}))
    events = await drain(reader, None)
    assert [event.position for event in events] == [1, 3]


@pytest.mark.asyncio
async def test_bounded_read_stops_at_target():
    transport = FakeTransport([change(1), change(2), change(3), change(4)])
    reader = ChangeStreamReader(transport, stop_at=2)
    events = await drain(reader, 0)
    assert [event.position for event in events] == [1, 2]
    assert transport.log == ["acquire", "release"]


@pytest.mark.asyncio
async def test_bounded_read_stops_on_idle_once_caught_up():
    transport = FakeTransport([None, change(9)])
    reader = ChangeStreamReader(transport, stop_at=5)
    assert await drain(reader, 5) == []


@pytest.mark.asyncio
async def test_cancel_stops_delivery_and_releases_transport():
    transport = FakeTransport([change(1), change(2), change(3)])
    reader = ChangeStreamReader(transport)
    delivered = []
    async for event in reader.read(0):
        delivered.append(event)
        reader.cancel()
    assert [event.position for event in delivered] == [1]
    assert transport.log == ["acquire", "release"]
    assert not reader.is_open


@pytest.mark.asyncio
async def test_transport_errors_become_transient():
    transport = FakeTransport([change(1), change(2), change(3)], fail_after=2)
    reader = ChangeStreamReader(transport)
    delivered = []
    with pytest.raises(TransientIOError) as excinfo:
        async for event in reader.read(0):
            delivered.append(event)
    assert excinfo.value.position == 2
    assert excinfo.value.phase == "streaming"
    assert transport.log == ["acquire", "release"]


@pytest.mark.asyncio
async def test_expired_position_is_fatal():
    transport = FakeTransport([change(30)], oldest=20)
    with pytest.raises(PositionExpired):
        await drain(ChangeStreamReader(transport), 10)
    assert transport.log == ["acquire", "release"]


@pytest.mark.asyncio
async def test_only_one_open_read_per_reader():
    transport = FakeTransport([change(1), change(2)])
    reader = ChangeStreamReader(transport)
    first = reader.read(0)
    await first.__anext__()
    with pytest.raises(RuntimeError):
        await reader.read(0).__anext__()
    await first.aclose()
    assert transport.log == ["acquire", "release"]
