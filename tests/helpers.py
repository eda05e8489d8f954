"""In-memory transports and builders shared by the sync tests."""

import asyncio
import json

from smartpark.models import ParkingStatus, Spot, VehicleType
from smartpark.relay import Relay


class FakeTransport:
    """Scripted transport: tests feed incoming text and inspect sent text."""

    def __init__(self):
        self.sent: list[str] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("transport closed")
        self.sent.append(message)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def feed(self, msg_type: str, payload: dict) -> None:
        self.incoming.put_nowait(json.dumps({"type": msg_type, "payload": payload}))

    def feed_raw(self, text: str) -> None:
        self.incoming.put_nowait(text)

    def drop(self) -> None:
        """Simulate the relay going away."""
        self.closed = True
        self.incoming.put_nowait(None)

    def sent_messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    async def __aiter__(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                return
            yield item


class RelayLink:
    """In-memory transport connecting a SyncManager straight to a Relay."""

    def __init__(self, relay: Relay):
        self.relay = relay
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.peer = None

    async def open(self) -> "RelayLink":
        self.peer = await self.relay.connect(self._deliver)
        return self

    async def _deliver(self, text: str) -> None:
        await self.incoming.put(text)

    async def send(self, message: str) -> None:
        if self.peer is None:
            raise ConnectionResetError("link closed")
        await self.relay.handle_text(self.peer, message)

    async def close(self) -> None:
        if self.peer is not None:
            await self.relay.disconnect(self.peer)
            self.peer = None
            self.incoming.put_nowait(None)

    async def __aiter__(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                return
            yield item


def relay_connector(relay: Relay, links: list | None = None):
    """Connector opening RelayLinks; opened links are appended to ``links``."""

    async def connector(url: str) -> RelayLink:
        link = await RelayLink(relay).open()
        if links is not None:
            links.append(link)
        return link

    return connector


async def wait_until(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``condition()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


def make_spots(count: int = 5, occupied: tuple[str, ...] = ()) -> list[Spot]:
    """Car spots C-01.., FREE unless listed in occupied."""
    return [
        Spot(
            id=f"C-{i:02d}",
            type=VehicleType.CAR,
            status=ParkingStatus.OCCUPIED if f"C-{i:02d}" in occupied else ParkingStatus.FREE,
        )
        for i in range(1, count + 1)
    ]


def spots_payload(count: int = 5, occupied: tuple[str, ...] = ()) -> list[dict]:
    """Wire form of make_spots()."""
    return [s.to_dict() for s in make_spots(count, occupied)]
