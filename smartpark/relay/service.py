"""Relay service holding the authoritative shared document.

The relay is the only writer of its document. Connection registration,
message handling, document mutation and fan-out all run under one lock, so
concurrent updates are applied as a strict sequence. Outgoing messages are
queued per peer and written by that peer's own sender task: a slow or dead
peer never blocks the relay or the other peers.
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable

from ..models import SharedState, now_ms
from ..sync.protocol import (
    Message,
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)

SendFunc = Callable[[str], Awaitable[None]]

_peer_ids = itertools.count(1)


class Peer:
    """A connected client and its outbound message queue."""

    def __init__(self, send: SendFunc, name: str | None = None, queue_size: int = 256):
        self.id = next(_peer_ids)
        self.name = name or f"peer-{self.id}"
        self._send = send
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self.closed = False
        self.dropped = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run_sender())

    def enqueue(self, text: str) -> bool:
        """Queue a message without waiting; a full queue drops it."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(text)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Dropping message for slow peer {self.name}")
            return False

    async def _run_sender(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                if not self.closed:
                    await self._send(text)
            except Exception as e:
                # Anything the transport raises ends delivery to this peer only
                self.closed = True
                logger.warning(f"Send to {self.name} failed, skipping peer: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued message has been sent or dropped."""
        await self._queue.join()

    async def stop(self) -> None:
        self.closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class Relay:
    """Owns one shared document and fans out updates to connected peers."""

    def __init__(self, peer_queue_size: int = 256):
        self._document = SharedState(last_updated=now_ms())
        self._peers: dict[int, Peer] = {}
        self._lock = asyncio.Lock()
        self._peer_queue_size = peer_queue_size
        self.updates_applied = 0

    @property
    def peer_count(self) -> int:
        return len(self._peers)

    def snapshot(self) -> dict[str, Any]:
        """Serialized copy of the current document."""
        return self._document.to_dict()

    async def connect(self, send: SendFunc, name: str | None = None) -> Peer:
        """Register a peer and queue the full document to it as INIT."""
        peer = Peer(send, name=name, queue_size=self._peer_queue_size)
        async with self._lock:
            self._peers[peer.id] = peer
            peer.enqueue(encode_message(MessageType.INIT, self._document.to_dict()))
            peer.start()
        logger.info(f"Client connected: {peer.name} ({self.peer_count} connected)")
        return peer

    async def disconnect(self, peer: Peer) -> None:
        """Remove a peer from the fan-out set; the document is untouched."""
        async with self._lock:
            self._peers.pop(peer.id, None)
        await peer.stop()
        logger.info(f"Client disconnected: {peer.name} ({self.peer_count} connected)")

    async def handle_text(self, peer: Peer, raw: str | bytes) -> None:
        """Decode and handle one message; malformed input is logged and dropped."""
        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Discarding malformed message from {peer.name}: {e}")
            return
        await self.handle_message(peer, message)

    async def handle_message(self, peer: Peer, message: Message) -> None:
        async with self._lock:
            if message.type == MessageType.UPDATE:
                self._apply_update(peer, message)
            elif message.type == MessageType.SYNC_INITIAL:
                self._apply_seed(peer, message)
            else:
                logger.warning(f"Ignoring {message.type.value} from {peer.name}")

    def _apply_update(self, source: Peer, message: Message) -> None:
        changed = self._document.apply(message.patch)
        self._document.last_updated = now_ms()
        self.updates_applied += 1

        # Every peer gets the same immutable text
        text = encode_message(MessageType.UPDATE, message.payload)
        delivered = 0
        for peer in list(self._peers.values()):
            if peer.id == source.id or peer.closed:
                continue
            if peer.enqueue(text):
                delivered += 1

        logger.info(
            f"Update broadcasted: {', '.join(changed) or 'no fields'} "
            f"from {source.name} to {delivered} peer(s)"
        )

    def _apply_seed(self, source: Peer, message: Message) -> None:
        if not self._document.is_empty:
            logger.debug(f"Ignoring SYNC_INITIAL from {source.name}: relay already seeded")
            return

        self._document.apply(message.patch)
        self._document.last_updated = now_ms()
        logger.info(
            f"Receiving initial seed data from {source.name} "
            f"({len(self._document.spots)} spots)"
        )

    async def flush(self) -> None:
        """Wait for all queued outbound messages to be written."""
        await asyncio.gather(*(peer.flush() for peer in list(self._peers.values())))

    async def close(self) -> None:
        """Stop every peer's sender."""
        async with self._lock:
            peers = list(self._peers.values())
            self._peers.clear()
        for peer in peers:
            await peer.stop()
