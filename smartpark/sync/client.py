"""Client sync manager bridging a local document and the relay.

The manager owns the client's local copy of the shared document. It applies
the relay's INIT and UPDATE messages with the same whole-field replace rule
the relay uses, seeds an empty relay from local state, publishes local
mutations, and falls back to the same-device store while disconnected.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from websockets.exceptions import WebSocketException
from websockets.asyncio.client import connect as ws_connect

from ..models import (
    MAP_IMAGE,
    SPOT_LOCATIONS,
    SPOTS,
    STATE_FIELDS,
    ZONES,
    SharedState,
    StatePatch,
)
from .protocol import Message, MessageType, ProtocolError, decode_message
from .storage import FallbackStore, PersistenceError, StorageEvent

logger = logging.getLogger(__name__)

# Fields recorded in the fallback store only while disconnected
OFFLINE_FIELDS = (SPOT_LOCATIONS, ZONES, MAP_IMAGE)

# Errors that mean the transport is gone rather than a programming error
TRANSPORT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    WebSocketException,
)


class ConnectionState(Enum):
    """Connection lifecycle of a sync manager."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Transport(Protocol):
    """Bidirectional text-message transport to the relay."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]
StateListener = Callable[[list[str], str], None]
ErrorListener = Callable[[Exception], None]


async def websocket_connector(url: str) -> Transport:
    """Open a WebSocket connection to the relay."""
    return await ws_connect(url, open_timeout=10)


class SyncManager:
    """Keeps one client's local document in step with the relay."""

    def __init__(
        self,
        relay_url: str,
        store: FallbackStore | None = None,
        initial_state: SharedState | None = None,
        connector: Connector | None = None,
        node_id: str = "smartpark-node",
    ):
        """Initialize the sync manager.

        Args:
            relay_url: WebSocket URL of the relay (e.g., "ws://localhost:3001/ws").
            store: Same-device fallback store. If given, prior state is
                loaded from it and offline mutations are written to it.
            initial_state: Document used for fields the store has never seen.
            connector: Coroutine opening a transport; defaults to WebSockets.
            node_id: Name of this client in logs.
        """
        self.relay_url = relay_url
        self.node_id = node_id
        self._store = store
        self._connector = connector or websocket_connector
        self._transport: Transport | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._error_listeners: list[ErrorListener] = []

        if store is not None:
            self._document = store.load_state(initial_state)
        else:
            self._document = initial_state.copy() if initial_state else SharedState()

    # ==================== Observers ====================

    def add_listener(self, listener: StateListener) -> None:
        """Register ``listener(fields, source)`` for local document changes."""
        self._listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        """Register a listener for recoverable failures (e.g. storage full)."""
        self._error_listeners.append(listener)

    def _notify(self, fields: list[str], source: str) -> None:
        for listener in self._listeners:
            try:
                listener(fields, source)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    def _report_error(self, error: Exception) -> None:
        for listener in self._error_listeners:
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}", exc_info=True)

    # ==================== Local document ====================

    @property
    def document(self) -> SharedState:
        """A copy of the local document."""
        return self._document.copy()

    def get_field(self, name: str) -> Any:
        """A copy of one field of the local document."""
        return self._document.patch([name])[name]

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def _apply(self, patch: StatePatch, source: str, persist_all: bool) -> list[str]:
        """Merge a patch into the local document and record it.

        Spots are always written to the fallback store. The other fields are
        written only when ``persist_all`` is set.
        """
        changed = self._document.apply(patch)
        if not changed:
            return changed

        if self._store is not None:
            for name in changed:
                if name == SPOTS or (persist_all and name in OFFLINE_FIELDS):
                    try:
                        self._store.save_field(name, self._document.get_field(name))
                    except PersistenceError as e:
                        logger.error(f"Fallback write failed: {e}")
                        self._report_error(e)

        self._notify(changed, source)
        return changed

    # ==================== Connection lifecycle ====================

    async def connect(self) -> None:
        """Open a transport to the relay.

        Raises:
            OSError, websockets.exceptions.WebSocketException: If the relay
                cannot be reached. The manager is left disconnected.
        """
        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to relay at {self.relay_url}")
        try:
            self._transport = await self._connector(self.relay_url)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._state = ConnectionState.CONNECTED
        logger.info(f"Connected to relay at {self.relay_url}")

    async def serve(self) -> None:
        """Process relay messages until the transport closes."""
        transport = self._transport
        if transport is None:
            return

        try:
            async for raw in transport:
                await self.handle_text(raw)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Relay connection lost: {e}")
        except Exception:
            await self.close()
            raise
        finally:
            if self._transport is transport:
                self._transport = None
                self._state = ConnectionState.DISCONNECTED
            logger.info("Disconnected from relay")

    async def close(self) -> None:
        """Close the transport; further sends and receives stop."""
        transport = self._transport
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        if transport is not None:
            try:
                await transport.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing transport: {e}")

    async def _send(self, message: Message) -> bool:
        transport = self._transport
        if transport is None or not self.is_connected:
            return False
        try:
            await transport.send(message.encode())
            return True
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Failed to send {message.type.value}: {e}")
            return False

    # ==================== Incoming ====================

    async def handle_text(self, raw: str | bytes) -> None:
        """Decode and apply one relay message; malformed input is logged and dropped."""
        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Discarding malformed relay message: {e}")
            return
        await self.handle_message(message)

    async def handle_message(self, message: Message) -> None:
        if message.type == MessageType.INIT:
            await self._handle_init(message)
        elif message.type == MessageType.UPDATE:
            changed = self._apply(message.patch, "relay", persist_all=False)
            logger.debug(f"Applied relay update: {', '.join(changed) or 'nothing'}")
        else:
            logger.warning(f"Ignoring unexpected {message.type.value} from relay")

    async def _handle_init(self, message: Message) -> None:
        if message.patch.get(SPOTS):
            # Relay has state: it wins over anything held locally
            full = SharedState().patch()
            full.update(message.patch)
            self._apply(full, "relay", persist_all=False)
            logger.info(f"Loaded relay state ({len(message.patch[SPOTS])} spots)")
            return

        # Relay is empty, seed it with our local copy
        seed = Message.from_patch(MessageType.SYNC_INITIAL, self._document.patch())
        if await self._send(seed):
            logger.info(f"Seeded empty relay with {len(self._document.spots)} spots")

    # ==================== Outgoing ====================

    async def publish(self, patch: StatePatch) -> bool:
        """Send exactly the given fields to the relay as an UPDATE.

        The local document is not touched: callers apply their mutation
        before publishing. While disconnected the patch is recorded in the
        fallback store instead.

        Returns:
            True if the update was handed to the relay transport.
        """
        if not patch:
            return False

        if self.is_connected:
            return await self._send(Message.from_patch(MessageType.UPDATE, patch))

        if self._store is not None:
            for name in STATE_FIELDS:
                if name in patch:
                    try:
                        self._store.save_field(name, patch[name])
                    except PersistenceError as e:
                        logger.error(f"Fallback write failed: {e}")
                        self._report_error(e)
        return False

    async def commit(self, patch: StatePatch) -> bool:
        """Apply a local mutation optimistically, then publish it.

        Returns:
            True if the update was sent to the relay.
        """
        self._apply(patch, "local", persist_all=not self.is_connected)
        return await self.publish(patch)

    # ==================== Fallback channel ====================

    def handle_storage_event(self, event: StorageEvent) -> None:
        """Apply another same-device context's change while disconnected."""
        if self.is_connected:
            logger.debug(f"Ignoring storage change to {event.key} while connected")
            return

        if self._store is None:
            return
        patch = self._store.event_to_patch(event)
        if patch:
            # Already persisted by the writer
            changed = self._document.apply(patch)
            self._notify(changed, "storage")
            logger.debug(f"Applied storage change to {event.key} from {event.writer}")

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "node_id": self.node_id,
            "relay_url": self.relay_url,
            "state": self._state.value,
            "spots": len(self._document.spots),
            "zones": len(self._document.zones),
            "placed_spots": len(self._document.spot_locations),
            "has_map_image": self._document.map_image is not None,
        }
