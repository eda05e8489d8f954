"""FastAPI application exposing the relay over WebSockets."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, WebSocket

from ..config import Config
from .service import Relay

logger = logging.getLogger(__name__)


def create_app(config: Config, relay: Relay | None = None) -> FastAPI:
    """Create the relay application.

    Args:
        config: Application configuration.
        relay: Optional Relay to serve; a new empty one is created otherwise.

    Returns:
        Configured FastAPI application.
    """
    relay = relay or Relay(peer_queue_size=config.relay.peer_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Smart Park relay starting, WebSocket endpoint {config.relay.path}")
        yield
        await relay.close()
        logger.info("Smart Park relay stopped")

    app = FastAPI(
        title="Smart Park Relay",
        description="Shared-state relay for Smart Park dashboards",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.relay = relay

    # ==================== WebSocket ====================

    @app.websocket(config.relay.path)
    async def relay_socket(websocket: WebSocket):
        """One relay peer: INIT on connect, then UPDATE / SYNC_INITIAL in."""
        await websocket.accept()
        client = websocket.client
        name = f"{client.host}:{client.port}" if client else None
        peer = await relay.connect(websocket.send_text, name=name)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await relay.handle_text(peer, raw)
        finally:
            await relay.disconnect(peer)

    # ==================== API Routes (JSON) ====================

    @app.get("/api/state")
    async def api_state() -> dict[str, Any]:
        """Get the current shared document."""
        return relay.snapshot()

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring.

        Always returns 200 OK while the process is serving.
        """
        snapshot = relay.snapshot()
        return {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "node_name": config.node.name,
            "peers": relay.peer_count,
            "spots": len(snapshot["spots"]),
            "seeded": bool(snapshot["spots"]),
            "updates_applied": relay.updates_applied,
            "last_updated": snapshot["lastUpdated"],
        }

    return app
