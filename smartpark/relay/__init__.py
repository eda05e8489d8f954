"""Relay server holding the authoritative shared document.

Fans out updates from each dashboard to every other connected dashboard
over WebSockets, using FastAPI.
"""

from .app import create_app
from .service import Peer, Relay

__all__ = ["Peer", "Relay", "create_app"]
