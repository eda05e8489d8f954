"""Same-device persistence fallback for shared state.

A small SQLite key/value store shared by every dashboard context on the
machine. It is the cold-start source of prior state and, while no relay
connection exists, the channel through which contexts see each other's
changes. Writers are not coordinated: the last write to a key wins.
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ..models import (
    MAP_IMAGE,
    SPOT_LOCATIONS,
    SPOTS,
    ZONES,
    LayoutSnapshot,
    SharedState,
    StatePatch,
    dump_field,
    now_ms,
    parse_field,
)

logger = logging.getLogger(__name__)

KEY_SPOTS = "state-spots"
KEY_SPOT_LOCATIONS = "state-spot-locations"
KEY_ZONES = "state-zones"
KEY_MAP_IMAGE = "state-map-image"
KEY_LAYOUT_SNAPSHOTS = "layout-snapshots"

# Storage key for each synchronized field
FIELD_KEYS = {
    SPOTS: KEY_SPOTS,
    SPOT_LOCATIONS: KEY_SPOT_LOCATIONS,
    ZONES: KEY_ZONES,
    MAP_IMAGE: KEY_MAP_IMAGE,
}
KEY_FIELDS = {key: name for name, key in FIELD_KEYS.items()}

DEFAULT_MAX_BYTES = 5 * 1024 * 1024

SAVE_FAILED_MESSAGE = "unable to save - storage full or data too large"

STORE_SCHEMA = """
-- Shared key/value state; version is a store-wide change counter
CREATE TABLE IF NOT EXISTS kv_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    version INTEGER NOT NULL,
    writer TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_version ON kv_state(version);
"""


class PersistenceError(Exception):
    """A value could not be saved to the fallback store."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{SAVE_FAILED_MESSAGE} ({key}: {reason})")
        self.key = key
        self.reason = reason


@dataclass
class StorageEvent:
    """Notification that another context changed a key."""

    key: str
    new_value: str | None
    writer: str
    version: int


StorageCallback = Callable[[StorageEvent], None]


class FallbackStore:
    """SQLite-backed key/value store shared between same-device contexts."""

    def __init__(
        self,
        db_path: str | Path,
        context_id: str | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            context_id: Identifier of this context; changes written under it
                are not reported back to it. Generated if omitted.
            max_bytes: Total size quota for all stored values.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.context_id = context_id or str(uuid.uuid4())
        self.max_bytes = max_bytes
        self._conn: sqlite3.Connection | None = None
        self._last_seen_version = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(STORE_SCHEMA)
        self._conn.commit()

        self._last_seen_version = self._max_version()
        logger.info(f"FallbackStore connected to {self.db_path} as {self.context_id}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _max_version(self) -> int:
        conn = self._ensure_connected()
        row = conn.execute("SELECT MAX(version) FROM kv_state").fetchone()
        return row[0] if row[0] is not None else 0

    def get(self, key: str) -> str | None:
        """Return the raw stored text for a key, or None."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> bool:
        """Store raw text under a key.

        Writing the value a key already holds is a no-op and produces no
        notification for other contexts.

        Returns:
            True if the stored value changed.

        Raises:
            PersistenceError: If the quota would be exceeded or SQLite
                refuses the write.
        """
        conn = self._ensure_connected()

        try:
            current = conn.execute(
                "SELECT value FROM kv_state WHERE key = ?", (key,)
            ).fetchone()
            if current is not None and current["value"] == value:
                return False

            used = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) "
                "FROM kv_state WHERE key != ?",
                (key,),
            ).fetchone()[0]
            size = len(value.encode("utf-8"))
            if used + size > self.max_bytes:
                raise PersistenceError(
                    key, f"{size} bytes exceeds quota ({used}/{self.max_bytes} used)"
                )

            conn.execute(
                """
                INSERT INTO kv_state (key, value, version, writer, updated_at)
                VALUES (?, ?, (SELECT COALESCE(MAX(version), 0) + 1 FROM kv_state), ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    version = excluded.version,
                    writer = excluded.writer,
                    updated_at = excluded.updated_at
                """,
                (key, value, self.context_id, datetime.now().isoformat()),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Failed to persist {key}: {e}")
            raise PersistenceError(key, str(e)) from e

        logger.debug(f"Persisted {key} ({len(value)} chars)")
        return True

    def delete(self, key: str) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
        conn.commit()

    # ==================== State fields ====================

    def save_field(self, name: str, value: Any) -> bool:
        """Persist one typed state field under its stable key."""
        return self.set(FIELD_KEYS[name], json.dumps(dump_field(name, value)))

    def load_field(self, name: str) -> Any:
        """Load one typed state field, or None if absent or unreadable."""
        raw = self.get(FIELD_KEYS[name])
        if raw is None:
            return None
        try:
            return parse_field(name, json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load {name} from storage: {e}")
            return None

    def load_state(self, default: SharedState | None = None) -> SharedState:
        """Build the cold-start document from stored fields.

        Fields that were never stored come from ``default``.
        """
        state = default.copy() if default else SharedState()
        for name in FIELD_KEYS:
            value = self.load_field(name)
            if value is not None:
                state.apply({name: value})
        return state

    @staticmethod
    def event_to_patch(event: StorageEvent) -> StatePatch:
        """Translate a state-key notification into a patch.

        Returns an empty patch for keys that are not state fields, for
        deletions, and for values that cannot be parsed.
        """
        name = KEY_FIELDS.get(event.key)
        if name is None or event.new_value is None:
            return {}
        try:
            return {name: parse_field(name, json.loads(event.new_value))}
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable storage value for {event.key}: {e}")
            return {}

    # ==================== Change notification ====================

    def poll_changes(self) -> list[StorageEvent]:
        """Return changes written by other contexts since the last poll."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            SELECT key, value, version, writer
            FROM kv_state
            WHERE version > ?
            ORDER BY version ASC
            """,
            (self._last_seen_version,),
        )

        events = []
        for row in cursor:
            self._last_seen_version = max(self._last_seen_version, row["version"])
            if row["writer"] == self.context_id:
                continue
            events.append(
                StorageEvent(
                    key=row["key"],
                    new_value=row["value"],
                    writer=row["writer"],
                    version=row["version"],
                )
            )
        return events

    async def watch(
        self,
        callback: StorageCallback,
        interval_seconds: float = 0.5,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Deliver other contexts' changes to ``callback`` until stopped.

        Args:
            callback: Called once per change, in write order.
            interval_seconds: Seconds between polls.
            stop_event: Event to signal the watch should stop.
        """
        logger.info(f"Watching {self.db_path} for changes every {interval_seconds}s")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                for event in self.poll_changes():
                    callback(event)
            except sqlite3.Error as e:
                logger.error(f"Storage poll failed: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(interval_seconds)

        logger.info("Storage watch stopped")

    # ==================== Layout snapshots ====================

    def list_snapshots(self) -> list[LayoutSnapshot]:
        """Return saved layout snapshots, newest first."""
        raw = self.get(KEY_LAYOUT_SNAPSHOTS)
        if raw is None:
            return []
        try:
            return [LayoutSnapshot.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load layout snapshots: {e}")
            return []

    def get_snapshot(self, snapshot_id: str) -> LayoutSnapshot | None:
        for snapshot in self.list_snapshots():
            if snapshot.id == snapshot_id:
                return snapshot
        return None

    def save_snapshot(
        self,
        name: str,
        spot_locations: dict,
        zones: list,
    ) -> LayoutSnapshot:
        """Add a named snapshot to the front of the library.

        Raises:
            PersistenceError: If the library cannot be stored.
        """
        snapshot = LayoutSnapshot(
            id=str(uuid.uuid4()),
            name=name.strip() or "Untitled layout",
            date=now_ms(),
            spot_locations=spot_locations,
            zones=zones,
        )
        snapshots = [snapshot, *self.list_snapshots()]
        self._write_snapshots(snapshots)
        logger.info(f"Saved layout snapshot {snapshot.name!r}")
        return snapshot

    def delete_snapshot(self, snapshot_id: str) -> bool:
        snapshots = self.list_snapshots()
        remaining = [s for s in snapshots if s.id != snapshot_id]
        if len(remaining) == len(snapshots):
            return False
        self._write_snapshots(remaining)
        return True

    def _write_snapshots(self, snapshots: list[LayoutSnapshot]) -> None:
        self.set(KEY_LAYOUT_SNAPSHOTS, json.dumps([s.to_dict() for s in snapshots]))

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "context_id": self.context_id,
            "max_bytes": self.max_bytes,
        }
        cursor = conn.execute(
            "SELECT key, LENGTH(CAST(value AS BLOB)) AS size FROM kv_state"
        )
        stats["keys"] = {row["key"]: row["size"] for row in cursor}
        stats["used_bytes"] = sum(stats["keys"].values())
        stats["version"] = self._max_version()
        return stats
