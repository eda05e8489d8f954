"""Dashboard-side mutations of the shared parking state.

Every operation builds the new value of one or more whole fields from the
client's local document and commits it through the sync manager, which
applies it locally and publishes it to whichever transport is live.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone

from .models import (
    MAP_IMAGE,
    SPOT_LOCATIONS,
    SPOTS,
    ZONES,
    LayoutSnapshot,
    ParkingStats,
    ParkingStatus,
    Spot,
    SpotLocation,
    Zone,
)
from .sync.client import SyncManager
from .sync.storage import FallbackStore, PersistenceError

logger = logging.getLogger(__name__)


class Facility:
    """Operations a dashboard user performs on the parking facility."""

    def __init__(
        self,
        manager: SyncManager,
        store: FallbackStore | None = None,
        read_only: bool = False,
    ):
        """Initialize the facility.

        Args:
            manager: Sync manager owning the local document.
            store: Fallback store for map images and the layout library.
            read_only: Viewer mode; every mutation is ignored.
        """
        self._manager = manager
        self._store = store
        self.read_only = read_only

    @property
    def spots(self) -> list[Spot]:
        return self._manager.get_field(SPOTS)

    @property
    def zones(self) -> list[Zone]:
        return self._manager.get_field(ZONES)

    @property
    def spot_locations(self) -> dict[str, SpotLocation]:
        return self._manager.get_field(SPOT_LOCATIONS)

    @property
    def stats(self) -> ParkingStats:
        return ParkingStats.from_spots(self.spots)

    def _denied(self, action: str) -> bool:
        if self.read_only:
            logger.debug(f"Ignoring {action} in read-only mode")
        return self.read_only

    # ==================== Spots ====================

    async def toggle_spot(self, spot_id: str) -> Spot | None:
        """Flip a spot between FREE and OCCUPIED.

        Returns:
            The updated spot, or None if it does not exist or the facility
            is read-only.
        """
        if self._denied("toggle_spot"):
            return None

        updated = None
        spots = self.spots
        for i, spot in enumerate(spots):
            if spot.id == spot_id:
                status = (
                    ParkingStatus.OCCUPIED
                    if spot.status == ParkingStatus.FREE
                    else ParkingStatus.FREE
                )
                updated = replace(
                    spot, status=status, last_updated=datetime.now(timezone.utc)
                )
                spots[i] = updated

        if updated is None:
            logger.warning(f"Cannot toggle unknown spot {spot_id}")
            return None

        await self._manager.commit({SPOTS: spots})
        return updated

    async def apply_simulation(self, spots: list[Spot]) -> None:
        """Replace the spot list with a simulated one."""
        if self._denied("apply_simulation"):
            return
        await self._manager.commit({SPOTS: spots})

    # ==================== Map ====================

    async def place_spot(self, spot_id: str, location: SpotLocation | None) -> None:
        """Place a spot on the map, or remove it from the map with None."""
        if self._denied("place_spot"):
            return

        locations = self.spot_locations
        if location is None:
            locations.pop(spot_id, None)
        else:
            locations[spot_id] = location
        await self._manager.commit({SPOT_LOCATIONS: locations})

    async def set_map_image(self, image: str | None) -> bool:
        """Set the floor-plan image.

        The image is saved to the fallback store first; if that fails the
        change is rejected.

        Returns:
            False if the image could not be saved.
        """
        if self._denied("set_map_image"):
            return False

        if self._store is not None:
            try:
                self._store.save_field(MAP_IMAGE, image)
            except PersistenceError as e:
                logger.error(f"Map image rejected: {e}")
                return False

        await self._manager.commit({MAP_IMAGE: image})
        return True

    # ==================== Zones ====================

    async def add_zone(self, zone: Zone) -> None:
        if self._denied("add_zone"):
            return
        await self._manager.commit({ZONES: [*self.zones, zone]})

    async def update_zone(self, zone_id: str, **changes) -> Zone | None:
        """Update attributes of one zone, e.g. ``update_zone("z1", label="B")``."""
        if self._denied("update_zone"):
            return None

        updated = None
        zones = self.zones
        for i, zone in enumerate(zones):
            if zone.id == zone_id:
                updated = replace(zone, **changes)
                zones[i] = updated

        if updated is None:
            return None
        await self._manager.commit({ZONES: zones})
        return updated

    async def delete_zone(self, zone_id: str) -> None:
        if self._denied("delete_zone"):
            return
        await self._manager.commit({ZONES: [z for z in self.zones if z.id != zone_id]})

    # ==================== Layouts ====================

    async def save_layout(self) -> bool:
        """Save the active spot locations and zones and publish them.

        Returns:
            False if the layout could not be written to the fallback store.
        """
        if self._denied("save_layout"):
            return False

        locations = self.spot_locations
        zones = self.zones
        if self._store is not None:
            try:
                self._store.save_field(SPOT_LOCATIONS, locations)
                self._store.save_field(ZONES, zones)
            except PersistenceError as e:
                logger.error(f"Failed to save layout: {e}")
                return False

        await self._manager.publish({SPOT_LOCATIONS: locations, ZONES: zones})
        return True

    def list_snapshots(self) -> list[LayoutSnapshot]:
        return self._store.list_snapshots() if self._store else []

    def save_snapshot(self, name: str) -> LayoutSnapshot | None:
        """Add the current layout to the snapshot library.

        Raises:
            PersistenceError: If the library cannot be stored.
        """
        if self._denied("save_snapshot") or self._store is None:
            return None
        return self._store.save_snapshot(name, self.spot_locations, self.zones)

    def delete_snapshot(self, snapshot_id: str) -> bool:
        if self._denied("delete_snapshot") or self._store is None:
            return False
        return self._store.delete_snapshot(snapshot_id)

    async def load_snapshot(self, snapshot_id: str) -> bool:
        """Make a saved snapshot the active layout everywhere."""
        if self._denied("load_snapshot") or self._store is None:
            return False

        snapshot = self._store.get_snapshot(snapshot_id)
        if snapshot is None:
            return False

        patch = {SPOT_LOCATIONS: snapshot.spot_locations, ZONES: snapshot.zones}
        try:
            self._store.save_field(SPOT_LOCATIONS, snapshot.spot_locations)
            self._store.save_field(ZONES, snapshot.zones)
        except PersistenceError as e:
            logger.error(f"Failed to persist loaded layout: {e}")
        await self._manager.commit(patch)
        logger.info(f"Loaded layout snapshot {snapshot.name!r}")
        return True
