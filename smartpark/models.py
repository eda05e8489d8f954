"""Shared-state document types and the whole-field merge rule.

The document is the single aggregate synchronized between the relay and every
dashboard client. Updates are partial: each top-level field present in a
payload replaces the corresponding field wholesale, absent fields are left
untouched. There is no merging inside a field.
"""

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

# Wire names of the synchronized top-level fields
SPOTS = "spots"
SPOT_LOCATIONS = "spotLocations"
ZONES = "zones"
MAP_IMAGE = "mapImage"

STATE_FIELDS = (SPOTS, SPOT_LOCATIONS, ZONES, MAP_IMAGE)

# A parsed partial update: wire field name -> typed value
StatePatch = dict[str, Any]

DEFAULT_CAR_SPOTS = 62
DEFAULT_MOTO_SPOTS = 31


class VehicleType(Enum):
    CAR = "CAR"
    MOTORCYCLE = "MOTORCYCLE"


class ParkingStatus(Enum):
    FREE = "FREE"
    OCCUPIED = "OCCUPIED"


class ZoneType(Enum):
    DEFAULT = "default"
    CAR = "car"
    MOTO = "moto"
    DISABLED = "disabled"


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    # JavaScript clients emit a trailing "Z" for UTC
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Spot:
    """A single parking spot."""

    id: str
    type: VehicleType
    status: ParkingStatus = ParkingStatus.FREE
    last_updated: datetime | None = None

    @property
    def is_occupied(self) -> bool:
        return self.status == ParkingStatus.OCCUPIED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
        }
        if self.last_updated is not None:
            data["lastUpdated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Spot":
        """Create from dictionary."""
        return cls(
            id=str(data["id"]),
            type=VehicleType(data["type"]),
            status=ParkingStatus(data.get("status", ParkingStatus.FREE.value)),
            last_updated=_parse_timestamp(data.get("lastUpdated")),
        )


@dataclass
class SpotLocation:
    """Normalized map position of a spot, both axes in percent (0-100)."""

    x: float
    y: float

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SpotLocation":
        return cls(x=float(data["x"]), y=float(data["y"]))


@dataclass
class Zone:
    """Rectangular labelled region drawn on the floor plan."""

    id: str
    label: str
    x: float
    y: float
    width: float
    height: float
    color: str
    type: ZoneType = ZoneType.DEFAULT

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "color": self.color,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Zone":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", "")),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            color=str(data.get("color", "")),
            type=ZoneType(data.get("type", ZoneType.DEFAULT.value)),
        )


@dataclass
class LayoutSnapshot:
    """A named, saved arrangement of spot locations and zones."""

    id: str
    name: str
    date: int
    spot_locations: dict[str, SpotLocation] = field(default_factory=dict)
    zones: list[Zone] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "date": self.date,
            SPOT_LOCATIONS: dump_field(SPOT_LOCATIONS, self.spot_locations),
            ZONES: dump_field(ZONES, self.zones),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LayoutSnapshot":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            date=int(data["date"]),
            spot_locations=parse_field(SPOT_LOCATIONS, data.get(SPOT_LOCATIONS, {})),
            zones=parse_field(ZONES, data.get(ZONES, [])),
        )


def parse_field(name: str, value: Any) -> Any:
    """Parse one wire field into its typed value.

    Raises:
        ValueError: If the field is unknown or its value has the wrong shape.
    """
    if name == SPOTS:
        if not isinstance(value, list):
            raise ValueError("spots must be a list")
        return [Spot.from_dict(item) for item in value]
    if name == SPOT_LOCATIONS:
        if not isinstance(value, dict):
            raise ValueError("spotLocations must be an object")
        return {str(k): SpotLocation.from_dict(v) for k, v in value.items()}
    if name == ZONES:
        if not isinstance(value, list):
            raise ValueError("zones must be a list")
        return [Zone.from_dict(item) for item in value]
    if name == MAP_IMAGE:
        if value is not None and not isinstance(value, str):
            raise ValueError("mapImage must be a string or null")
        return value
    raise ValueError(f"Unknown state field: {name}")


def dump_field(name: str, value: Any) -> Any:
    """Serialize one typed field back to its wire form."""
    if name in (SPOTS, ZONES):
        return [item.to_dict() for item in value]
    if name == SPOT_LOCATIONS:
        return {k: loc.to_dict() for k, loc in value.items()}
    if name == MAP_IMAGE:
        return value
    raise ValueError(f"Unknown state field: {name}")


def parse_payload(payload: Mapping[str, Any]) -> StatePatch:
    """Parse an AppStatePayload into a typed patch.

    Keys other than the four synchronized fields are ignored. A key that is
    present is always part of the patch, including ``mapImage: null``.

    Raises:
        ValueError: If any present field is malformed.
    """
    if not isinstance(payload, Mapping):
        raise ValueError("payload must be an object")
    patch: StatePatch = {}
    for name in STATE_FIELDS:
        if name in payload:
            try:
                patch[name] = parse_field(name, payload[name])
            except (KeyError, TypeError, OverflowError) as e:
                raise ValueError(f"Malformed {name}: {e}") from e
    return patch


def dump_patch(patch: StatePatch) -> dict[str, Any]:
    """Serialize a typed patch to an AppStatePayload."""
    return {name: dump_field(name, patch[name]) for name in STATE_FIELDS if name in patch}


@dataclass
class SharedState:
    """The shared-state document."""

    spots: list[Spot] = field(default_factory=list)
    spot_locations: dict[str, SpotLocation] = field(default_factory=dict)
    zones: list[Zone] = field(default_factory=list)
    map_image: str | None = None
    last_updated: int | None = None

    _ATTRS = {
        SPOTS: "spots",
        SPOT_LOCATIONS: "spot_locations",
        ZONES: "zones",
        MAP_IMAGE: "map_image",
    }

    @property
    def is_empty(self) -> bool:
        """An empty document has no spots, whatever else it holds."""
        return not self.spots

    def get_field(self, name: str) -> Any:
        return getattr(self, self._ATTRS[name])

    def apply(self, patch: StatePatch) -> list[str]:
        """Replace every field present in the patch.

        Fields are deep-copied so the document never shares mutable values
        with the caller. Applying the same patch twice leaves the document
        as after applying it once.

        Returns:
            Wire names of the fields that were replaced.
        """
        changed = []
        for name in STATE_FIELDS:
            if name in patch:
                setattr(self, self._ATTRS[name], copy.deepcopy(patch[name]))
                changed.append(name)
        return changed

    def patch(self, fields: tuple[str, ...] | list[str] = STATE_FIELDS) -> StatePatch:
        """Return a deep-copied patch holding the named fields."""
        return {name: copy.deepcopy(self.get_field(name)) for name in fields}

    def copy(self) -> "SharedState":
        return copy.deepcopy(self)

    def to_payload(self) -> dict[str, Any]:
        """Serialize the four synchronized fields."""
        return dump_patch(self.patch())

    def to_dict(self) -> dict[str, Any]:
        """Serialize the full document including ``lastUpdated``."""
        data = self.to_payload()
        data["lastUpdated"] = self.last_updated
        return data

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SharedState":
        """Build a document from a (possibly partial) payload."""
        state = cls()
        state.apply(parse_payload(payload))
        last_updated = payload.get("lastUpdated")
        if isinstance(last_updated, (int, float)):
            state.last_updated = int(last_updated)
        return state


@dataclass
class ParkingStats:
    """Occupancy figures derived from the spot list."""

    total_cars: int
    occupied_cars: int
    total_motos: int
    occupied_motos: int
    occupancy_rate: float

    @classmethod
    def from_spots(cls, spots: list[Spot]) -> "ParkingStats":
        cars = [s for s in spots if s.type == VehicleType.CAR]
        motos = [s for s in spots if s.type == VehicleType.MOTORCYCLE]
        occupied_cars = sum(1 for s in cars if s.is_occupied)
        occupied_motos = sum(1 for s in motos if s.is_occupied)
        total = len(spots)
        rate = (occupied_cars + occupied_motos) / total * 100 if total else 0.0
        return cls(
            total_cars=len(cars),
            occupied_cars=occupied_cars,
            total_motos=len(motos),
            occupied_motos=occupied_motos,
            occupancy_rate=rate,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCars": self.total_cars,
            "occupiedCars": self.occupied_cars,
            "totalMotos": self.total_motos,
            "occupiedMotos": self.occupied_motos,
            "occupancyRate": round(self.occupancy_rate, 1),
        }


def generate_spots(
    cars: int = DEFAULT_CAR_SPOTS,
    motos: int = DEFAULT_MOTO_SPOTS,
) -> list[Spot]:
    """Build the default facility: ``C-01..`` car spots then ``M-01..`` motorcycle spots."""
    now = datetime.now(timezone.utc)
    spots = [
        Spot(id=f"C-{i:02d}", type=VehicleType.CAR, last_updated=now)
        for i in range(1, cars + 1)
    ]
    spots.extend(
        Spot(id=f"M-{i:02d}", type=VehicleType.MOTORCYCLE, last_updated=now)
        for i in range(1, motos + 1)
    )
    return spots


def default_state() -> SharedState:
    """Document used by a client with no prior persisted state."""
    return SharedState(spots=generate_spots())
