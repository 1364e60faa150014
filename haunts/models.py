"""Data models for location samples, stationary points, places and visits.

Timestamps are UNIX seconds (UTC). Distances are meters and coordinates are
WGS84 degrees.
"""

import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from haunts.constants import CATEGORY_KEYWORDS, NEW_PLACE_CONFIDENCE
from haunts.stop_detection.utils import haversine


class PlaceCategory(str, Enum):
    HOME = "home"
    WORK = "work"
    CAFE = "cafe"
    RESTAURANT = "restaurant"
    SHOPPING = "shopping"
    GYM = "gym"
    GAS_STATION = "gas_station"
    GROCERY = "grocery"
    MEDICAL = "medical"
    ENTERTAINMENT = "entertainment"
    TRANSIT = "transit"
    PARK = "park"
    OTHER = "other"

    @property
    def keywords(self):
        return CATEGORY_KEYWORDS[self.value]


@dataclass(frozen=True)
class LocationSample:
    """A single location fix as delivered by the device location service.

    Attributes:
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        accuracy: Horizontal accuracy in meters.
        speed: Speed in meters/second. None, NaN or a negative value means unknown.
        timestamp: UNIX seconds.
    """

    latitude: float
    longitude: float
    accuracy: float
    speed: Optional[float]
    timestamp: float

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def speed_known(self) -> bool:
        return self.speed is not None and not math.isnan(self.speed) and self.speed >= 0

    def distance_to(self, latitude, longitude):
        return haversine(self.latitude, self.longitude, latitude, longitude)


@dataclass(frozen=True)
class FrequencyTier:
    """Stretch factor applied to the base interval after a stationary period."""

    min_stationary_duration: float
    multiplier: float
    label: str


@dataclass(frozen=True)
class StationaryPoint:
    """A stationary run inside one session, anchored at its arrival point."""

    latitude: float
    longitude: float
    start_timestamp: float
    duration: float

    @property
    def end_timestamp(self):
        return self.start_timestamp + self.duration


@dataclass(frozen=True)
class PlaceCluster:
    """Stationary points sharing a grid cell. Batch-only, consumed once."""

    latitude: float
    longitude: float
    members: Tuple[StationaryPoint, ...]
    spread_radius: float

    @property
    def visit_count(self):
        return len(self.members)

    @property
    def total_dwell(self):
        return sum(p.duration for p in self.members)


@dataclass
class Visit:
    arrival_time: float
    departure_time: Optional[float] = None

    @property
    def is_open(self):
        return self.departure_time is None

    def dwell_time(self, now=None):
        """Seconds spent at the place. Open visits count up to `now` (0 if not given)."""
        if self.departure_time is not None:
            return max(0.0, self.departure_time - self.arrival_time)
        if now is None:
            return 0.0
        return max(0.0, now - self.arrival_time)


@dataclass
class Place:
    """A persistent place built from repeated stops.

    At most one visit in `visit_history` is open. `is_confirmed` is latched by
    user overrides only; once set, automatic naming and categorization leave
    the place alone.
    """

    latitude: float
    longitude: float
    radius: float = 50.0
    name: Optional[str] = None
    street_address: Optional[str] = None
    category: PlaceCategory = PlaceCategory.OTHER
    confidence: float = NEW_PLACE_CONFIDENCE
    is_confirmed: bool = False
    visit_history: list = field(default_factory=list)
    created_at: float = 0.0
    last_visited_at: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.radius = float(self.radius)
        self.category = PlaceCategory(self.category)

    @property
    def coordinate(self):
        return (self.latitude, self.longitude)

    @property
    def visit_count(self):
        return len(self.visit_history)

    @property
    def current_visit(self):
        if self.visit_history and self.visit_history[-1].is_open:
            return self.visit_history[-1]
        return None

    @property
    def is_active(self):
        return self.current_visit is not None

    @property
    def total_dwell_time(self):
        return sum(v.dwell_time() for v in self.visit_history if not v.is_open)

    @property
    def average_dwell_time(self):
        closed = [v for v in self.visit_history if not v.is_open]
        return self.total_dwell_time / len(closed) if closed else 0.0

    @property
    def display_name(self):
        return self.name or "Unknown Place"

    def distance_to(self, latitude, longitude):
        return haversine(self.latitude, self.longitude, latitude, longitude)

    def contains(self, latitude, longitude):
        return self.distance_to(latitude, longitude) <= self.radius

    def record_visit(self, arrival, departure=None):
        if self.is_active:
            raise ValueError(f"Place {self.id} already has an open visit.")
        self.visit_history.append(Visit(arrival, departure))
        self.last_visited_at = max(self.last_visited_at, arrival)

    def end_current_visit(self, departure):
        visit = self.current_visit
        if visit is None:
            return None
        visit.departure_time = max(departure, visit.arrival_time)
        return visit


@dataclass(frozen=True)
class GeocodeResult:
    name: Optional[str] = None
    street_address: Optional[str] = None


# Sampler events

@dataclass(frozen=True)
class FixAccepted:
    fix: LocationSample
    tier: FrequencyTier
    timestamp: float


@dataclass(frozen=True)
class FixRejected:
    fix: Optional[LocationSample]
    reason: str
    timestamp: float


@dataclass(frozen=True)
class TierChanged:
    previous: FrequencyTier
    current: FrequencyTier
    timestamp: float


@dataclass(frozen=True)
class ReducedModeEntered:
    label: str
    timestamp: float


@dataclass(frozen=True)
class MovementResumed:
    label: str
    previous_label: str
    timestamp: float


# Registry events

@dataclass(frozen=True)
class PlaceCreated:
    place: Place


@dataclass(frozen=True)
class PlaceUpdated:
    place: Place


@dataclass(frozen=True)
class VisitOpened:
    place_id: str
    arrival_time: float


@dataclass(frozen=True)
class VisitClosed:
    place_id: str
    arrival_time: float
    departure_time: float
