"""
Track samples: raw platform samples and the committed points that survive compression.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from ..errors import InvalidSample
from ..utils.dates import ensure_utc, parse_datetime, to_iso

UNKNOWN_COURSE = -1.0


def _validate_fix(latitude, longitude, horizontal_accuracy, speed, course, numeric_fields):
    for name, value in numeric_fields.items():
        if value is not None and not math.isfinite(value):
            raise InvalidSample(f"{name} must be a finite number, got {value}")

    if not -90.0 <= latitude <= 90.0:
        raise InvalidSample(f"Latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidSample(f"Longitude out of range: {longitude}")
    if horizontal_accuracy <= 0:
        raise InvalidSample(f"Horizontal accuracy must be positive: {horizontal_accuracy}")
    if speed < 0:
        raise InvalidSample(f"Speed must be non-negative: {speed}")
    if course != UNKNOWN_COURSE and not 0.0 <= course < 360.0:
        raise InvalidSample(f"Course out of range: {course}")


@dataclass
class RawSample:
    """One uncompressed GPS/barometric sample as delivered by the platform."""
    timestamp: datetime
    latitude: float
    longitude: float
    altitude: float = 0.0
    horizontal_accuracy: float = 5.0
    vertical_accuracy: float = 5.0
    speed: float = 0.0
    course: float = UNKNOWN_COURSE
    barometric_altitude: Optional[float] = None
    terrain_hint: Optional[str] = None  # surface type reported by a map collaborator
    terrain_confidence: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.timestamp, datetime):
            raise InvalidSample(f"Invalid timestamp: {self.timestamp!r}")
        self.timestamp = ensure_utc(self.timestamp)
        _validate_fix(
            self.latitude, self.longitude, self.horizontal_accuracy, self.speed, self.course,
            {
                'latitude': self.latitude,
                'longitude': self.longitude,
                'altitude': self.altitude,
                'horizontal_accuracy': self.horizontal_accuracy,
                'speed': self.speed,
                'course': self.course,
                'barometric_altitude': self.barometric_altitude,
            },
        )
        if self.terrain_confidence is not None and not 0.0 <= self.terrain_confidence <= 1.0:
            raise InvalidSample(f"Terrain confidence out of range: {self.terrain_confidence}")

    @property
    def best_altitude(self) -> float:
        if self.barometric_altitude is not None:
            return self.barometric_altitude
        return self.altitude

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawSample':
        try:
            return cls(
                timestamp=parse_datetime(data['timestamp']),
                latitude=float(data['latitude']),
                longitude=float(data['longitude']),
                altitude=float(data.get('altitude') or 0.0),
                horizontal_accuracy=float(data.get('horizontal_accuracy', 5.0)),
                vertical_accuracy=float(data.get('vertical_accuracy', 5.0)),
                speed=float(data.get('speed') or 0.0),
                course=float(data['course']) if data.get('course') is not None else UNKNOWN_COURSE,
                barometric_altitude=float(data['barometric_altitude']) if data.get('barometric_altitude') is not None else None,
                terrain_hint=data.get('terrain_hint'),
                terrain_confidence=float(data['terrain_confidence']) if data.get('terrain_confidence') is not None else None,
            )
        except InvalidSample:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidSample(f"Malformed sample: {e}") from e


@dataclass
class LocationPoint:
    """A committed track point owned by a RuckSession."""
    timestamp: datetime
    latitude: float
    longitude: float
    altitude: float
    horizontal_accuracy: float
    vertical_accuracy: float = 0.0
    speed: float = 0.0
    course: float = UNKNOWN_COURSE
    is_key_point: bool = False
    barometric_altitude: Optional[float] = None
    terrain_hint: Optional[str] = None
    terrain_confidence: Optional[float] = None

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)
        _validate_fix(
            self.latitude, self.longitude, self.horizontal_accuracy, self.speed, self.course,
            {'latitude': self.latitude, 'longitude': self.longitude, 'altitude': self.altitude},
        )

    @property
    def best_altitude(self) -> float:
        if self.barometric_altitude is not None:
            return self.barometric_altitude
        return self.altitude

    @classmethod
    def from_sample(cls, sample: RawSample, is_key_point: bool = False) -> 'LocationPoint':
        return cls(
            timestamp=sample.timestamp,
            latitude=sample.latitude,
            longitude=sample.longitude,
            altitude=sample.altitude,
            horizontal_accuracy=sample.horizontal_accuracy,
            vertical_accuracy=sample.vertical_accuracy,
            speed=sample.speed,
            course=sample.course,
            is_key_point=is_key_point,
            barometric_altitude=sample.barometric_altitude,
            terrain_hint=sample.terrain_hint,
            terrain_confidence=sample.terrain_confidence,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': to_iso(self.timestamp),
            'latitude': self.latitude,
            'longitude': self.longitude,
            'altitude': self.altitude,
            'horizontal_accuracy': self.horizontal_accuracy,
            'vertical_accuracy': self.vertical_accuracy,
            'speed': self.speed,
            'course': self.course,
            'is_key_point': self.is_key_point,
            'barometric_altitude': self.barometric_altitude,
            'terrain_hint': self.terrain_hint,
            'terrain_confidence': self.terrain_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocationPoint':
        return cls(
            timestamp=parse_datetime(data['timestamp']),
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            altitude=float(data.get('altitude') or 0.0),
            horizontal_accuracy=float(data['horizontal_accuracy']),
            vertical_accuracy=float(data.get('vertical_accuracy') or 0.0),
            speed=float(data.get('speed') or 0.0),
            course=float(data['course']) if data.get('course') is not None else UNKNOWN_COURSE,
            is_key_point=bool(data.get('is_key_point', False)),
            barometric_altitude=float(data['barometric_altitude']) if data.get('barometric_altitude') is not None else None,
            terrain_hint=data.get('terrain_hint'),
            terrain_confidence=float(data['terrain_confidence']) if data.get('terrain_confidence') is not None else None,
        )
