"""
RuckSession model: one load-carriage exercise session and its owned track data.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from ..errors import InvalidLoadWeight, InvalidSessionData
from ..utils.dates import ensure_utc, parse_datetime, to_iso, utcnow
from .location_point import LocationPoint
from .terrain_segment import TerrainSegment
from .weather_conditions import WeatherConditions

MAX_LOAD_WEIGHT_KG = 200.0


class SessionStatus(str, Enum):
    NOT_STARTED = 'not_started'
    ACTIVE = 'active'
    PAUSED = 'paused'
    COMPLETED = 'completed'

    @property
    def is_in_progress(self) -> bool:
        return self in (SessionStatus.ACTIVE, SessionStatus.PAUSED)


def validate_load_weight(load_weight) -> float:
    try:
        value = float(load_weight)
    except (TypeError, ValueError):
        raise InvalidLoadWeight(f"Load weight must be a number, got {load_weight!r}")
    if not 0.0 < value <= MAX_LOAD_WEIGHT_KG:
        raise InvalidLoadWeight(f"Load weight must be in (0, {MAX_LOAD_WEIGHT_KG:g}] kg, got {value}")
    return value


@dataclass
class PauseInterval:
    paused_at: datetime
    resumed_at: Optional[datetime] = None

    def __post_init__(self):
        self.paused_at = ensure_utc(self.paused_at)
        if self.resumed_at is not None:
            self.resumed_at = ensure_utc(self.resumed_at)
            if self.resumed_at < self.paused_at:
                raise InvalidSessionData("Pause interval resumed before it was paused")

    def duration(self, until: Optional[datetime] = None) -> float:
        end = self.resumed_at or until or self.paused_at
        return max(0.0, (end - self.paused_at).total_seconds())

    def separates(self, earlier: datetime, later: datetime) -> bool:
        """True when this pause falls between two track timestamps."""
        resumed = self.resumed_at or later
        return self.paused_at < later and resumed > earlier

    def to_dict(self) -> Dict[str, Any]:
        return {'paused_at': to_iso(self.paused_at), 'resumed_at': to_iso(self.resumed_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PauseInterval':
        return cls(paused_at=parse_datetime(data['paused_at']), resumed_at=parse_datetime(data.get('resumed_at')))


@dataclass
class RuckSession:
    load_weight: float
    start_date: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    body_weight: float = 70.0
    end_date: Optional[datetime] = None
    status: SessionStatus = SessionStatus.NOT_STARTED

    # Aggregates: meters, seconds, kcal, minutes per km
    total_distance: float = 0.0
    total_duration: float = 0.0
    total_calories: float = 0.0
    average_pace: float = 0.0
    elevation_gain: float = 0.0
    elevation_loss: float = 0.0
    rpe: Optional[int] = None
    notes: Optional[str] = None

    version: int = 1
    modified_at: datetime = field(default_factory=utcnow)

    location_points: List[LocationPoint] = field(default_factory=list)
    terrain_segments: List[TerrainSegment] = field(default_factory=list)
    weather_snapshots: List[WeatherConditions] = field(default_factory=list)
    pause_intervals: List[PauseInterval] = field(default_factory=list)
    children_loaded: bool = True

    def __post_init__(self):
        self.load_weight = validate_load_weight(self.load_weight)
        if self.body_weight <= 0:
            raise InvalidSessionData(f"Body weight must be positive: {self.body_weight}")
        self.status = SessionStatus(self.status)
        self.start_date = ensure_utc(self.start_date)
        self.modified_at = ensure_utc(self.modified_at)
        if self.end_date is not None:
            self.end_date = ensure_utc(self.end_date)
            if self.end_date < self.start_date:
                raise InvalidSessionData("end_date must not be before start_date")
        self.validate_rpe(self.rpe)
        for name in ('total_distance', 'total_duration', 'total_calories', 'elevation_gain', 'elevation_loss'):
            if getattr(self, name) < 0:
                raise InvalidSessionData(f"{name} must be non-negative")

    @staticmethod
    def validate_rpe(rpe):
        if rpe is None:
            return
        if isinstance(rpe, bool) or not isinstance(rpe, int) or not 1 <= rpe <= 10:
            raise InvalidSessionData(f"RPE must be an integer from 1 to 10, got {rpe!r}")

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    @property
    def current_pause(self) -> Optional[PauseInterval]:
        if self.pause_intervals and self.pause_intervals[-1].resumed_at is None:
            return self.pause_intervals[-1]
        return None

    def paused_seconds(self, until: Optional[datetime] = None) -> float:
        return sum(p.duration(until) for p in self.pause_intervals)

    def active_duration(self, until: Optional[datetime] = None) -> float:
        """Elapsed seconds from start to `until` (or end_date) excluding paused time."""
        end = self.end_date or until or utcnow()
        elapsed = (end - self.start_date).total_seconds()
        return max(0.0, elapsed - self.paused_seconds(end))

    def touch(self):
        self.version += 1
        self.modified_at = utcnow()

    def summary_dict(self) -> Dict[str, Any]:
        """Row layout of the session record without child collections."""
        return {
            'id': self.id,
            'load_weight': self.load_weight,
            'body_weight': self.body_weight,
            'start_date': to_iso(self.start_date),
            'end_date': to_iso(self.end_date),
            'status': self.status.value,
            'total_distance': self.total_distance,
            'total_duration': self.total_duration,
            'total_calories': self.total_calories,
            'average_pace': self.average_pace,
            'elevation_gain': self.elevation_gain,
            'elevation_loss': self.elevation_loss,
            'rpe': self.rpe,
            'notes': self.notes,
            'version': self.version,
            'modified_at': to_iso(self.modified_at),
            'pause_intervals': [p.to_dict() for p in self.pause_intervals],
        }

    def to_dict(self, include_children: bool = True) -> Dict[str, Any]:
        data = self.summary_dict()
        if include_children and self.children_loaded:
            data['location_points'] = [p.to_dict() for p in self.location_points]
            data['terrain_segments'] = [s.to_dict() for s in self.terrain_segments]
            data['weather_snapshots'] = [w.to_dict() for w in self.weather_snapshots]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuckSession':
        has_children = any(k in data for k in ('location_points', 'terrain_segments', 'weather_snapshots'))
        return cls(
            id=data['id'],
            load_weight=data['load_weight'],
            body_weight=float(data.get('body_weight') or 70.0),
            start_date=parse_datetime(data['start_date']),
            end_date=parse_datetime(data.get('end_date')),
            status=data.get('status', SessionStatus.NOT_STARTED.value),
            total_distance=float(data.get('total_distance') or 0.0),
            total_duration=float(data.get('total_duration') or 0.0),
            total_calories=float(data.get('total_calories') or 0.0),
            average_pace=float(data.get('average_pace') or 0.0),
            elevation_gain=float(data.get('elevation_gain') or 0.0),
            elevation_loss=float(data.get('elevation_loss') or 0.0),
            rpe=data.get('rpe'),
            notes=data.get('notes'),
            version=int(data.get('version') or 1),
            modified_at=parse_datetime(data.get('modified_at')) or utcnow(),
            location_points=[LocationPoint.from_dict(p) for p in data.get('location_points') or []],
            terrain_segments=[TerrainSegment.from_dict(s) for s in data.get('terrain_segments') or []],
            weather_snapshots=[WeatherConditions.from_dict(w) for w in data.get('weather_snapshots') or []],
            pause_intervals=[PauseInterval.from_dict(p) for p in data.get('pause_intervals') or []],
            children_loaded=has_children,
        )
