from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Any

from ..errors import InvalidSessionData
from ..utils.dates import ensure_utc, parse_datetime, to_iso


class TerrainType(str, Enum):
    PAVED_ROAD = 'paved_road'
    TRAIL = 'trail'
    GRAVEL = 'gravel'
    SAND = 'sand'
    MUD = 'mud'
    SNOW = 'snow'
    GRASS = 'grass'
    STAIRS = 'stairs'

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def energy_factor(self) -> float:
        """Metabolic cost multiplier relative to pavement."""
        return _ENERGY_FACTORS[self]

    @classmethod
    def parse(cls, value) -> 'TerrainType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidSessionData(f"Invalid terrain_type: {value}")


_DISPLAY_NAMES = {
    TerrainType.PAVED_ROAD: 'Pavement',
    TerrainType.TRAIL: 'Trail',
    TerrainType.GRAVEL: 'Gravel',
    TerrainType.SAND: 'Sand',
    TerrainType.MUD: 'Mud',
    TerrainType.SNOW: 'Snow',
    TerrainType.GRASS: 'Grass',
    TerrainType.STAIRS: 'Stairs',
}

# Load carriage field studies, pavement = 1.0
_ENERGY_FACTORS = {
    TerrainType.PAVED_ROAD: 1.0,
    TerrainType.TRAIL: 1.2,
    TerrainType.GRAVEL: 1.3,
    TerrainType.SAND: 1.8,
    TerrainType.MUD: 1.85,
    TerrainType.SNOW: 1.5,
    TerrainType.GRASS: 1.25,
    TerrainType.STAIRS: 2.0,
}


@dataclass
class TerrainSegment:
    """A contiguous stretch of a session with one terrain classification."""
    start_time: datetime
    end_time: datetime
    terrain_type: TerrainType
    grade: float = 0.0
    confidence: float = 0.8
    is_manually_set: bool = False

    def __post_init__(self):
        self.start_time = ensure_utc(self.start_time)
        self.end_time = ensure_utc(self.end_time)
        self.terrain_type = TerrainType.parse(self.terrain_type)

        if self.end_time <= self.start_time:
            raise InvalidSessionData(
                f"Segment end {self.end_time.isoformat()} must be after start {self.start_time.isoformat()}"
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidSessionData(f"Segment confidence out of range: {self.confidence}")

    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def midpoint(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration / 2)

    def contains(self, when: datetime) -> bool:
        return self.start_time <= when < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': to_iso(self.start_time),
            'end_time': to_iso(self.end_time),
            'terrain_type': self.terrain_type.value,
            'grade': self.grade,
            'confidence': self.confidence,
            'is_manually_set': self.is_manually_set,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TerrainSegment':
        return cls(
            start_time=parse_datetime(data['start_time']),
            end_time=parse_datetime(data['end_time']),
            terrain_type=data['terrain_type'],
            grade=float(data.get('grade') or 0.0),
            confidence=float(data.get('confidence', 0.8)),
            is_manually_set=bool(data.get('is_manually_set', False)),
        )
