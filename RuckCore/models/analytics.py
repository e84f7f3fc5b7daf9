"""
Aggregate views derived from completed sessions.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, List, Dict, Any

from ..utils.dates import to_iso


@dataclass
class SummaryStats:
    total_distance: float = 0.0   # meters
    total_calories: float = 0.0   # kcal
    total_duration: float = 0.0   # seconds
    session_count: int = 0
    average_pace: float = 0.0     # min/km, weighted by distance
    longest_session: Optional[str] = None  # session id with the greatest distance
    longest_distance: float = 0.0
    best_pace: float = 0.0        # min/km, lowest non-zero pace
    total_elevation_gain: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrendData:
    metric: str
    current: float
    previous: float
    lower_is_better: bool = False

    @property
    def percentage_change(self) -> float:
        if self.previous == 0:
            return 100.0 if self.current > 0 else 0.0
        return (self.current - self.previous) / self.previous * 100.0

    @property
    def is_improving(self) -> bool:
        if self.lower_is_better:
            return self.current < self.previous
        return self.current > self.previous

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metric': self.metric,
            'current': self.current,
            'previous': self.previous,
            'percentage_change': self.percentage_change,
            'is_improving': self.is_improving,
        }


@dataclass
class PeriodStats:
    time_range: str
    start: Optional[datetime]
    end: Optional[datetime]
    summary: SummaryStats
    trends: List[TrendData] = field(default_factory=list)
    breakdown: List[Dict[str, Any]] = field(default_factory=list)
    training_streak_weeks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'time_range': self.time_range,
            'start': to_iso(self.start),
            'end': to_iso(self.end),
            'summary': self.summary.to_dict(),
            'trends': [t.to_dict() for t in self.trends],
            'breakdown': self.breakdown,
            'training_streak_weeks': self.training_streak_weeks,
        }


@dataclass
class PersonalRecord:
    value: float
    session_id: str
    date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {'value': self.value, 'session_id': self.session_id, 'date': to_iso(self.date)}


@dataclass
class PersonalRecords:
    longest_distance: Optional[PersonalRecord] = None
    fastest_pace: Optional[PersonalRecord] = None
    heaviest_load: Optional[PersonalRecord] = None
    highest_calorie_burn: Optional[PersonalRecord] = None
    longest_duration: Optional[PersonalRecord] = None
    most_weight_moved: Optional[PersonalRecord] = None  # load kg x distance km

    def to_dict(self) -> Dict[str, Any]:
        return {name: (record.to_dict() if record else None) for name, record in self.__dict__.items()}


@dataclass
class AchievementProgress:
    key: str
    name: str
    description: str
    current: float
    target: float

    @property
    def progress(self) -> float:
        if self.target <= 0:
            return 1.0
        return min(1.0, self.current / self.target)

    @property
    def is_unlocked(self) -> bool:
        return self.current >= self.target

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'current': self.current,
            'target': self.target,
            'progress': self.progress,
            'is_unlocked': self.is_unlocked,
        }
