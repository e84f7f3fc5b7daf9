"""
Energy expenditure for load carriage (LCDA walking equation).

Metabolic rate in W/kg of total carried mass:

    M = 1.44 + 1.94 * S^0.43 + 0.24 * S^4 + 0.34 * S * G * (1 - 1.05^(1 - 1.1^(G + 32)))

with S the walking speed in m/s and G the grade in percent. The last term is
the grade correction; it rises steeply uphill and flattens out downhill. The
result is scaled by the terrain factor and the weather impact modifier and
integrated between consecutive committed points.
"""

import bisect
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from ..config import RuckCoreConfig
from ..models import (
    LocationPoint, TerrainSegment, TerrainType, WeatherConditions, ImpactLevel, PauseInterval,
    validate_load_weight,
)
from ..utils.geo import haversine_distance
from .grade_calculator import GradeTracker
from .track_compressor import is_pause_gap
from .weather_overlay import WeatherOverlay

logger = logging.getLogger(__name__)

RESTING_WATTS_PER_KG = 1.44
KCAL_PER_MIN_PER_WATT = 0.01434
MIN_MOVING_SPEED_MPS = 0.1
MAX_WALKING_SPEED_MPS = 3.0
MAX_WEATHER_ADJUSTMENT = 0.15
CONFIDENCE_MARGIN = 0.10


def lcda_watts_per_kg(speed_mps: float, grade: float) -> float:
    """Walking metabolic rate in W/kg; grade must already be clamped."""
    if speed_mps < MIN_MOVING_SPEED_MPS:
        return RESTING_WATTS_PER_KG
    s = min(speed_mps, MAX_WALKING_SPEED_MPS)
    base = 1.44 + 1.94 * s ** 0.43 + 0.24 * s ** 4
    grade_term = 0.34 * s * grade * (1 - 1.05 ** (1 - 1.1 ** (grade + 32)))
    return max(RESTING_WATTS_PER_KG, base + grade_term)


def bounded_modifier(modifier: float) -> float:
    return max(1.0 - MAX_WEATHER_ADJUSTMENT, min(1.0 + MAX_WEATHER_ADJUSTMENT, modifier))


class EnergyEstimator:
    def __init__(self, load_weight: float, body_weight: Optional[float] = None,
                 config: Optional[RuckCoreConfig] = None):
        self.config = config or RuckCoreConfig()
        self.load_weight = validate_load_weight(load_weight)
        self.body_weight = body_weight if body_weight else self.config.default_body_weight_kg

    @property
    def total_mass(self) -> float:
        return self.body_weight + self.load_weight

    def clamp_grade(self, grade: float) -> float:
        limit = self.config.max_grade_percent
        return max(-limit, min(limit, grade))

    def rate_watts(self, speed_mps: float, grade: float = 0.0,
                   terrain: TerrainType = TerrainType.PAVED_ROAD,
                   impact: ImpactLevel = ImpactLevel.NEUTRAL) -> float:
        if speed_mps < MIN_MOVING_SPEED_MPS:
            # Standing still: resting baseline only
            return RESTING_WATTS_PER_KG * self.total_mass
        watts_per_kg = lcda_watts_per_kg(speed_mps, self.clamp_grade(grade))
        modifier = bounded_modifier(impact.energy_modifier)
        return watts_per_kg * self.total_mass * terrain.energy_factor * modifier

    def rate_kcal_per_min(self, speed_mps: float, grade: float = 0.0,
                          terrain: TerrainType = TerrainType.PAVED_ROAD,
                          impact: ImpactLevel = ImpactLevel.NEUTRAL) -> float:
        return self.rate_watts(speed_mps, grade, terrain, impact) * KCAL_PER_MIN_PER_WATT

    def calories_for(self, duration_s: float, speed_mps: float, grade: float = 0.0,
                     terrain: TerrainType = TerrainType.PAVED_ROAD,
                     impact: ImpactLevel = ImpactLevel.NEUTRAL) -> float:
        """Calories for a constant effort held for duration_s seconds."""
        return self.rate_kcal_per_min(speed_mps, grade, terrain, impact) * duration_s / 60.0

    @staticmethod
    def confidence_interval(total_calories: float) -> Tuple[float, float]:
        return total_calories * (1 - CONFIDENCE_MARGIN), total_calories * (1 + CONFIDENCE_MARGIN)


class SegmentConditions:
    """
    Terrain and weather impact in force at a given time.

    Weather is rated once per segment from the snapshot nearest the segment
    midpoint, so every point of a segment shares one impact level. Times
    outside every segment fall back to the last segment, or before the first
    one to the default terrain and the nearest snapshot.
    """

    def __init__(self, segments: Sequence[TerrainSegment], overlay: Optional[WeatherOverlay] = None,
                 default_terrain=TerrainType.PAVED_ROAD):
        self.segments = sorted(segments, key=lambda s: s.start_time)
        self.overlay = overlay or WeatherOverlay()
        self.default_terrain = TerrainType.parse(default_terrain)
        self._starts = [s.start_time for s in self.segments]
        self._impacts = [w.impact for w in self.overlay.segment_impacts(self.segments)]

    def at(self, when: datetime) -> Tuple[TerrainType, ImpactLevel]:
        index = bisect.bisect_right(self._starts, when) - 1
        if index >= 0 and (self.segments[index].contains(when) or index == len(self.segments) - 1):
            return self.segments[index].terrain_type, self._impacts[index]
        return self.default_terrain, self.overlay.impact_at(when)


class CalorieIntegrator:
    """
    Trapezoidal calorie integral over committed points.

    Terrain and weather for each interval are looked up at the interval's
    start; grade comes from the smoothed altitude stream. Intervals that
    span a pause contribute nothing.
    """

    def __init__(self, estimator: EnergyEstimator,
                 conditions_at: Callable[[datetime], Tuple[TerrainType, ImpactLevel]],
                 grade_tracker: Optional[GradeTracker] = None):
        self.estimator = estimator
        self.conditions_at = conditions_at
        self.grade_tracker = grade_tracker or GradeTracker(estimator.config)
        self.total_calories = 0.0
        self.profile: List[Tuple[datetime, float]] = []
        self._previous: Optional[LocationPoint] = None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self._previous.timestamp if self._previous is not None else None

    def add(self, point: LocationPoint, segment_break: bool = False) -> float:
        previous = self._previous
        self._previous = point
        starts_run = previous is None or segment_break
        grade = self.grade_tracker.update(point, segment_break=starts_run)
        if starts_run:
            self.profile.append((point.timestamp, self.total_calories))
            return 0.0

        dt = (point.timestamp - previous.timestamp).total_seconds()
        if dt <= 0:
            return 0.0

        run = haversine_distance(previous.latitude, previous.longitude, point.latitude, point.longitude)
        pair_speed = run / dt
        terrain, impact = self.conditions_at(previous.timestamp)

        rate_start = self.estimator.rate_kcal_per_min(previous.speed or pair_speed, grade, terrain, impact)
        rate_end = self.estimator.rate_kcal_per_min(point.speed or pair_speed, grade, terrain, impact)
        calories = (rate_start + rate_end) / 2 * dt / 60.0

        self.total_calories += calories
        self.profile.append((point.timestamp, self.total_calories))
        return calories

    def breakdown(self) -> dict:
        low, high = self.estimator.confidence_interval(self.total_calories)
        return {
            'total_calories': self.total_calories,
            'confidence_interval': {'low': low, 'high': high},
            'profile': [{'timestamp': when.isoformat(), 'calories': total} for when, total in self.profile],
        }


def recompute_calories(estimator: EnergyEstimator, points: Sequence[LocationPoint],
                       segments: Sequence[TerrainSegment] = (),
                       weather: Sequence[WeatherConditions] = (),
                       pause_intervals: Sequence[PauseInterval] = (),
                       default_terrain: TerrainType = TerrainType.PAVED_ROAD) -> CalorieIntegrator:
    """Replay the calorie integral from a session's owned points, segments and weather."""
    conditions = SegmentConditions(segments, WeatherOverlay(weather), default_terrain)
    integrator = CalorieIntegrator(estimator, conditions.at)
    previous = None
    for point in points:
        gap = previous is not None and is_pause_gap(previous, point, pause_intervals)
        integrator.add(point, segment_break=gap)
        previous = point
    return integrator
