"""
Weather overlay: nearest-snapshot lookup and the impact rule table.
"""

import bisect
import logging
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from ..models import (
    WeatherConditions, ImpactLevel, WeatherKnown, WeatherUnknown, WeatherStatus, TerrainSegment,
)

logger = logging.getLogger(__name__)


def temperature_band(temperature: float) -> str:
    if temperature < -10:
        return 'extreme_cold'
    if temperature < 0:
        return 'cold'
    if temperature < 15:
        return 'cool'
    if temperature <= 25:
        return 'comfortable'
    if temperature <= 30:
        return 'warm'
    if temperature <= 35:
        return 'hot'
    return 'extreme_heat'


_TEMPERATURE_IMPACT = {
    'extreme_cold': ImpactLevel.DANGEROUS,
    'cold': ImpactLevel.CHALLENGING,
    'cool': ImpactLevel.NEUTRAL,
    'comfortable': ImpactLevel.BENEFICIAL,
    'warm': ImpactLevel.NEUTRAL,
    'hot': ImpactLevel.CHALLENGING,
    'extreme_heat': ImpactLevel.DANGEROUS,
}


def temperature_impact(temperature: float) -> ImpactLevel:
    return _TEMPERATURE_IMPACT[temperature_band(temperature)]


def wind_impact(wind_speed: float) -> ImpactLevel:
    if wind_speed > 20:
        return ImpactLevel.DANGEROUS
    if wind_speed > 15:
        return ImpactLevel.CHALLENGING
    if wind_speed > 10:
        return ImpactLevel.NEUTRAL
    return ImpactLevel.BENEFICIAL


def precipitation_impact(precipitation: float) -> ImpactLevel:
    if precipitation > 15:
        return ImpactLevel.DANGEROUS
    if precipitation > 5:
        return ImpactLevel.CHALLENGING
    if precipitation > 0:
        return ImpactLevel.NEUTRAL
    return ImpactLevel.BENEFICIAL


def impact_rating(conditions: WeatherConditions) -> ImpactLevel:
    """Worst factor wins; beneficial only when every factor is beneficial."""
    factors = [
        temperature_impact(conditions.temperature),
        wind_impact(conditions.wind_speed),
        precipitation_impact(conditions.precipitation),
    ]
    return max(factors, key=lambda level: level.rank)


def impact_for(status: WeatherStatus) -> ImpactLevel:
    if isinstance(status, WeatherKnown):
        return impact_rating(status.snapshot)
    return ImpactLevel.NEUTRAL


def nearest_snapshot(snapshots: Sequence[WeatherConditions], when: datetime) -> WeatherStatus:
    """Temporally nearest snapshot; on a tie the earlier one wins. `snapshots` must be sorted."""
    if not snapshots:
        return WeatherUnknown()
    timestamps = [s.timestamp for s in snapshots]
    index = bisect.bisect_left(timestamps, when)
    candidates = []
    if index > 0:
        candidates.append(snapshots[index - 1])
    if index < len(snapshots):
        candidates.append(snapshots[index])
    best = min(candidates, key=lambda s: (abs((s.timestamp - when).total_seconds()), s.timestamp))
    return WeatherKnown(best)


@dataclass
class SegmentWeather:
    segment: TerrainSegment
    status: WeatherStatus
    impact: ImpactLevel

    def to_dict(self):
        snapshot = self.status.snapshot.to_dict() if isinstance(self.status, WeatherKnown) else None
        return {
            'start_time': self.segment.start_time.isoformat(),
            'end_time': self.segment.end_time.isoformat(),
            'weather': snapshot,
            'impact': self.impact.value,
        }


class WeatherOverlay:
    def __init__(self, snapshots: Optional[Sequence[WeatherConditions]] = None):
        self._snapshots: List[WeatherConditions] = sorted(snapshots or [], key=lambda s: s.timestamp)

    @property
    def snapshots(self) -> List[WeatherConditions]:
        return list(self._snapshots)

    def add(self, snapshot: WeatherConditions):
        timestamps = [s.timestamp for s in self._snapshots]
        self._snapshots.insert(bisect.bisect_right(timestamps, snapshot.timestamp), snapshot)

    def status_at(self, when: datetime) -> WeatherStatus:
        return nearest_snapshot(self._snapshots, when)

    def impact_at(self, when: datetime) -> ImpactLevel:
        return impact_for(self.status_at(when))

    def segment_impacts(self, segments: Sequence[TerrainSegment]) -> List[SegmentWeather]:
        results = []
        for segment in segments:
            status = self.status_at(segment.midpoint)
            results.append(SegmentWeather(segment, status, impact_for(status)))
        return results


def resolve_weather(future, timeout: Optional[float] = None) -> WeatherStatus:
    """Outcome of a provider.fetch future; any failure or timeout degrades to WeatherUnknown."""
    try:
        snapshot = future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("[WEATHER] Lookup did not finish in time; using neutral conditions")
        return WeatherUnknown('timeout')
    except Exception as e:
        logger.warning(f"[WEATHER] Lookup failed: {e}; using neutral conditions")
        return WeatherUnknown(str(e))

    if snapshot is None:
        return WeatherUnknown('provider returned no data')
    return WeatherKnown(snapshot)
