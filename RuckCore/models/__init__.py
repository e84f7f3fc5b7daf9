"""
Models package for RuckCore.
Exports all data models for use throughout the application.
"""

from .location_point import RawSample, LocationPoint, UNKNOWN_COURSE
from .terrain_segment import TerrainType, TerrainSegment
from .weather_conditions import (
    WeatherConditions, WeatherAlert, ImpactLevel, WeatherKnown, WeatherUnknown, WeatherStatus,
)
from .ruck_session import RuckSession, SessionStatus, PauseInterval, validate_load_weight
from .analytics import (
    SummaryStats, TrendData, PeriodStats, PersonalRecord, PersonalRecords, AchievementProgress,
)

__all__ = [
    # Track
    'RawSample',
    'LocationPoint',
    'UNKNOWN_COURSE',
    'TerrainType',
    'TerrainSegment',

    # Weather
    'WeatherConditions',
    'WeatherAlert',
    'ImpactLevel',
    'WeatherKnown',
    'WeatherUnknown',
    'WeatherStatus',

    # Session
    'RuckSession',
    'SessionStatus',
    'PauseInterval',
    'validate_load_weight',

    # Analytics
    'SummaryStats',
    'TrendData',
    'PeriodStats',
    'PersonalRecord',
    'PersonalRecords',
    'AchievementProgress',
]
