"""
Weather snapshots and the impact scale derived from them.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Union

from ..errors import InvalidSessionData
from ..utils.dates import ensure_utc, parse_datetime, to_iso

STANDARD_PRESSURE_HPA = 1013.25


class ImpactLevel(str, Enum):
    BENEFICIAL = 'beneficial'
    NEUTRAL = 'neutral'
    CHALLENGING = 'challenging'
    DANGEROUS = 'dangerous'

    @property
    def rank(self) -> int:
        return _IMPACT_ORDER.index(self)

    @property
    def energy_modifier(self) -> float:
        """Multiplier applied to the metabolic rate; stays within +/-15%."""
        return _IMPACT_MODIFIERS[self]


_IMPACT_ORDER = [ImpactLevel.BENEFICIAL, ImpactLevel.NEUTRAL, ImpactLevel.CHALLENGING, ImpactLevel.DANGEROUS]

_IMPACT_MODIFIERS = {
    ImpactLevel.BENEFICIAL: 0.95,
    ImpactLevel.NEUTRAL: 1.0,
    ImpactLevel.CHALLENGING: 1.08,
    ImpactLevel.DANGEROUS: 1.15,
}


@dataclass
class WeatherAlert:
    severity: str  # info, warning, critical
    title: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'severity': self.severity, 'title': self.title, 'message': self.message}


@dataclass
class WeatherConditions:
    """Point-in-time environmental snapshot. Temperature in C, wind in m/s, precipitation in mm/h."""
    timestamp: datetime
    temperature: float = 20.0
    humidity: float = 50.0
    wind_speed: float = 0.0
    wind_direction: float = 0.0
    precipitation: float = 0.0
    pressure: float = STANDARD_PRESSURE_HPA

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)
        for name in ('temperature', 'humidity', 'wind_speed', 'wind_direction', 'precipitation', 'pressure'):
            if not math.isfinite(getattr(self, name)):
                raise InvalidSessionData(f"Weather {name} must be finite")
        if not 0.0 <= self.humidity <= 100.0:
            raise InvalidSessionData(f"Humidity out of range: {self.humidity}")
        if self.wind_speed < 0:
            raise InvalidSessionData(f"Wind speed must be non-negative: {self.wind_speed}")
        if not 0.0 <= self.wind_direction < 360.0:
            raise InvalidSessionData(f"Wind direction out of range: {self.wind_direction}")
        if self.precipitation < 0:
            raise InvalidSessionData(f"Precipitation must be non-negative: {self.precipitation}")

    @property
    def temperature_fahrenheit(self) -> float:
        return self.temperature * 9 / 5 + 32

    @property
    def wind_speed_mph(self) -> float:
        return self.wind_speed * 2.237

    @property
    def apparent_temperature(self) -> float:
        """Wind chill at or below 10C with wind, heat index at or above 27C, else air temperature."""
        wind_kmh = self.wind_speed * 3.6
        if self.temperature <= 10 and wind_kmh > 4.8:
            v = wind_kmh ** 0.16
            return 13.12 + 0.6215 * self.temperature - 11.37 * v + 0.3965 * self.temperature * v

        if self.temperature >= 27:
            t = self.temperature_fahrenheit
            h = self.humidity
            heat_index = (-42.379 + 2.04901523 * t + 10.14333127 * h
                          - 0.22475541 * t * h - 0.00683783 * t * t
                          - 0.05481717 * h * h + 0.00122874 * t * t * h
                          + 0.00085282 * t * h * h - 0.00000199 * t * t * h * h)
            return (heat_index - 32) * 5 / 9

        return self.temperature

    def alerts(self) -> List[WeatherAlert]:
        alerts = []
        if self.temperature < -10:
            alerts.append(WeatherAlert(
                'critical', 'Extreme Cold Warning',
                f"Temperature is {int(self.temperature_fahrenheit)}F. Risk of frostbite and hypothermia.",
            ))
        elif self.temperature > 35:
            alerts.append(WeatherAlert(
                'critical', 'Extreme Heat Warning',
                f"Temperature is {int(self.temperature_fahrenheit)}F. Risk of heat exhaustion.",
            ))
        if self.wind_speed > 15:
            alerts.append(WeatherAlert(
                'warning', 'High Wind Warning',
                f"Wind speed is {int(self.wind_speed_mph)} mph. Exercise caution.",
            ))
        if self.precipitation > 10:
            alerts.append(WeatherAlert(
                'warning', 'Heavy Precipitation',
                "Heavy rain detected. Consider postponing outdoor activities.",
            ))
        return alerts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': to_iso(self.timestamp),
            'temperature': self.temperature,
            'humidity': self.humidity,
            'wind_speed': self.wind_speed,
            'wind_direction': self.wind_direction,
            'precipitation': self.precipitation,
            'pressure': self.pressure,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WeatherConditions':
        return cls(
            timestamp=parse_datetime(data['timestamp']),
            temperature=float(data.get('temperature', 20.0)),
            humidity=float(data.get('humidity', 50.0)),
            wind_speed=float(data.get('wind_speed', 0.0)),
            wind_direction=float(data.get('wind_direction', 0.0)) % 360.0,
            precipitation=float(data.get('precipitation', 0.0)),
            pressure=float(data.get('pressure', STANDARD_PRESSURE_HPA)),
        )


@dataclass(frozen=True)
class WeatherKnown:
    snapshot: WeatherConditions


@dataclass(frozen=True)
class WeatherUnknown:
    reason: str = 'no weather data'


WeatherStatus = Union[WeatherKnown, WeatherUnknown]
