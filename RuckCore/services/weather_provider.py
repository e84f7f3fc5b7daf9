"""
WeatherKit integration for point-in-time weather snapshots.
"""

import os
import jwt
import time
import logging
import requests
from datetime import datetime
from typing import Optional

from ..errors import WeatherUnavailable
from ..models import WeatherConditions
from ..utils.dates import parse_datetime
from .redis_cache_service import cache_get, cache_set

logger = logging.getLogger(__name__)


class WeatherKitProvider:
    """Fetch current conditions from Apple WeatherKit."""

    def __init__(self, timeout: float = 5.0, cache_ttl: int = 1800):
        self.team_id = os.getenv('APPLE_TEAM_ID')
        self.service_id = os.getenv('APPLE_SERVICE_ID')
        self.key_id = os.getenv('APPLE_KEY_ID')
        self.private_key = os.getenv('APPLE_PRIVATE_KEY', '').replace('\\n', '\n')
        self.base_url = "https://weatherkit.apple.com/api/v2"
        self.timeout = timeout
        self.cache_ttl = cache_ttl

        if not self.is_configured:
            logger.warning("[WEATHER] Missing WeatherKit configuration; lookups will degrade to neutral")
            logger.debug(f"team_id: {'SET' if self.team_id else 'MISSING'}")
            logger.debug(f"service_id: {'SET' if self.service_id else 'MISSING'}")
            logger.debug(f"key_id: {'SET' if self.key_id else 'MISSING'}")
            logger.debug(f"private_key: {'SET' if self.private_key else 'MISSING'}")

    @property
    def is_configured(self) -> bool:
        return all([self.team_id, self.service_id, self.key_id, self.private_key])

    def fetch(self, latitude: float, longitude: float, at: datetime) -> WeatherConditions:
        """Raise WeatherUnavailable when no snapshot can be produced."""
        cache_key = f"weather:{round(latitude, 2)}:{round(longitude, 2)}:{at.strftime('%Y%m%d%H')}"
        cached = cache_get(cache_key)
        if cached:
            logger.debug(f"[WEATHER] Cache hit for {cache_key}")
            return WeatherConditions.from_dict(cached)

        if not self.is_configured:
            raise WeatherUnavailable("WeatherKit is not configured")

        token = self._generate_jwt_token()
        url = f"{self.base_url}/weather/en/{latitude}/{longitude}"
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json'
        }
        params = {'dataSets': 'currentWeather'}

        try:
            response = requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise WeatherUnavailable(f"WeatherKit request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(f"[WEATHER] WeatherKit returned {response.status_code}: {response.text[:200]}")
            raise WeatherUnavailable(f"WeatherKit returned {response.status_code}")
        if not response.text.strip():
            raise WeatherUnavailable("WeatherKit returned an empty body")

        current = response.json().get('currentWeather')
        if not current:
            raise WeatherUnavailable("WeatherKit response has no currentWeather")

        snapshot = self.parse_current_weather(current, fallback_time=at)
        cache_set(cache_key, snapshot.to_dict(), self.cache_ttl)
        return snapshot

    @staticmethod
    def parse_current_weather(current: dict, fallback_time: Optional[datetime] = None) -> WeatherConditions:
        """Map a WeatherKit currentWeather block (fractions, km/h) onto WeatherConditions."""
        return WeatherConditions(
            timestamp=parse_datetime(current.get('asOf')) or fallback_time,
            temperature=float(current.get('temperature', 20.0)),
            humidity=max(0.0, min(100.0, float(current.get('humidity', 0.5)) * 100.0)),
            wind_speed=float(current.get('windSpeed', 0.0)) / 3.6,
            wind_direction=float(current.get('windDirection', 0.0)) % 360.0,
            precipitation=float(current.get('precipitationIntensity', 0.0)),
            pressure=float(current.get('pressure', 1013.25)),
        )

    def _generate_jwt_token(self) -> str:
        """Generate JWT token for WeatherKit API authentication."""
        now = int(time.time())
        payload = {
            'iss': self.team_id,
            'iat': now,
            'exp': now + 3600,
            'sub': self.service_id,
        }
        headers = {
            'alg': 'ES256',
            'kid': self.key_id,
            'id': f"{self.team_id}.{self.service_id}"
        }
        try:
            return jwt.encode(payload, self.private_key, algorithm='ES256', headers=headers)
        except Exception as e:
            raise WeatherUnavailable(f"Failed to generate WeatherKit token: {e}") from e
