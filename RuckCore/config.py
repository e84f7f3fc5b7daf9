"""
Runtime configuration, read from the environment (and a local .env file).
"""
import os
import logging
from dataclasses import dataclass, fields
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[CONFIG] Invalid value for {name}: {raw!r}, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class RuckCoreConfig:
    # Track compression
    compression_tolerance_m: float = 5.0
    max_horizontal_accuracy_m: float = 20.0
    turn_angle_threshold_deg: float = 30.0
    min_turn_leg_m: float = 2.0
    elevation_key_threshold_m: float = 2.0
    checkpoint_every_samples: int = 30
    elevation_noise_threshold_m: float = 1.0

    # Terrain segmentation
    min_segment_duration_s: float = 30.0
    hysteresis_threshold: float = 1.5
    ambiguity_confidence: float = 0.6
    default_terrain: str = 'paved_road'

    # Energy
    default_body_weight_kg: float = 70.0
    max_grade_percent: float = 60.0
    grade_smoothing_window: int = 3
    grade_min_run_m: float = 10.0
    elevation_process_noise: float = 0.05
    elevation_measurement_noise: float = 0.2

    # Weather
    weather_refresh_interval_s: float = 900.0
    weather_timeout_s: float = 5.0
    weather_cache_ttl_s: int = 1800

    # Persistence
    storage_backend: str = 'memory'
    flush_every_points: int = 120
    flush_retries: int = 3
    flush_retry_delay_s: float = 0.5
    stats_cache_ttl_s: int = 300

    @classmethod
    def from_env(cls) -> 'RuckCoreConfig':
        """Build a config where every field can be overridden by RUCK_<FIELD_NAME>."""
        values = {}
        for f in fields(cls):
            env_name = f"RUCK_{f.name.upper()}"
            if f.type in ('int', int):
                values[f.name] = _env_int(env_name, f.default)
            elif f.type in ('float', float):
                values[f.name] = _env_float(env_name, f.default)
            else:
                values[f.name] = os.environ.get(env_name) or f.default
        return cls(**values)
