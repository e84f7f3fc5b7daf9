"""
Grade estimation from a noisy altitude stream.

ElevationFilter fuses barometric and GPS altitude with a one-dimensional
Kalman filter: the barometer drives the estimate sample to sample, and a
run of accurate GPS fixes pulls it back when the barometer drifts.
GradeSmoother turns filtered altitude into grade over runs of at least
`grade_min_run_m` horizontal meters and averages the last few grades,
weighting each by its confidence, its run length and its recency.
"""

import logging
import math
from collections import deque
from typing import Optional

from ..config import RuckCoreConfig
from ..utils.calculations import grade_percent
from ..utils.geo import haversine_distance

logger = logging.getLogger(__name__)

INITIAL_COVARIANCE = 1000.0
PRESSURE_JUMP_M = 0.5
STABLE_THRESHOLD = 0.8
GPS_HISTORY = 5
GPS_MAX_ACCURACY_M = 5.0
GPS_MIN_WEIGHT = 0.7
GPS_DRIFT_M = 5.0
MAX_GPS_CORRECTION = 0.2
MIN_ELEVATION_CHANGE_M = 0.25
FULL_CONFIDENCE_RUN_M = 50.0
GRADE_STEP = 0.5


def gps_weight(vertical_accuracy: float) -> float:
    if vertical_accuracy is None or vertical_accuracy <= 0:
        return 0.1
    return max(0.1, min(1.0, 10.0 / vertical_accuracy))


def accuracy_factor(horizontal_accuracy: float) -> float:
    if horizontal_accuracy is None or horizontal_accuracy < 0:
        return 0.5
    if horizontal_accuracy <= 1.0:
        return 1.0
    if horizontal_accuracy <= 5.0:
        return 0.8
    if horizontal_accuracy <= 10.0:
        return 0.6
    return 0.3


class ElevationFilter:
    """Kalman-filtered altitude for points or raw samples."""

    def __init__(self, process_noise: float = 0.05, measurement_noise: float = 0.2):
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.state: Optional[float] = None
        self.covariance = INITIAL_COVARIANCE
        self._last_time = None
        self._last_barometric: Optional[float] = None
        self._gps = deque(maxlen=GPS_HISTORY)
        self._recent = deque(maxlen=GPS_HISTORY)

    @property
    def stability(self) -> float:
        """1 for a flat recent estimate, falling towards 0 as it wanders by meters."""
        if len(self._recent) < 2:
            return 0.0
        mean = sum(self._recent) / len(self._recent)
        spread = math.sqrt(sum((v - mean) ** 2 for v in self._recent) / len(self._recent))
        return max(0.0, min(1.0, 1.0 - spread / 5.0))

    def update(self, point) -> float:
        measurement = point.best_altitude
        if self.state is None:
            self.state = measurement
            self.covariance = self.measurement_noise
            self._remember(point)
            return self.state

        dt = max(0.0, (point.timestamp - self._last_time).total_seconds())
        self.covariance += self.process_noise * dt

        noise = self._noise_for(point)
        gain = self.covariance / (self.covariance + noise)
        self.state += gain * (measurement - self.state)
        self.covariance = (1 - gain) * self.covariance

        if point.barometric_altitude is not None:
            self._correct_drift(point)
        self._remember(point)
        return self.state

    def _noise_for(self, point) -> float:
        noise = self.measurement_noise
        if point.barometric_altitude is not None and self._last_barometric is not None:
            jump = abs(point.barometric_altitude - self._last_barometric)
            if jump > PRESSURE_JUMP_M:
                noise *= 1 + jump
        stability = self.stability
        if stability > STABLE_THRESHOLD:
            noise *= 2 - stability
        return noise

    def _correct_drift(self, point):
        weight = gps_weight(point.vertical_accuracy)
        self._gps.append((point.altitude, weight))
        if point.vertical_accuracy > GPS_MAX_ACCURACY_M or len(self._gps) < 3 or weight <= GPS_MIN_WEIGHT:
            return
        total = sum(w for _, w in self._gps)
        gps_altitude = sum(a * w for a, w in self._gps) / total
        drift = gps_altitude - self.state
        if abs(drift) <= GPS_DRIFT_M:
            return
        self.state += drift * min(MAX_GPS_CORRECTION, weight * 0.3)
        self.covariance += abs(drift) * 0.1
        logger.debug(f"[GRADE] Barometric drift of {drift:.1f}m corrected towards GPS")

    def _remember(self, point):
        self._last_time = point.timestamp
        if point.barometric_altitude is not None:
            self._last_barometric = point.barometric_altitude
        self._recent.append(self.state)


class GradeSmoother:
    def __init__(self, window: int = 3, min_run_m: float = 10.0, max_grade: float = 60.0):
        self.min_run_m = min_run_m
        self.max_grade = max_grade
        self.grade = 0.0
        self._window = deque(maxlen=max(1, window))
        self._anchor: Optional[float] = None
        self._run = 0.0

    def reset_run(self, altitude: float):
        """Start a fresh run at `altitude`; the averaging window is kept."""
        self._anchor = altitude
        self._run = 0.0

    def add(self, altitude: float, run_m: float, horizontal_accuracy: float = 5.0) -> float:
        if self._anchor is None:
            self.reset_run(altitude)
            return self.grade

        self._run += run_m
        if self._run < self.min_run_m:
            return self.grade

        rise = altitude - self._anchor
        if abs(rise) < MIN_ELEVATION_CHANGE_M:
            rise = 0.0
        raw = max(-self.max_grade, min(self.max_grade, grade_percent(rise, self._run)))
        confidence = min(1.0, self._run / FULL_CONFIDENCE_RUN_M) * accuracy_factor(horizontal_accuracy)
        self._window.append((raw, self._run, confidence))
        self.reset_run(altitude)
        self.grade = self._smoothed()
        return self.grade

    def _smoothed(self) -> float:
        count = len(self._window)
        weighted = 0.0
        total = 0.0
        for i, (grade, run, confidence) in enumerate(self._window):
            weight = confidence * run * (i + 1) / count
            weighted += grade * weight
            total += weight
        if total <= 0:
            return 0.0
        return round(weighted / total / GRADE_STEP) * GRADE_STEP


class GradeTracker:
    """Streaming grade for an ordered sequence of points or samples."""

    def __init__(self, config: Optional[RuckCoreConfig] = None):
        config = config or RuckCoreConfig()
        self.filter = ElevationFilter(config.elevation_process_noise, config.elevation_measurement_noise)
        self.smoother = GradeSmoother(config.grade_smoothing_window, config.grade_min_run_m, config.max_grade_percent)
        self._previous = None

    @property
    def grade(self) -> float:
        return self.smoother.grade

    def update(self, point, segment_break: bool = False) -> float:
        """Feed the next point; a segment break starts a new run so no grade spans the gap."""
        previous = self._previous
        self._previous = point
        altitude = self.filter.update(point)
        if previous is None or segment_break:
            self.smoother.reset_run(altitude)
            return self.smoother.grade
        run = haversine_distance(previous.latitude, previous.longitude, point.latitude, point.longitude)
        return self.smoother.add(altitude, run, point.horizontal_accuracy)
