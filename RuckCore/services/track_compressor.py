"""
Streaming track compression.

Raw samples are held in a pending run behind the last committed point (the
anchor). A pending sample is only dropped while every sample of the run stays
within the configured corridor of the straight line anchor -> newest sample,
so the committed polyline never deviates from the raw path by more than the
tolerance. Turns, elevation changes, checkpoints and pause boundaries commit
key points unconditionally.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from ..config import RuckCoreConfig
from ..errors import InvalidSample
from ..models import RawSample, LocationPoint, PauseInterval
from ..utils.geo import haversine_distance, initial_bearing, bearing_change, perpendicular_distance

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    REJECTED = 'rejected'
    MERGED = 'merged'
    COMMITTED = 'committed'


@dataclass
class CompressionStep:
    outcome: StepOutcome
    committed: List[LocationPoint] = field(default_factory=list)
    reason: Optional[str] = None


class TrackAccumulator:
    """Distance and elevation totals over an ordered point sequence."""

    def __init__(self, noise_threshold_m: float = 1.0):
        self.noise_threshold_m = noise_threshold_m
        self.total_distance = 0.0
        self.elevation_gain = 0.0
        self.elevation_loss = 0.0
        self.count = 0
        self._previous = None
        self._reference_altitude = None

    def add(self, point, segment_break: bool = False) -> float:
        """Accumulate one point; returns the distance it added."""
        self.count += 1
        if self._previous is None or segment_break:
            self._previous = point
            self._reference_altitude = point.best_altitude
            return 0.0

        distance = haversine_distance(
            self._previous.latitude, self._previous.longitude, point.latitude, point.longitude
        )
        self.total_distance += distance

        # Elevation only moves once the change clears the noise threshold
        delta = point.best_altitude - self._reference_altitude
        if abs(delta) >= self.noise_threshold_m:
            if delta > 0:
                self.elevation_gain += delta
            else:
                self.elevation_loss += -delta
            self._reference_altitude = point.best_altitude

        self._previous = point
        return distance


def is_pause_gap(earlier, later, pause_intervals: Sequence[PauseInterval]) -> bool:
    return any(p.separates(earlier.timestamp, later.timestamp) for p in pause_intervals)


def replay_track(points: Sequence[LocationPoint], pause_intervals: Sequence[PauseInterval] = (),
                 noise_threshold_m: float = 1.0) -> TrackAccumulator:
    """Rebuild distance and elevation totals from committed points."""
    accumulator = TrackAccumulator(noise_threshold_m)
    previous = None
    for point in points:
        gap = previous is not None and is_pause_gap(previous, point, pause_intervals)
        accumulator.add(point, segment_break=gap)
        previous = point
    return accumulator


@dataclass
class CompressionReport:
    raw_count: int
    kept_count: int
    raw_distance: float
    compressed_distance: float
    raw_elevation_gain: float
    compressed_elevation_gain: float

    @property
    def compression_ratio(self) -> float:
        if self.raw_count == 0:
            return 1.0
        return self.kept_count / self.raw_count

    @property
    def distance_error(self) -> float:
        if self.raw_distance == 0:
            return 0.0
        return abs(self.raw_distance - self.compressed_distance) / self.raw_distance

    @property
    def elevation_error(self) -> float:
        if self.raw_elevation_gain == 0:
            return 0.0
        return abs(self.raw_elevation_gain - self.compressed_elevation_gain) / self.raw_elevation_gain

    @property
    def is_valid(self) -> bool:
        return self.distance_error < 0.02 and self.elevation_error < 0.05

    def to_dict(self):
        return {
            'raw_count': self.raw_count,
            'kept_count': self.kept_count,
            'compression_ratio': self.compression_ratio,
            'distance_error': self.distance_error,
            'elevation_error': self.elevation_error,
            'is_valid': self.is_valid,
        }


class TrackCompressor:
    def __init__(self, config: Optional[RuckCoreConfig] = None):
        self.config = config or RuckCoreConfig()
        self.committed: List[LocationPoint] = []
        self.track = TrackAccumulator(self.config.elevation_noise_threshold_m)
        self.raw_track = TrackAccumulator(self.config.elevation_noise_threshold_m)
        self._pending: List[RawSample] = []
        self._last_timestamp = None
        self._break_next = False

    @property
    def total_distance(self) -> float:
        return self.track.total_distance

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def last_timestamp(self):
        return self._last_timestamp

    def add(self, sample: RawSample) -> CompressionStep:
        """Feed one raw sample. Raises InvalidSample for out-of-order timestamps."""
        if sample.horizontal_accuracy > self.config.max_horizontal_accuracy_m:
            logger.debug(f"[COMPRESS] Rejected sample at {sample.timestamp.isoformat()}: accuracy {sample.horizontal_accuracy}m")
            return CompressionStep(StepOutcome.REJECTED, reason='accuracy')

        if self._last_timestamp is not None and sample.timestamp <= self._last_timestamp:
            raise InvalidSample(
                f"Sample timestamp {sample.timestamp.isoformat()} is not after {self._last_timestamp.isoformat()}"
            )

        self.raw_track.add(sample, segment_break=self._break_next)
        self._last_timestamp = sample.timestamp

        # Session start and the first sample after a resume always survive
        if not self.committed or self._break_next:
            self._pending.append(sample)
            return CompressionStep(StepOutcome.COMMITTED, [self._commit(sample, is_key=True)])

        commits = []
        if self._pending:
            last = self._pending[-1]
            before_last = self._pending[-2] if len(self._pending) > 1 else self.committed[-1]
            if self._is_turn(before_last, last, sample):
                commits.append(self._commit(last, is_key=True))
            elif not self._within_corridor(sample):
                commits.append(self._commit(last, is_key=False))

        anchor = self.committed[-1]
        self._pending.append(sample)
        checkpoint_due = len(self._pending) >= self.config.checkpoint_every_samples
        elevation_moved = abs(sample.best_altitude - anchor.best_altitude) >= self.config.elevation_key_threshold_m
        if checkpoint_due or elevation_moved:
            commits.append(self._commit(sample, is_key=True))
            return CompressionStep(StepOutcome.COMMITTED, commits)

        return CompressionStep(StepOutcome.MERGED, commits)

    def mark_pause(self) -> List[LocationPoint]:
        """Commit the pause boundary; the next accepted sample starts a new leg."""
        commits = self._flush_tail()
        self._break_next = True
        return commits

    def finish(self) -> List[LocationPoint]:
        """Commit the final sample of the session."""
        return self._flush_tail()

    def restore(self, points: Sequence[LocationPoint], pause_intervals: Sequence[PauseInterval] = ()):
        """Resume compression after the last durable point; the next sample opens a new leg."""
        self.committed = list(points)
        self.track = replay_track(self.committed, pause_intervals, self.config.elevation_noise_threshold_m)
        self.raw_track = replay_track(self.committed, pause_intervals, self.config.elevation_noise_threshold_m)
        self._pending = []
        self._last_timestamp = self.committed[-1].timestamp if self.committed else None
        self._break_next = bool(self.committed)

    def report(self) -> CompressionReport:
        return CompressionReport(
            raw_count=self.raw_track.count,
            kept_count=len(self.committed),
            raw_distance=self.raw_track.total_distance,
            compressed_distance=self.track.total_distance,
            raw_elevation_gain=self.raw_track.elevation_gain,
            compressed_elevation_gain=self.track.elevation_gain,
        )

    def _flush_tail(self) -> List[LocationPoint]:
        # An empty run means the newest sample was already committed as a key point
        if not self._pending:
            return []
        return [self._commit(self._pending[-1], is_key=True)]

    def _commit(self, sample: RawSample, is_key: bool) -> LocationPoint:
        index = self._pending.index(sample)
        self._pending = self._pending[index + 1:]
        point = LocationPoint.from_sample(sample, is_key_point=is_key)
        self.track.add(point, segment_break=self._break_next)
        self.committed.append(point)
        self._break_next = False
        return point

    def _within_corridor(self, sample: RawSample) -> bool:
        anchor = self.committed[-1]
        tolerance = self.config.compression_tolerance_m
        for pending in self._pending:
            offset = perpendicular_distance(
                pending.latitude, pending.longitude,
                anchor.latitude, anchor.longitude,
                sample.latitude, sample.longitude,
            )
            if offset > tolerance:
                return False
        return True

    def _is_turn(self, before, vertex, after) -> bool:
        min_leg = self.config.min_turn_leg_m
        leg_in = haversine_distance(before.latitude, before.longitude, vertex.latitude, vertex.longitude)
        leg_out = haversine_distance(vertex.latitude, vertex.longitude, after.latitude, after.longitude)
        if leg_in < min_leg or leg_out < min_leg:
            return False
        bearing_in = initial_bearing(before.latitude, before.longitude, vertex.latitude, vertex.longitude)
        bearing_out = initial_bearing(vertex.latitude, vertex.longitude, after.latitude, after.longitude)
        return abs(bearing_change(bearing_in, bearing_out)) >= self.config.turn_angle_threshold_deg


def simplify_points(points: Sequence[LocationPoint], tolerance_m: float) -> List[LocationPoint]:
    """Douglas-Peucker over committed points; key points are always kept."""
    if len(points) <= 2:
        return list(points)

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    for i, point in enumerate(points):
        if point.is_key_point:
            keep[i] = True

    stack = [(0, len(points) - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue
        max_offset = 0.0
        max_index = start
        for i in range(start + 1, end):
            offset = perpendicular_distance(
                points[i].latitude, points[i].longitude,
                points[start].latitude, points[start].longitude,
                points[end].latitude, points[end].longitude,
            )
            if offset > max_offset:
                max_offset = offset
                max_index = i
        if max_offset > tolerance_m:
            keep[max_index] = True
            stack.append((start, max_index))
            stack.append((max_index, end))

    return [p for p, kept in zip(points, keep) if kept]
