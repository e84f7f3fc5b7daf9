"""
Session lifecycle and ingestion pipeline.

NotStarted -> Active <-> Paused -> Completed. Only an active session accepts
samples, weather and terrain overrides. Each in-progress session has exactly
one writer at a time: a write that finds the session busy is rejected with
ConcurrentWriteError instead of waiting. Committed data is buffered and
flushed to the repository at pause, stop and every `flush_every_points`
committed points.
"""

import copy
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..config import RuckCoreConfig
from ..errors import (
    RuckCoreError, InvalidSample, SessionNotFound, SessionStateError, ActiveSessionExists,
    ConcurrentWriteError, SessionCompleted, StorageError,
)
from ..models import (
    RawSample, LocationPoint, WeatherConditions, RuckSession, SessionStatus, PauseInterval, TerrainType,
    WeatherKnown,
)
from ..utils.calculations import calculate_pace
from ..utils.dates import to_iso, utcnow
from .energy_estimator import EnergyEstimator, CalorieIntegrator, SegmentConditions, recompute_calories
from .session_repository import SessionRepository
from .terrain_segmenter import TerrainSegmenter, TerrainClassifier, reclassify
from .track_compressor import TrackCompressor, StepOutcome, is_pause_gap, replay_track
from .weather_overlay import WeatherOverlay, resolve_weather

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    accepted: bool
    outcome: str
    committed_points: int = 0
    reason: Optional[str] = None
    error: Optional[RuckCoreError] = None

    def to_dict(self):
        return {
            'accepted': self.accepted,
            'outcome': self.outcome,
            'committed_points': self.committed_points,
            'reason': self.reason or (self.error.message if self.error else None),
        }


@dataclass
class _LiveSession:
    session: RuckSession
    compressor: TrackCompressor
    segmenter: TerrainSegmenter
    overlay: WeatherOverlay
    estimator: EnergyEstimator
    integrator: CalorieIntegrator
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    state_lock: threading.RLock = field(default_factory=threading.RLock)
    unflushed_points: List[LocationPoint] = field(default_factory=list)
    unflushed_weather: List[WeatherConditions] = field(default_factory=list)
    unsettled_points: deque = field(default_factory=deque)
    weather_futures: list = field(default_factory=list)
    last_weather_request: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    dirty: bool = False


class SessionHandle:
    """Control surface for one in-progress session."""

    def __init__(self, service: 'SessionService', session_id: str):
        self.service = service
        self.session_id = session_id

    def pause(self) -> RuckSession:
        return self.service.pause(self.session_id)

    def resume(self) -> RuckSession:
        return self.service.resume(self.session_id)

    def stop(self, rpe: Optional[int] = None, notes: Optional[str] = None) -> RuckSession:
        return self.service.stop(self.session_id, rpe=rpe, notes=notes)

    def ingest(self, sample) -> IngestResult:
        return self.service.ingest(self.session_id, sample)

    def add_weather(self, snapshot: WeatherConditions):
        self.service.add_weather(self.session_id, snapshot)

    def override_terrain(self, terrain_type):
        return self.service.override_terrain(self.session_id, terrain_type)

    def clear_terrain_override(self) -> bool:
        return self.service.clear_terrain_override(self.session_id)

    def snapshot(self, include_children: bool = True) -> RuckSession:
        return self.service.snapshot(self.session_id, include_children)


class SessionService:
    def __init__(self, repository: SessionRepository, config: Optional[RuckCoreConfig] = None,
                 weather_provider=None, clock: Callable[[], datetime] = utcnow,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.repository = repository
        self.config = config or RuckCoreConfig()
        self.weather_provider = weather_provider
        self.clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='ruck-weather')
        self._live: Dict[str, _LiveSession] = {}
        self._registry_lock = threading.Lock()

    # Lifecycle

    def start_session(self, load_weight: float, body_weight: Optional[float] = None) -> SessionHandle:
        with self._registry_lock:
            if self._live:
                active_id = next(iter(self._live))
                raise ActiveSessionExists(f"Session {active_id} is still in progress", details={'session_id': active_id})
            stale = self.repository.list_in_progress()
            if stale:
                raise ActiveSessionExists(
                    f"Session {stale[0].id} is still in progress; recover or stop it first",
                    details={'session_id': stale[0].id},
                )

            session = RuckSession(
                load_weight=load_weight,
                body_weight=body_weight or self.config.default_body_weight_kg,
                start_date=self.clock(),
            )
            session.status = SessionStatus.ACTIVE
            live = self._build_live(session)
            self.repository.create(session)
            self._live[session.id] = live

        logger.info(f"[SESSION] Started {session.id} with {session.load_weight}kg load")
        return SessionHandle(self, session.id)

    def pause(self, session_id: str) -> RuckSession:
        with self._writing(session_id) as live:
            session = live.session
            self._require_status(session, SessionStatus.ACTIVE, 'pause')
            now = self.clock()
            with live.state_lock:
                for point in live.compressor.mark_pause():
                    self._commit_point(live, point)
                self._refresh_aggregates(live, until=now)
                session.pause_intervals.append(PauseInterval(paused_at=now))
                session.status = SessionStatus.PAUSED
                session.touch()
                live.dirty = True
            self._flush(live, now, raise_on_failure=False)
            logger.info(f"[SESSION] Paused {session_id}")
            return copy.deepcopy(session)

    def resume(self, session_id: str) -> RuckSession:
        with self._writing(session_id) as live:
            session = live.session
            self._require_status(session, SessionStatus.PAUSED, 'resume')
            now = self.clock()
            with live.state_lock:
                session.current_pause.resumed_at = max(now, session.current_pause.paused_at)
                session.status = SessionStatus.ACTIVE
                session.touch()
                live.resumed_at = session.pause_intervals[-1].resumed_at
                live.dirty = True
            logger.info(f"[SESSION] Resumed {session_id}")
            return copy.deepcopy(session)

    def stop(self, session_id: str, rpe: Optional[int] = None, notes: Optional[str] = None) -> RuckSession:
        """Finalize with whatever has been committed. On StorageError the session stays in progress."""
        RuckSession.validate_rpe(rpe)
        with self._writing(session_id) as live:
            session = live.session
            if not session.status.is_in_progress:
                raise SessionStateError(f"Cannot stop session {session_id} in state {session.status.value}")

            now = self.clock()
            with live.state_lock:
                if session.status == SessionStatus.ACTIVE:
                    for point in live.compressor.finish():
                        self._commit_point(live, point)
                self._collect_weather(live, wait=True)

            final = copy.deepcopy(session)
            last_point_time = final.location_points[-1].timestamp if final.location_points else final.start_date
            end = max(now, last_point_time, final.start_date)
            if final.current_pause is not None:
                final.current_pause.resumed_at = end

            final.end_date = end
            final.status = SessionStatus.COMPLETED
            final.terrain_segments = live.segmenter.finalize(end, final.location_points)
            final.weather_snapshots = live.overlay.snapshots

            track = replay_track(final.location_points, final.pause_intervals, self.config.elevation_noise_threshold_m)
            final.total_distance = track.total_distance
            final.elevation_gain = track.elevation_gain
            final.elevation_loss = track.elevation_loss
            final.total_calories = recompute_calories(
                live.estimator, final.location_points, final.terrain_segments,
                final.weather_snapshots, final.pause_intervals, TerrainType.parse(self.config.default_terrain),
            ).total_calories
            final.total_duration = final.active_duration()
            final.average_pace = calculate_pace(final.total_distance, final.total_duration)
            final.rpe = rpe if rpe is not None else final.rpe
            final.notes = notes if notes is not None else final.notes
            final.touch()

            self._with_retry(
                lambda: self.repository.finalize(final, live.unflushed_points, live.unflushed_weather),
                f"finalize {session_id}",
            )

            report = live.compressor.report()
            logger.info(
                f"[SESSION] Stopped {session_id}: kept {report.kept_count}/{report.raw_count} samples, "
                f"distance error {report.distance_error:.3%}"
            )
            for ambiguity in live.segmenter.ambiguities:
                logger.debug(f"[SESSION][TERRAIN] {ambiguity.message}")

            with live.state_lock:
                live.session = final
                live.unflushed_points = []
                live.unflushed_weather = []
            with self._registry_lock:
                self._live.pop(session_id, None)
            return copy.deepcopy(final)

    # Ingestion

    def ingest(self, session_id: str, sample) -> IngestResult:
        with self._writing(session_id) as live:
            session = live.session
            if session.status != SessionStatus.ACTIVE:
                return IngestResult(False, StepOutcome.REJECTED.value, reason=f"session is {session.status.value}")

            try:
                if isinstance(sample, dict):
                    sample = RawSample.from_dict(sample)
                if live.resumed_at is not None and sample.timestamp <= live.resumed_at:
                    raise InvalidSample(f"Sample at {sample.timestamp.isoformat()} predates the last resume")
                step = live.compressor.add(sample)
            except InvalidSample as e:
                logger.debug(f"[INGEST] Rejected sample for {session_id}: {e.message}")
                return IngestResult(False, StepOutcome.REJECTED.value, error=e)

            if step.outcome == StepOutcome.REJECTED:
                return IngestResult(False, step.outcome.value, reason=step.reason)

            with live.state_lock:
                live.segmenter.observe(sample)
                for point in step.committed:
                    self._commit_point(live, point)
                self._collect_weather(live)
                self._request_weather(live, sample)
                self._refresh_aggregates(live, until=sample.timestamp)

            if len(live.unflushed_points) >= self.config.flush_every_points:
                self._flush(live, sample.timestamp, raise_on_failure=False)

            return IngestResult(True, step.outcome.value, committed_points=len(step.committed))

    def ingest_batch(self, session_id: str, samples) -> List[IngestResult]:
        return [self.ingest(session_id, sample) for sample in samples]

    def add_weather(self, session_id: str, snapshot: WeatherConditions):
        with self._writing(session_id) as live:
            self._require_status(live.session, SessionStatus.ACTIVE, 'add weather to')
            with live.state_lock:
                self._attach_weather(live, snapshot)

    def override_terrain(self, session_id: str, terrain_type) -> TerrainType:
        with self._writing(session_id) as live:
            self._require_status(live.session, SessionStatus.ACTIVE, 'override terrain on')
            with live.state_lock:
                terrain = live.segmenter.override(terrain_type, at=self.clock())
                live.dirty = True
            return terrain

    def clear_terrain_override(self, session_id: str) -> bool:
        """Hand the terrain back to automatic classification. Returns False when no override was active."""
        with self._writing(session_id) as live:
            self._require_status(live.session, SessionStatus.ACTIVE, 'clear the terrain override on')
            with live.state_lock:
                cleared = live.segmenter.clear_override(at=self.clock())
                live.dirty = live.dirty or cleared
            return cleared

    def checkpoint(self, session_id: str) -> bool:
        with self._writing(session_id) as live:
            return self._flush(live, self.clock(), raise_on_failure=True)

    # Reads

    def snapshot(self, session_id: str, include_children: bool = True) -> RuckSession:
        """Immutable copy of the current state, live or stored."""
        live = self._live.get(session_id)
        if live is None:
            return self.repository.get(session_id, include_children=include_children)
        with live.state_lock:
            session = live.session
            if not include_children:
                return RuckSession.from_dict(session.summary_dict())
            snap = copy.deepcopy(session)
            if snap.status.is_in_progress:
                now = self.clock()
                snap.terrain_segments = live.segmenter.snapshot(now, snap.location_points)
                snap.weather_snapshots = live.overlay.snapshots
        return snap

    def calorie_breakdown(self, session_id: str) -> dict:
        """
        Calorie total with its confidence interval and cumulative profile.

        For an in-progress session this is the running total over the settled
        part of the track; a completed session is recomputed from its stored
        points, segments and weather.
        """
        live = self._live.get(session_id)
        if live is not None:
            with live.state_lock:
                breakdown = live.integrator.breakdown()
                breakdown['settled_until'] = to_iso(live.integrator.last_timestamp)
                breakdown['status'] = live.session.status.value
            return breakdown

        session = self.repository.get(session_id, include_children=True)
        estimator = EnergyEstimator(session.load_weight, session.body_weight, self.config)
        breakdown = recompute_calories(
            estimator, session.location_points, session.terrain_segments, session.weather_snapshots,
            session.pause_intervals, TerrainType.parse(self.config.default_terrain),
        ).breakdown()
        breakdown['settled_until'] = to_iso(session.end_date)
        breakdown['status'] = session.status.value
        return breakdown

    def query_history(self, after: Optional[datetime] = None, min_distance: float = 0.0,
                      min_weight: float = 0.0) -> List[RuckSession]:
        return self.repository.fetch_sessions(after=after, min_distance=min_distance, min_weight=min_weight)

    def active_session_id(self) -> Optional[str]:
        return next(iter(self._live), None)

    def close(self):
        """Stop the weather worker pool if this service created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=False)
            logger.info("[SESSION] Weather workers shut down")

    # Recovery

    def recover(self, session_id: str) -> SessionHandle:
        """
        Rebuild an in-progress session from its last durable checkpoint.
        The recovered session is paused; the gap since the last point is excluded.
        """
        with self._registry_lock:
            if session_id in self._live:
                return SessionHandle(self, session_id)
            if self._live:
                raise ActiveSessionExists(f"Session {next(iter(self._live))} is still in progress")

            session = self.repository.get(session_id, include_children=True)
            if session.is_completed:
                raise SessionCompleted(f"Session {session_id} is already completed")
            if session.status == SessionStatus.NOT_STARTED:
                raise SessionStateError(f"Session {session_id} was never started")

            if session.current_pause is None:
                last_seen = session.location_points[-1].timestamp if session.location_points else session.start_date
                session.pause_intervals.append(PauseInterval(paused_at=last_seen))
            session.status = SessionStatus.PAUSED
            session.terrain_segments = reclassify(
                session.terrain_segments, session.location_points, TerrainClassifier(self.config.default_terrain),
            )

            live = self._build_live(session, restore=True)
            self._live[session_id] = live

        logger.info(f"[SESSION] Recovered {session_id} from {len(session.location_points)} durable points")
        return SessionHandle(self, session_id)

    # Internals

    def _build_live(self, session: RuckSession, restore: bool = False) -> _LiveSession:
        estimator = EnergyEstimator(session.load_weight, session.body_weight, self.config)
        compressor = TrackCompressor(self.config)
        segmenter = TerrainSegmenter(session.start_date, self.config)
        overlay = WeatherOverlay(session.weather_snapshots)
        integrator = CalorieIntegrator(estimator, SegmentConditions((), overlay, self.config.default_terrain).at)
        live = _LiveSession(session, compressor, segmenter, overlay, estimator, integrator)

        if restore:
            compressor.restore(session.location_points, session.pause_intervals)
            segmenter.restore(session.terrain_segments, session.location_points[-1] if session.location_points else None)
            previous = None
            for point in session.location_points:
                gap = previous is not None and is_pause_gap(previous, point, session.pause_intervals)
                live.unsettled_points.append((point, gap))
                previous = point
            self._refresh_aggregates(live, until=session.current_pause.paused_at)
            live.resumed_at = session.current_pause.paused_at
        return live

    def _get_live(self, session_id: str) -> _LiveSession:
        live = self._live.get(session_id)
        if live is None:
            stored = self.repository.get(session_id, include_children=False)
            if stored.is_completed:
                raise SessionCompleted(f"Session {session_id} is completed")
            raise SessionNotFound(f"Session {session_id} is not loaded; recover it first")
        return live

    @contextmanager
    def _writing(self, session_id: str):
        live = self._get_live(session_id)
        if not live.write_lock.acquire(blocking=False):
            raise ConcurrentWriteError(f"Session {session_id} is being written by another caller")
        try:
            yield live
        finally:
            live.write_lock.release()

    @staticmethod
    def _require_status(session: RuckSession, status: SessionStatus, action: str):
        if session.status != status:
            raise SessionStateError(f"Cannot {action} session {session.id} in state {session.status.value}")

    def _commit_point(self, live: _LiveSession, point: LocationPoint):
        session = live.session
        previous = session.location_points[-1] if session.location_points else None
        gap = previous is not None and is_pause_gap(previous, point, session.pause_intervals)
        live.unsettled_points.append((point, gap))
        session.location_points.append(point)
        live.unflushed_points.append(point)
        live.dirty = True

    def _settle_calories(self, live: _LiveSession):
        """
        Integrate committed points up to the segmenter's settled horizon.

        Points past the horizon wait until their terrain can no longer change,
        so the running total only ever grows and never counts an interval at a
        rate the final segments would not give it.
        """
        if not live.unsettled_points:
            return
        horizon, segments = live.segmenter.settled()
        live.integrator.conditions_at = SegmentConditions(segments, live.overlay, self.config.default_terrain).at
        while live.unsettled_points:
            last = live.integrator.last_timestamp
            if last is not None and last >= horizon:
                break
            point, segment_break = live.unsettled_points.popleft()
            live.integrator.add(point, segment_break=segment_break)

    def _refresh_aggregates(self, live: _LiveSession, until: datetime):
        self._settle_calories(live)
        session = live.session
        session.total_distance = live.compressor.total_distance
        session.elevation_gain = live.compressor.track.elevation_gain
        session.elevation_loss = live.compressor.track.elevation_loss
        session.total_calories = live.integrator.total_calories
        session.total_duration = session.active_duration(until=max(until, session.start_date))
        session.average_pace = calculate_pace(session.total_distance, session.total_duration)

    def _attach_weather(self, live: _LiveSession, snapshot: WeatherConditions):
        live.overlay.add(snapshot)
        live.session.weather_snapshots = live.overlay.snapshots
        live.unflushed_weather.append(snapshot)
        live.dirty = True
        for alert in snapshot.alerts():
            logger.warning(f"[WEATHER][ALERT] {live.session.id}: {alert.title} - {alert.message}")

    def _request_weather(self, live: _LiveSession, sample: RawSample):
        if self.weather_provider is None:
            return
        if live.last_weather_request is not None:
            elapsed = (sample.timestamp - live.last_weather_request).total_seconds()
            if elapsed < self.config.weather_refresh_interval_s:
                return
        live.last_weather_request = sample.timestamp
        live.weather_futures.append(
            self._executor.submit(self.weather_provider.fetch, sample.latitude, sample.longitude, sample.timestamp)
        )

    def _collect_weather(self, live: _LiveSession, wait: bool = False):
        if not live.weather_futures:
            return
        if wait:
            wait_futures(live.weather_futures, timeout=self.config.weather_timeout_s)
        pending = []
        for future in live.weather_futures:
            if not wait and not future.done():
                pending.append(future)
                continue
            status = resolve_weather(future, timeout=0)
            if isinstance(status, WeatherKnown):
                self._attach_weather(live, status.snapshot)
            else:
                logger.debug(f"[WEATHER] No conditions for {live.session.id}: {status.reason}")
        live.weather_futures = pending

    def _flush(self, live: _LiveSession, now: datetime, raise_on_failure: bool) -> bool:
        if not live.dirty:
            return True
        with live.state_lock:
            session = copy.deepcopy(live.session)
            points = list(live.unflushed_points)
            weather = list(live.unflushed_weather)
            segments = live.segmenter.snapshot(now, session.location_points)

        try:
            self._with_retry(lambda: self.repository.update(session, points, segments, weather),
                             f"checkpoint {session.id}")
        except StorageError:
            if raise_on_failure:
                raise
            logger.error(f"[FLUSH] Keeping {len(points)} points buffered for {session.id}; will retry at next boundary")
            return False

        with live.state_lock:
            del live.unflushed_points[:len(points)]
            del live.unflushed_weather[:len(weather)]
            live.dirty = bool(live.unflushed_points or live.unflushed_weather)
        return True

    def _with_retry(self, operation, description: str):
        attempts = max(1, self.config.flush_retries)
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except StorageError as e:
                if attempt == attempts:
                    logger.error(f"[FLUSH] {description} failed after {attempts} attempts: {e.message}")
                    raise
                delay = self.config.flush_retry_delay_s * (2 ** (attempt - 1))
                logger.warning(f"[FLUSH] {description} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s")
                time.sleep(delay)
