import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from RuckCore.config import RuckCoreConfig
from RuckCore.errors import (
    ActiveSessionExists, ConcurrentWriteError, InvalidLoadWeight, InvalidSample, InvalidSessionData, SessionCompleted,
    SessionNotFound, SessionStateError, StorageError,
)
from RuckCore.models import SessionStatus, TerrainType, WeatherConditions
from RuckCore.services.energy_estimator import EnergyEstimator, recompute_calories
from RuckCore.services.session_repository import SessionRepository
from RuckCore.services.session_service import SessionService

from conftest import T0, BlockingStore, FakeClock, FlakyStore, feed, make_samples, north_of


def _service(store, clock, **overrides):
    config = RuckCoreConfig(flush_retry_delay_s=0.0, weather_timeout_s=1.0, **overrides)
    return SessionService(SessionRepository(store), config, clock=clock)


def _start(service, clock, load=35.0, body=70.0):
    clock.set(T0)
    return service.start_session(load, body).session_id


def test_start_creates_active_session(service, clock, repository):
    handle = service.start_session(20.0)

    stored = repository.get(handle.session_id)
    assert stored.status == SessionStatus.ACTIVE
    assert stored.start_date == T0
    assert stored.body_weight == 70.0
    assert service.active_session_id() == handle.session_id


def test_only_one_session_in_progress(service, clock):
    sid = _start(service, clock)

    with pytest.raises(ActiveSessionExists):
        service.start_session(20.0)

    service.stop(sid)
    assert service.start_session(20.0).session_id != sid


def test_invalid_load_is_rejected_before_anything_is_stored(service, repository):
    with pytest.raises(InvalidLoadWeight):
        service.start_session(0)

    assert repository.list_in_progress() == []
    assert service.active_session_id() is None


def test_full_lifecycle_excludes_paused_time(service, clock):
    sid = _start(service, clock)
    first_leg = make_samples(120)
    feed(service, sid, clock, first_leg)

    paused = service.pause(sid)
    clock.set(T0 + timedelta(seconds=420))
    service.resume(sid)
    second_leg = make_samples(120, start=T0 + timedelta(seconds=421), lat=north_of(first_leg, 50))
    feed(service, sid, clock, second_leg)
    final = service.stop(sid, rpe=6, notes='hills')

    expected_calories = EnergyEstimator(35.0, 70.0).rate_kcal_per_min(1.5, 0) * 238 / 60
    assert paused.status == SessionStatus.PAUSED
    assert final.status == SessionStatus.COMPLETED
    assert final.end_date == T0 + timedelta(seconds=540)
    assert final.total_duration == pytest.approx(239)
    assert final.total_distance == pytest.approx(357, rel=0.01)
    assert final.total_calories == pytest.approx(expected_calories, rel=1e-3)
    assert final.average_pace == pytest.approx((239 / 60) / 0.357, rel=0.01)
    assert final.rpe == 6
    assert final.notes == 'hills'
    assert len(final.pause_intervals) == 1
    assert final.pause_intervals[0].resumed_at == T0 + timedelta(seconds=420)
    assert final.terrain_segments[0].start_time == T0
    assert final.terrain_segments[-1].end_time == final.end_date
    assert len(final.location_points) < 30


def test_stop_while_paused_closes_the_pause(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(60))
    service.pause(sid)

    clock.set(T0 + timedelta(seconds=300))
    final = service.stop(sid)

    assert final.end_date == T0 + timedelta(seconds=300)
    assert final.pause_intervals[-1].resumed_at == final.end_date
    assert final.total_duration == pytest.approx(59)


def test_stop_without_samples(service, clock):
    sid = _start(service, clock)
    clock.set(T0 + timedelta(seconds=90))

    final = service.stop(sid)

    assert final.total_distance == 0
    assert final.total_calories == 0
    assert final.total_duration == pytest.approx(90)
    assert final.average_pace == 0


def test_lifecycle_violations(service, clock):
    sid = _start(service, clock)

    with pytest.raises(SessionStateError):
        service.resume(sid)
    service.pause(sid)
    with pytest.raises(SessionStateError):
        service.pause(sid)
    with pytest.raises(SessionStateError):
        service.add_weather(sid, WeatherConditions(timestamp=T0))
    with pytest.raises(InvalidSessionData):
        service.stop(sid, rpe=11)


def test_ingest_rejections_are_results(service, clock):
    sid = _start(service, clock)
    samples = make_samples(5)
    feed(service, sid, clock, samples)

    out_of_order = service.ingest(sid, samples[1])
    malformed = service.ingest(sid, {'timestamp': 'yesterday', 'latitude': 40.0, 'longitude': -105.0})
    service.pause(sid)
    while_paused = service.ingest(sid, make_samples(1, start=T0 + timedelta(seconds=30))[0])

    assert not out_of_order.accepted
    assert isinstance(out_of_order.error, InvalidSample)
    assert not malformed.accepted
    assert not while_paused.accepted
    assert while_paused.reason == 'session is paused'


def test_samples_before_resume_are_rejected(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(10))
    clock.set(T0 + timedelta(seconds=20))
    service.pause(sid)
    clock.set(T0 + timedelta(seconds=60))
    service.resume(sid)

    stale = service.ingest(sid, make_samples(1, start=T0 + timedelta(seconds=40))[0])
    fresh = service.ingest(sid, make_samples(1, start=T0 + timedelta(seconds=61))[0])

    assert not stale.accepted
    assert fresh.accepted
    assert fresh.committed_points == 1


def test_ingest_accepts_dicts(service, clock):
    sid = _start(service, clock)

    result = service.ingest(sid, {
        'timestamp': '2026-10-14T12:00:00Z', 'latitude': 40.0, 'longitude': -105.0,
        'horizontal_accuracy': 4.0, 'speed': 1.2,
    })

    assert result.accepted
    assert result.to_dict()['outcome'] == 'committed'


def test_snapshot_is_isolated_copy(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(40))

    snap = service.snapshot(sid)
    snap.location_points.clear()
    snap.total_distance = -1

    again = service.snapshot(sid)
    assert len(again.location_points) == 2
    assert again.total_distance == pytest.approx(45, rel=0.01)
    assert again.terrain_segments[0].end_time == T0 + timedelta(seconds=39)


def test_concurrent_write_is_rejected_not_queued(clock):
    store = BlockingStore()
    service = _service(store, clock)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(10))
    store.blocking = True

    pauser = threading.Thread(target=service.pause, args=(sid,))
    pauser.start()
    try:
        assert store.entered.wait(5)
        with pytest.raises(ConcurrentWriteError):
            service.ingest(sid, make_samples(1, start=T0 + timedelta(seconds=20))[0])
        assert service.snapshot(sid).status == SessionStatus.PAUSED
    finally:
        store.release.set()
        pauser.join(5)

    assert service.snapshot(sid).status == SessionStatus.PAUSED


def test_flush_retries_transient_storage_errors(clock):
    store = FlakyStore()
    service = _service(store, clock, flush_retries=3)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(40))
    store.failures = 2
    calls_before = store.write_calls

    assert service.checkpoint(sid)

    assert store.write_calls - calls_before == 3
    assert len(service.repository.get(sid).location_points) == 2


def test_failed_pause_flush_keeps_points_buffered(clock):
    store = FlakyStore()
    service = _service(store, clock, flush_retries=2)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(40))
    store.failures = 2

    paused = service.pause(sid)
    assert paused.status == SessionStatus.PAUSED
    assert service.repository.get(sid).location_points == []

    clock.set(T0 + timedelta(seconds=60))
    final = service.stop(sid)

    stored = service.repository.get(sid)
    assert stored.status == SessionStatus.COMPLETED
    assert len(stored.location_points) == len(final.location_points) == 3


def test_checkpoint_raises_when_storage_stays_down(clock):
    store = FlakyStore()
    service = _service(store, clock, flush_retries=2)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(5))
    store.failures = 5

    with pytest.raises(StorageError):
        service.checkpoint(sid)


def test_failed_stop_leaves_session_in_progress(clock):
    store = FlakyStore()
    service = _service(store, clock, flush_retries=2)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(40))
    store.failures = 2

    with pytest.raises(StorageError):
        service.stop(sid)

    assert service.active_session_id() == sid
    assert service.snapshot(sid).status == SessionStatus.ACTIVE
    final = service.stop(sid)
    assert final.status == SessionStatus.COMPLETED


def test_periodic_flush_during_ingest(clock):
    store = FlakyStore()
    service = _service(store, clock, flush_every_points=2, checkpoint_every_samples=5)
    sid = _start(service, clock)

    feed(service, sid, clock, make_samples(30))

    assert len(service.repository.get(sid).location_points) >= 4


def test_completed_session_is_immutable(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(20))
    service.stop(sid)

    with pytest.raises(SessionCompleted):
        service.ingest(sid, make_samples(1, start=T0 + timedelta(minutes=5))[0])
    with pytest.raises(SessionCompleted):
        service.pause(sid)
    with pytest.raises(SessionCompleted):
        service.recover(sid)
    assert service.snapshot(sid).status == SessionStatus.COMPLETED


def test_unknown_session(service):
    with pytest.raises(SessionNotFound):
        service.pause('missing')


def test_manual_terrain_override_survives_stop(service, clock):
    sid = _start(service, clock)
    samples = make_samples(120, terrain_hint='trail', terrain_confidence=0.9)
    feed(service, sid, clock, samples[:60])
    clock.set(T0 + timedelta(seconds=60))
    assert service.override_terrain(sid, 'sand') == TerrainType.SAND
    feed(service, sid, clock, samples[60:])

    final = service.stop(sid)

    assert [s.terrain_type for s in final.terrain_segments] == [TerrainType.TRAIL, TerrainType.SAND]
    assert final.terrain_segments[1].is_manually_set


def test_added_weather_raises_calories(service, clock):
    sid = _start(service, clock)
    service.add_weather(sid, WeatherConditions(timestamp=T0, temperature=38))
    feed(service, sid, clock, make_samples(61))

    final = service.stop(sid)

    neutral = EnergyEstimator(35.0, 70.0).calories_for(60, 1.5)
    assert final.total_calories == pytest.approx(neutral * 1.15, rel=1e-3)
    assert len(final.weather_snapshots) == 1


class _StubWeatherProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, latitude, longitude, at):
        with self._lock:
            self.calls.append(at)
        if self.fail:
            raise ConnectionError('weather service down')
        return WeatherConditions(timestamp=at, temperature=20)


def test_background_weather_is_collected(store, clock):
    provider = _StubWeatherProvider()
    config = RuckCoreConfig(flush_retry_delay_s=0.0, weather_refresh_interval_s=60)
    service = SessionService(SessionRepository(store), config, weather_provider=provider, clock=clock)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(130))

    final = service.stop(sid)

    assert sorted(provider.calls) == [T0, T0 + timedelta(seconds=60), T0 + timedelta(seconds=120)]
    assert [w.timestamp for w in final.weather_snapshots] == sorted(provider.calls)


def test_weather_failure_degrades_to_neutral(store, clock):
    provider = _StubWeatherProvider(fail=True)
    config = RuckCoreConfig(flush_retry_delay_s=0.0, weather_refresh_interval_s=60)
    service = SessionService(SessionRepository(store), config, weather_provider=provider, clock=clock)
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(61))

    final = service.stop(sid)

    assert final.weather_snapshots == []
    assert final.total_calories == pytest.approx(EnergyEstimator(35.0, 70.0).calories_for(60, 1.5), rel=1e-3)


def test_recover_after_crash(store, clock):
    crashed = _service(store, clock)
    sid = _start(crashed, clock)
    feed(crashed, sid, clock, make_samples(60))
    crashed.checkpoint(sid)

    restarted = _service(store, FakeClock(T0 + timedelta(seconds=100)))
    with pytest.raises(ActiveSessionExists):
        restarted.start_session(20.0)
    handle = restarted.recover(sid)

    recovered = handle.snapshot()
    assert recovered.status == SessionStatus.PAUSED
    assert recovered.pause_intervals[-1].paused_at == T0 + timedelta(seconds=30)
    assert recovered.total_distance == pytest.approx(45, rel=0.01)
    assert restarted.recover(sid).session_id == sid

    handle.resume()
    more = make_samples(30, start=T0 + timedelta(seconds=101), lat=north_of(make_samples(60), 20))
    feed(restarted, sid, restarted.clock, more)
    final = handle.stop()

    assert final.status == SessionStatus.COMPLETED
    assert final.total_distance == pytest.approx(45 + 29 * 1.5, rel=0.01)
    assert final.total_duration == pytest.approx(60)


def test_query_history_returns_completed_sessions(service, clock):
    first = _start(service, clock)
    feed(service, first, clock, make_samples(40))
    service.stop(first)

    clock.set(T0 + timedelta(hours=2))
    second = service.start_session(10.0).session_id

    history = service.query_history()
    assert [s.id for s in history] == [first]
    assert service.query_history(min_weight=40) == []
    assert service.active_session_id() == second


def test_running_calories_never_decrease_or_pass_the_final_total(service, clock):
    sid = _start(service, clock)
    sand = make_samples(120, terrain_hint='sand', terrain_confidence=0.9)
    paved = make_samples(100, start=T0 + timedelta(seconds=120), lat=north_of(sand, 1.5),
                         terrain_hint='paved_road', terrain_confidence=0.02)

    totals = []
    for sample in sand + paved:
        clock.set(sample.timestamp)
        service.ingest(sid, sample)
        totals.append(service.snapshot(sid, include_children=False).total_calories)
    final = service.stop(sid)

    assert [s.terrain_type for s in final.terrain_segments] == [TerrainType.SAND, TerrainType.PAVED_ROAD]
    assert totals[-1] > 0
    assert all(a <= b for a, b in zip(totals, totals[1:]))
    assert max(totals) <= final.total_calories + 1e-9


def test_stored_session_recomputes_to_its_total(service, clock, repository):
    sid = _start(service, clock)
    service.add_weather(sid, WeatherConditions(timestamp=T0, temperature=38))
    first_leg = make_samples(90, terrain_hint='trail', terrain_confidence=0.9)
    feed(service, sid, clock, first_leg)
    service.pause(sid)
    clock.set(T0 + timedelta(seconds=300))
    service.resume(sid)
    second_leg = make_samples(90, start=T0 + timedelta(seconds=301), lat=north_of(first_leg, 20),
                              climb_per_sample=0.1, terrain_hint='gravel', terrain_confidence=0.9)
    feed(service, sid, clock, second_leg)
    final = service.stop(sid)

    stored = repository.get(sid)
    replayed = recompute_calories(
        EnergyEstimator(stored.load_weight, stored.body_weight), stored.location_points,
        stored.terrain_segments, stored.weather_snapshots, stored.pause_intervals,
    )

    assert stored.total_calories == final.total_calories
    assert replayed.total_calories == pytest.approx(final.total_calories)
    assert service.calorie_breakdown(sid)['total_calories'] == pytest.approx(final.total_calories)


def test_clearing_override_resumes_automatic_terrain(service, clock):
    sid = _start(service, clock)
    trail = make_samples(60, terrain_hint='trail', terrain_confidence=0.9)
    mud = make_samples(40, start=T0 + timedelta(seconds=60), lat=north_of(trail, 1.5),
                       terrain_hint='trail', terrain_confidence=0.9)
    gravel = make_samples(60, start=T0 + timedelta(seconds=100), lat=north_of(mud, 1.5),
                          terrain_hint='gravel', terrain_confidence=0.9)
    feed(service, sid, clock, trail)
    service.override_terrain(sid, 'mud')
    feed(service, sid, clock, mud)

    assert service.clear_terrain_override(sid)
    assert not service.clear_terrain_override(sid)
    feed(service, sid, clock, gravel)
    final = service.stop(sid)

    assert [s.terrain_type for s in final.terrain_segments] == [TerrainType.TRAIL, TerrainType.MUD, TerrainType.GRAVEL]
    assert [s.is_manually_set for s in final.terrain_segments] == [False, True, False]


def test_clear_override_requires_active_session(service, clock):
    sid = _start(service, clock)
    service.pause(sid)

    with pytest.raises(SessionStateError):
        service.clear_terrain_override(sid)


def test_summary_snapshot_skips_points(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(60))

    summary = service.snapshot(sid, include_children=False)
    full = service.snapshot(sid)

    assert summary.location_points == []
    assert not summary.children_loaded
    assert summary.total_distance == full.total_distance
    assert full.location_points


def test_live_calorie_breakdown_matches_running_total(service, clock):
    sid = _start(service, clock)
    feed(service, sid, clock, make_samples(90))

    breakdown = service.calorie_breakdown(sid)

    assert breakdown['status'] == 'active'
    assert breakdown['total_calories'] == service.snapshot(sid).total_calories
    assert breakdown['confidence_interval']['high'] >= breakdown['total_calories']
    assert breakdown['settled_until'] is not None


def test_close_shuts_down_owned_executor(service):
    service.close()

    with pytest.raises(RuntimeError):
        service._executor.submit(lambda: None)


def test_close_leaves_injected_executor_running(repository, config, clock):
    executor = ThreadPoolExecutor(max_workers=1)
    service = SessionService(repository, config, clock=clock, executor=executor)

    service.close()

    assert executor.submit(lambda: 42).result(timeout=1) == 42
    executor.shutdown()
