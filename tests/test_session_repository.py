from dataclasses import replace
from datetime import timedelta

import pytest

from RuckCore.errors import InvalidQuery, InvalidSessionData, SessionCompleted, SessionNotFound, StorageError
from RuckCore.models import (
    LocationPoint, RuckSession, SessionStatus, TerrainSegment, TerrainType, WeatherConditions,
)
from RuckCore.services import session_repository
from RuckCore.services.session_repository import SessionRepository
from RuckCore.services.session_store import InMemorySessionStore, SupabaseSessionStore

from conftest import T0, FakeSupabaseClient, make_samples


@pytest.fixture(params=['memory', 'supabase'])
def repo(request):
    if request.param == 'memory':
        return SessionRepository(InMemorySessionStore())
    return SessionRepository(SupabaseSessionStore(client=FakeSupabaseClient()))


def _active(start=T0, load=20.0):
    return RuckSession(load_weight=load, start_date=start, status=SessionStatus.ACTIVE)


def _points(count=5, start=T0):
    return [LocationPoint.from_sample(s, is_key_point=True) for s in make_samples(count, start=start)]


def _complete(repo, start=T0, distance=1000.0, load=20.0, points=()):
    session = repo.create(_active(start, load))
    session.status = SessionStatus.COMPLETED
    session.end_date = start + timedelta(hours=1)
    session.total_distance = distance
    session.total_duration = 3600
    session.terrain_segments = [TerrainSegment(start, session.end_date, TerrainType.TRAIL)]
    return repo.finalize(session, new_points=list(points))


def test_create_and_get_round_trip(repo):
    created = repo.create(_active())

    loaded = repo.get(created.id)

    assert loaded.id == created.id
    assert loaded.status == SessionStatus.ACTIVE
    assert loaded.start_date == T0
    assert loaded.location_points == []


def test_create_rejects_duplicate_id(repo):
    session = repo.create(_active())

    with pytest.raises(InvalidSessionData):
        repo.create(session)


def test_get_missing_session(repo):
    with pytest.raises(SessionNotFound):
        repo.get('does-not-exist')


def test_update_appends_points_and_replaces_segments(repo):
    session = repo.create(_active())
    first, second = _points(3), _points(3, start=T0 + timedelta(seconds=10))

    repo.update(session, first, [TerrainSegment(T0, T0 + timedelta(seconds=5), TerrainType.GRAVEL)])
    repo.update(session, second, [TerrainSegment(T0, T0 + timedelta(seconds=15), TerrainType.SAND)],
                [WeatherConditions(timestamp=T0, temperature=12)])
    loaded = repo.get(session.id)

    assert [p.timestamp for p in loaded.location_points] == [p.timestamp for p in first + second]
    assert [s.terrain_type for s in loaded.terrain_segments] == [TerrainType.SAND]
    assert loaded.weather_snapshots[0].temperature == 12


def test_summary_load_skips_children(repo):
    session = repo.create(_active())
    repo.update(session, _points(4))

    summary = repo.get(session.id, include_children=False)

    assert not summary.children_loaded
    assert summary.location_points == []
    assert 'location_points' not in summary.to_dict()


def test_completed_session_is_immutable(repo):
    session = _complete(repo)

    with pytest.raises(SessionCompleted):
        repo.update(replace(session, status=SessionStatus.ACTIVE, end_date=None))
    with pytest.raises(SessionCompleted):
        repo.finalize(session)


def test_finalize_requires_completed_state(repo):
    session = repo.create(_active())

    with pytest.raises(InvalidSessionData):
        repo.finalize(session)


def test_finalize_clears_stats_cache(repo, monkeypatch):
    patterns = []
    monkeypatch.setattr(session_repository, 'cache_delete_pattern', patterns.append)

    _complete(repo)

    assert patterns == ['ruck_stats:*']


def test_fetch_sessions_filters_and_orders(repo):
    old = _complete(repo, start=T0 - timedelta(days=10), distance=5000, load=30)
    short = _complete(repo, start=T0 - timedelta(days=5), distance=800, load=30)
    light = _complete(repo, start=T0 - timedelta(days=3), distance=6000, load=10)
    recent = _complete(repo, start=T0 - timedelta(days=1), distance=7000, load=25)
    repo.create(_active(start=T0))

    everything = repo.fetch_sessions()
    filtered = repo.fetch_sessions(after=T0 - timedelta(days=7), min_distance=1000, min_weight=20)

    assert [s.id for s in everything] == [recent.id, light.id, short.id, old.id]
    assert [s.id for s in filtered] == [recent.id]
    assert all(not s.children_loaded for s in everything)


def test_fetch_sessions_after_is_exclusive(repo):
    session = _complete(repo, start=T0 - timedelta(days=2))

    assert repo.fetch_sessions(after=session.start_date) == []


@pytest.mark.parametrize('kwargs', [{'min_distance': -1}, {'min_weight': -0.5}])
def test_fetch_sessions_rejects_negative_filters(repo, kwargs):
    with pytest.raises(InvalidQuery):
        repo.fetch_sessions(**kwargs)


def test_list_in_progress_and_completed_between(repo):
    done = _complete(repo, start=T0 - timedelta(days=3))
    paused = _active(start=T0 - timedelta(hours=2))
    paused.status = SessionStatus.PAUSED
    repo.create(paused)
    active = repo.create(_active(start=T0))

    assert [s.id for s in repo.list_in_progress()] == [paused.id, active.id]
    assert [s.id for s in repo.completed_between(T0 - timedelta(days=4), T0)] == [done.id]
    assert repo.completed_between(T0 - timedelta(days=1), None) == []


def test_delete_removes_session_and_children(repo):
    session = _complete(repo, points=_points(3))

    repo.delete(session.id)

    with pytest.raises(SessionNotFound):
        repo.get(session.id)
    with pytest.raises(SessionNotFound):
        repo.delete(session.id)


def test_supabase_failures_surface_as_storage_error():
    class BrokenClient:
        def table(self, name):
            raise ConnectionError('connection refused')

    repo = SessionRepository(SupabaseSessionStore(client=BrokenClient()))

    with pytest.raises(StorageError):
        repo.get('any')
    with pytest.raises(StorageError):
        repo.fetch_sessions()


def test_supabase_retry_after_partial_write_keeps_points_unique():
    client = FakeSupabaseClient()
    repo = SessionRepository(SupabaseSessionStore(client=client))
    session = repo.create(_active())
    points = _points(4)
    client.db.fail_once.add(('ruck_session', 'upsert'))

    with pytest.raises(StorageError):
        repo.update(session, points)
    assert len(client.db['location_point']) == 4

    repo.update(session, points)
    loaded = repo.get(session.id)

    assert [p.timestamp for p in loaded.location_points] == [p.timestamp for p in points]
    assert len(client.db['location_point']) == 4


def test_supabase_children_are_read_page_by_page():
    client = FakeSupabaseClient()
    repo = SessionRepository(SupabaseSessionStore(client=client, page_size=2))
    session = repo.create(_active())
    points = _points(5)
    repo.update(session, points)

    loaded = repo.get(session.id)

    assert [p.timestamp for p in loaded.location_points] == [p.timestamp for p in points]
    point_reads = [call for call in client.db.calls if call == ('location_point', 'select')]
    assert len(point_reads) == 3


def test_supabase_parses_variable_precision_timestamps():
    client = FakeSupabaseClient()
    repo = SessionRepository(SupabaseSessionStore(client=client))
    session = repo.create(_active())
    client.db['ruck_session'][0]['start_date'] = '2026-10-14T12:00:00.12+00:00'

    loaded = repo.get(session.id, include_children=False)

    assert loaded.start_date == T0 + timedelta(milliseconds=120)


def test_supabase_corrupt_row_surfaces_as_storage_error():
    client = FakeSupabaseClient()
    repo = SessionRepository(SupabaseSessionStore(client=client))
    session = repo.create(_active())
    client.db['ruck_session'][0]['start_date'] = 'not a date'

    with pytest.raises(StorageError):
        repo.get(session.id)
    with pytest.raises(StorageError):
        repo.store.list_summaries()


def test_memory_store_rewrites_repeated_point_timestamps():
    repo = SessionRepository(InMemorySessionStore())
    session = repo.create(_active())
    points = _points(3)

    repo.update(session, points)
    repo.update(session, points[1:])

    assert len(repo.get(session.id).location_points) == 3
