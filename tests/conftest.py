import math
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from RuckCore.config import RuckCoreConfig
from RuckCore.errors import StorageError
from RuckCore.models import RawSample
from RuckCore.services import redis_cache_service
from RuckCore.services.session_repository import SessionRepository
from RuckCore.services.session_service import SessionService
from RuckCore.services.session_store import InMemorySessionStore

T0 = datetime(2026, 10, 14, 12, 0, 0, tzinfo=timezone.utc)
LAT0 = 40.0
LON0 = -105.0
# Degrees of latitude per meter for a 6371 km sphere
DEG_PER_M = 1.0 / 111194.92664455873


@pytest.fixture(autouse=True)
def no_external_services(monkeypatch):
    """Keep Redis, Sentry and WeatherKit out of every test."""
    for name in ('REDIS_URL', 'REDIS_TLS_URL', 'SENTRY_DSN', 'APPLE_TEAM_ID', 'APPLE_SERVICE_ID',
                 'APPLE_KEY_ID', 'APPLE_PRIVATE_KEY', 'SUPABASE_URL', 'SUPABASE_KEY'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(redis_cache_service, '_cache_instance', None)


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def set(self, when):
        self.now = when

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


def make_samples(count, start=T0, interval=1.0, speed=1.5, lat=LAT0, lon=LON0,
                 heading='north', altitude=0.0, climb_per_sample=0.0, **extra):
    """Straight-line samples at constant speed; heading is 'north' or 'east'."""
    samples = []
    step_m = speed * interval
    lon_scale = 1.0 / math.cos(math.radians(lat))
    for i in range(count):
        if heading == 'north':
            sample_lat, sample_lon = lat + i * step_m * DEG_PER_M, lon
        else:
            sample_lat, sample_lon = lat, lon + i * step_m * DEG_PER_M * lon_scale
        samples.append(RawSample(
            timestamp=start + timedelta(seconds=i * interval),
            latitude=sample_lat,
            longitude=sample_lon,
            altitude=altitude + i * climb_per_sample,
            speed=speed,
            **extra,
        ))
    return samples


def north_of(samples, meters=0.0):
    """Latitude a given distance past the last sample."""
    return samples[-1].latitude + meters * DEG_PER_M


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return RuckCoreConfig(flush_retry_delay_s=0.0, weather_timeout_s=1.0)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def repository(store):
    return SessionRepository(store)


@pytest.fixture
def service(repository, config, clock):
    return SessionService(repository, config, clock=clock)


def feed(service, session_id, clock, samples):
    """Ingest samples in order, moving the clock with them."""
    results = []
    for sample in samples:
        clock.set(sample.timestamp)
        results.append(service.ingest(session_id, sample))
    return results


class FlakyStore(InMemorySessionStore):
    """Fails the next `failures` writes with StorageError."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures
        self.write_calls = 0

    def write_batch(self, session, new_points=(), segments=None, new_weather=()):
        self.write_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("simulated outage")
        super().write_batch(session, new_points, segments, new_weather)


class BlockingStore(InMemorySessionStore):
    """Blocks writes while `blocking` is set, until `release` fires."""

    def __init__(self):
        super().__init__()
        self.blocking = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def write_batch(self, session, new_points=(), segments=None, new_weather=()):
        if self.blocking:
            self.entered.set()
            self.release.wait(5)
        super().write_batch(session, new_points, segments, new_weather)


class FakeQuery:
    """Just enough of the postgrest query builder for SupabaseSessionStore."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.action = 'select'
        self.payload = None
        self.conflict_keys = ['id']
        self.filters = []
        self.order_by = None
        self.window = None

    def select(self, *_columns):
        self.action = 'select'
        return self

    def insert(self, rows):
        self.action = 'insert'
        self.payload = rows if isinstance(rows, list) else [rows]
        return self

    def upsert(self, rows, on_conflict='id'):
        self.action = 'upsert'
        self.payload = rows if isinstance(rows, list) else [rows]
        self.conflict_keys = on_conflict.split(',')
        return self

    def delete(self):
        self.action = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) > value)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def order(self, column):
        self.order_by = column
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.action))
        if (self.table, self.action) in self.db.fail_once:
            self.db.fail_once.discard((self.table, self.action))
            raise RuntimeError(f"simulated {self.action} failure on {self.table}")
        rows = self.db.setdefault(self.table, [])
        if self.action == 'insert':
            rows.extend(dict(r) for r in self.payload)
            return SimpleNamespace(data=list(self.payload))
        if self.action == 'upsert':
            for new in self.payload:
                key = tuple(new.get(k) for k in self.conflict_keys)
                for i, row in enumerate(rows):
                    if tuple(row.get(k) for k in self.conflict_keys) == key:
                        rows[i] = dict(new)
                        break
                else:
                    rows.append(dict(new))
            return SimpleNamespace(data=list(self.payload))
        if self.action == 'delete':
            removed = [r for r in rows if self._matches(r)]
            self.db[self.table] = [r for r in rows if not self._matches(r)]
            return SimpleNamespace(data=removed)
        result = [dict(r) for r in rows if self._matches(r)]
        if self.order_by:
            result.sort(key=lambda r: r.get(self.order_by))
        if self.window:
            start, end = self.window
            result = result[start:end + 1]
        return SimpleNamespace(data=result)


class FakeTables(dict):
    """Table rows by name, with a call log and one-shot failures keyed by (table, action)."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.fail_once = set()


class FakeSupabaseClient:
    def __init__(self):
        self.db = FakeTables()

    def table(self, name):
        return FakeQuery(self.db, name)
