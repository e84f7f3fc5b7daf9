"""
Storage port for sessions and its backends.

Layout: one `ruck_session` record per session plus child collections
(`location_point`, `terrain_segment`, `weather_conditions`) keyed by
`session_id`. Summaries can be loaded without touching the children.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..errors import StorageError
from ..models import RuckSession, LocationPoint, TerrainSegment, WeatherConditions, SessionStatus
from ..utils.dates import parse_datetime

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    @abstractmethod
    def write_batch(self, session: RuckSession, new_points: Sequence[LocationPoint] = (),
                    segments: Optional[Sequence[TerrainSegment]] = None,
                    new_weather: Sequence[WeatherConditions] = ()) -> None:
        """
        Persist the session record together with appended points/weather.
        `segments`, when given, replaces the stored segment list.
        """

    @abstractmethod
    def load(self, session_id: str, include_children: bool = True) -> Optional[RuckSession]:
        pass

    @abstractmethod
    def list_summaries(self, status: Optional[SessionStatus] = None, started_after: Optional[datetime] = None,
                       min_distance: float = 0.0, min_load: float = 0.0) -> List[RuckSession]:
        """Summary-only sessions matching every given predicate, unordered."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        pass


def _matches(row: dict, status, started_after, min_distance, min_load) -> bool:
    if status is not None and row['status'] != status.value:
        return False
    if started_after is not None and not parse_datetime(row['start_date']) > started_after:
        return False
    return row['total_distance'] >= min_distance and row['load_weight'] >= min_load


def _upsert_rows(existing: List[dict], rows: List[dict], key: str = 'timestamp') -> List[dict]:
    """Merge rows into existing, replacing any row with the same key; result is ordered by key."""
    by_key = {row[key]: row for row in existing}
    for row in rows:
        by_key[row[key]] = row
    return sorted(by_key.values(), key=lambda row: row[key])


class InMemorySessionStore(SessionStore):
    """Keeps serialized rows so every read is an isolated snapshot."""

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, dict] = {}
        self._points: Dict[str, List[dict]] = {}
        self._segments: Dict[str, List[dict]] = {}
        self._weather: Dict[str, List[dict]] = {}

    def write_batch(self, session, new_points=(), segments=None, new_weather=()):
        row = session.summary_dict()
        point_rows = [p.to_dict() for p in new_points]
        segment_rows = [s.to_dict() for s in segments] if segments is not None else None
        weather_rows = [w.to_dict() for w in new_weather]
        with self._lock:
            self._sessions[session.id] = row
            self._points[session.id] = _upsert_rows(self._points.get(session.id, []), point_rows)
            if segment_rows is not None:
                self._segments[session.id] = segment_rows
            self._weather[session.id] = _upsert_rows(self._weather.get(session.id, []), weather_rows)

    def load(self, session_id, include_children=True):
        with self._lock:
            row = self._sessions.get(session_id)
            if row is None:
                return None
            data = copy.deepcopy(row)
            if include_children:
                data['location_points'] = copy.deepcopy(self._points.get(session_id, []))
                data['terrain_segments'] = copy.deepcopy(self._segments.get(session_id, []))
                data['weather_snapshots'] = copy.deepcopy(self._weather.get(session_id, []))
        return RuckSession.from_dict(data)

    def list_summaries(self, status=None, started_after=None, min_distance=0.0, min_load=0.0):
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._sessions.values()
                    if _matches(r, status, started_after, min_distance, min_load)]
        return [RuckSession.from_dict(r) for r in rows]

    def delete(self, session_id):
        with self._lock:
            existed = self._sessions.pop(session_id, None) is not None
            self._points.pop(session_id, None)
            self._segments.pop(session_id, None)
            self._weather.pop(session_id, None)
        return existed


class SupabaseSessionStore(SessionStore):
    PAGE_SIZE = 1000

    def __init__(self, client=None, page_size: Optional[int] = None):
        self._client = client
        self.page_size = page_size or self.PAGE_SIZE

    @property
    def client(self):
        if self._client is None:
            from ..supabase_client import get_supabase_client
            self._client = get_supabase_client()
        return self._client

    def write_batch(self, session, new_points=(), segments=None, new_weather=()):
        sid = session.id
        try:
            # Children first so a visible summary never points at missing rows.
            # Child rows are keyed by (session_id, timestamp) so a retried batch overwrites itself.
            if new_points:
                rows = [{**p.to_dict(), 'session_id': sid} for p in new_points]
                self.client.table('location_point').upsert(rows, on_conflict='session_id,timestamp').execute()

            if segments is not None:
                rows = [{**s.to_dict(), 'session_id': sid, 'segment_index': i} for i, s in enumerate(segments)]
                if rows:
                    self.client.table('terrain_segment').upsert(rows, on_conflict='session_id,segment_index').execute()
                (
                    self.client.table('terrain_segment')
                    .delete()
                    .eq('session_id', sid)
                    .gte('segment_index', len(rows))
                    .execute()
                )

            if new_weather:
                rows = [{**w.to_dict(), 'session_id': sid} for w in new_weather]
                self.client.table('weather_conditions').upsert(rows, on_conflict='session_id,timestamp').execute()

            self.client.table('ruck_session').upsert(session.summary_dict()).execute()
        except Exception as e:
            logger.error(f"[STORE] Failed to write session {sid}: {e}")
            raise StorageError(f"Failed to write session {sid}", details=str(e)) from e

    def load(self, session_id, include_children=True):
        try:
            resp = self.client.table('ruck_session').select('*').eq('id', session_id).execute()
            if not resp.data:
                return None
            data = dict(resp.data[0])
            if include_children:
                data['location_points'] = self._children('location_point', session_id, 'timestamp')
                data['terrain_segments'] = self._children('terrain_segment', session_id, 'segment_index')
                data['weather_snapshots'] = self._children('weather_conditions', session_id, 'timestamp')
            return RuckSession.from_dict(data)
        except Exception as e:
            logger.error(f"[STORE] Failed to load session {session_id}: {e}")
            raise StorageError(f"Failed to load session {session_id}", details=str(e)) from e

    def _children(self, table, session_id, order_by):
        """All child rows of a session, read page by page past the PostgREST row cap."""
        rows = []
        offset = 0
        while True:
            resp = (
                self.client.table(table)
                .select('*')
                .eq('session_id', session_id)
                .order(order_by)
                .range(offset, offset + max(self.page_size - 1, 0))
                .execute()
            )
            page = resp.data or []
            rows.extend(page)
            if len(page) < self.page_size:
                return rows
            offset += self.page_size

    def list_summaries(self, status=None, started_after=None, min_distance=0.0, min_load=0.0):
        try:
            query = self.client.table('ruck_session').select('*')
            if status is not None:
                query = query.eq('status', status.value)
            if started_after is not None:
                query = query.gt('start_date', started_after.isoformat())
            if min_distance:
                query = query.gte('total_distance', min_distance)
            if min_load:
                query = query.gte('load_weight', min_load)
            resp = query.execute()
            return [RuckSession.from_dict(row) for row in resp.data or []]
        except Exception as e:
            logger.error(f"[STORE] Failed to list sessions: {e}")
            raise StorageError("Failed to list sessions", details=str(e)) from e

    def delete(self, session_id):
        try:
            for table in ('location_point', 'terrain_segment', 'weather_conditions'):
                self.client.table(table).delete().eq('session_id', session_id).execute()
            resp = self.client.table('ruck_session').delete().eq('id', session_id).execute()
        except Exception as e:
            logger.error(f"[STORE] Failed to delete session {session_id}: {e}")
            raise StorageError(f"Failed to delete session {session_id}", details=str(e)) from e
        return bool(resp.data)
