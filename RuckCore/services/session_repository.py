"""
Session repository: lifecycle-aware persistence and history queries on top of a SessionStore.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..errors import SessionNotFound, SessionCompleted, InvalidQuery, InvalidSessionData
from ..models import RuckSession, SessionStatus, LocationPoint, TerrainSegment, WeatherConditions
from ..utils.dates import ensure_utc
from .redis_cache_service import cache_delete_pattern
from .session_store import SessionStore

logger = logging.getLogger(__name__)

STATS_CACHE_PATTERN = 'ruck_stats:*'


class SessionRepository:
    def __init__(self, store: SessionStore):
        self.store = store

    def create(self, session: RuckSession) -> RuckSession:
        if self.store.load(session.id, include_children=False) is not None:
            raise InvalidSessionData(f"Session {session.id} already exists")
        if session.is_completed:
            raise InvalidSessionData("A session cannot be created in the completed state")
        self.store.write_batch(session, session.location_points, session.terrain_segments, session.weather_snapshots)
        logger.info(f"[REPO] Created session {session.id} (load {session.load_weight}kg)")
        return session

    def get(self, session_id: str, include_children: bool = True) -> RuckSession:
        session = self.store.load(session_id, include_children=include_children)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    def update(self, session: RuckSession, new_points: Sequence[LocationPoint] = (),
               segments: Optional[Sequence[TerrainSegment]] = None,
               new_weather: Sequence[WeatherConditions] = ()):
        """Checkpoint an in-progress session. Completed sessions are immutable."""
        stored = self.get(session.id, include_children=False)
        if stored.is_completed:
            raise SessionCompleted(f"Session {session.id} is completed and cannot be modified")
        if session.is_completed:
            raise InvalidSessionData("Use finalize() to complete a session")
        self.store.write_batch(session, new_points, segments, new_weather)
        logger.debug(f"[REPO] Checkpointed session {session.id}: +{len(new_points)} points, +{len(new_weather)} weather")

    def finalize(self, session: RuckSession, new_points: Sequence[LocationPoint] = (),
                 new_weather: Sequence[WeatherConditions] = ()) -> RuckSession:
        stored = self.get(session.id, include_children=False)
        if stored.is_completed:
            raise SessionCompleted(f"Session {session.id} is already completed")
        if not session.is_completed or session.end_date is None:
            raise InvalidSessionData("Finalized sessions need status completed and an end_date")
        self.store.write_batch(session, new_points, session.terrain_segments, new_weather)
        cache_delete_pattern(STATS_CACHE_PATTERN)
        logger.info(
            f"[REPO] Finalized session {session.id}: {session.total_distance:.0f}m, "
            f"{session.total_calories:.0f}kcal, {len(session.terrain_segments)} segments"
        )
        return session

    def delete(self, session_id: str):
        if not self.store.delete(session_id):
            raise SessionNotFound(f"Session {session_id} not found")
        cache_delete_pattern(STATS_CACHE_PATTERN)
        logger.info(f"[REPO] Deleted session {session_id}")

    def fetch_sessions(self, after: Optional[datetime] = None, min_distance: float = 0.0,
                       min_weight: float = 0.0) -> List[RuckSession]:
        """
        Completed sessions with start_date > after, total_distance >= min_distance
        and load_weight >= min_weight, newest first. Summaries only.
        """
        if min_distance is None:
            min_distance = 0.0
        if min_weight is None:
            min_weight = 0.0
        if min_distance < 0:
            raise InvalidQuery(f"min_distance must be non-negative, got {min_distance}")
        if min_weight < 0:
            raise InvalidQuery(f"min_weight must be non-negative, got {min_weight}")

        sessions = self.store.list_summaries(
            status=SessionStatus.COMPLETED,
            started_after=ensure_utc(after) if after else None,
            min_distance=min_distance,
            min_load=min_weight,
        )
        sessions.sort(key=lambda s: s.start_date, reverse=True)
        return sessions

    def completed_between(self, start: Optional[datetime], end: Optional[datetime]) -> List[RuckSession]:
        sessions = self.store.list_summaries(status=SessionStatus.COMPLETED)
        return [
            s for s in sessions
            if (start is None or s.start_date >= start) and (end is None or s.start_date <= end)
        ]

    def list_in_progress(self) -> List[RuckSession]:
        active = self.store.list_summaries(status=SessionStatus.ACTIVE)
        paused = self.store.list_summaries(status=SessionStatus.PAUSED)
        return sorted(active + paused, key=lambda s: s.start_date)
