"""
Aggregate statistics over completed sessions.

Only completed sessions count. Summaries are cached in Redis under
`ruck_stats:*`; the repository invalidates that pattern whenever a session
is finalized or deleted.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import RuckCoreConfig
from ..errors import InvalidQuery
from ..models import (
    RuckSession, SummaryStats, TrendData, PeriodStats, PersonalRecord, PersonalRecords, AchievementProgress,
)
from ..utils.calculations import calculate_pace, KG_PER_LB, METERS_PER_MILE
from ..utils.dates import utcnow, ensure_utc, to_iso
from .redis_cache_service import cache_get, cache_set
from .session_repository import SessionRepository

logger = logging.getLogger(__name__)

TIME_RANGES = (
    'weekly', 'monthly', 'yearly', 'all_time',
    'last_week', 'last_month', 'last_3_months', 'last_6_months', 'last_year',
)
STREAK_MIN_RUCKS_PER_WEEK = 2
MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']
DAY_NAMES = ['Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun']


def get_week_range(date):
    """Calculates the start (Monday) and end (Sunday) of the week for a given date."""
    start_of_week = date - timedelta(days=date.weekday())
    end_of_week = start_of_week + timedelta(days=6)
    start_dt = datetime(start_of_week.year, start_of_week.month, start_of_week.day, tzinfo=timezone.utc)
    end_dt = datetime(end_of_week.year, end_of_week.month, end_of_week.day, 23, 59, 59, 999999, tzinfo=timezone.utc)
    return start_dt, end_dt


def get_month_range(date):
    """Calculates the start and end of the month for a given date."""
    start_of_month = datetime(date.year, date.month, 1, tzinfo=timezone.utc)
    if date.month == 12:
        end_of_month = datetime(date.year + 1, 1, 1, tzinfo=timezone.utc) - timedelta(microseconds=1)
    else:
        end_of_month = datetime(date.year, date.month + 1, 1, tzinfo=timezone.utc) - timedelta(microseconds=1)
    return start_of_month, end_of_month


def get_year_range(date):
    """Calculates the start and end of the year for a given date."""
    start_of_year = datetime(date.year, 1, 1, tzinfo=timezone.utc)
    end_of_year = datetime(date.year + 1, 1, 1, tzinfo=timezone.utc) - timedelta(microseconds=1)
    return start_of_year, end_of_year


def resolve_time_range(time_range: str, now: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
    """(start, end) for a named range; all_time is unbounded on both sides."""
    now = ensure_utc(now)
    if time_range == 'weekly':
        return get_week_range(now)
    if time_range == 'monthly':
        return get_month_range(now)
    if time_range == 'yearly':
        return get_year_range(now)
    if time_range == 'all_time':
        return None, None
    if time_range == 'last_week':
        return get_week_range(now - timedelta(days=7))
    if time_range == 'last_month':
        return get_month_range(get_month_range(now)[0] - timedelta(days=1))
    if time_range == 'last_3_months':
        return now - timedelta(days=90), now
    if time_range == 'last_6_months':
        return now - timedelta(days=182), now
    if time_range == 'last_year':
        return now - timedelta(days=365), now
    raise InvalidQuery(f"Unknown time range {time_range!r}", details={'allowed': list(TIME_RANGES)})


def previous_range(time_range: str, start: Optional[datetime], end: Optional[datetime]):
    """The comparable window immediately before (start, end), or (None, None) for all_time."""
    if start is None or end is None:
        return None, None
    if time_range in ('monthly', 'last_month'):
        return get_month_range(start - timedelta(days=1))
    if time_range == 'yearly':
        return get_year_range(start - timedelta(days=1))
    length = end - start
    return start - length - timedelta(microseconds=1), start - timedelta(microseconds=1)


def calculate_summary(sessions: Sequence[RuckSession]) -> SummaryStats:
    if not sessions:
        return SummaryStats()

    total_distance = sum(s.total_distance for s in sessions)
    total_duration = sum(s.total_duration for s in sessions)
    longest = max(sessions, key=lambda s: s.total_distance)
    paces = [s.average_pace for s in sessions if s.total_distance > 0 and s.average_pace > 0]

    return SummaryStats(
        total_distance=total_distance,
        total_calories=sum(s.total_calories for s in sessions),
        total_duration=total_duration,
        session_count=len(sessions),
        # Overall pace is total duration over total distance, not the mean of paces
        average_pace=calculate_pace(total_distance, total_duration),
        longest_session=longest.id,
        longest_distance=longest.total_distance,
        best_pace=min(paces) if paces else 0.0,
        total_elevation_gain=sum(s.elevation_gain for s in sessions),
    )


def calculate_trends(current: SummaryStats, previous: SummaryStats) -> List[TrendData]:
    return [
        TrendData('distance', current.total_distance, previous.total_distance),
        TrendData('calories', current.total_calories, previous.total_calories),
        TrendData('duration', current.total_duration, previous.total_duration),
        TrendData('session_count', current.session_count, previous.session_count),
        TrendData('average_pace', current.average_pace, previous.average_pace, lower_is_better=True),
    ]


def _empty_bucket(period: str, date: datetime) -> Dict:
    return {
        'period': period,
        'date': date.strftime('%Y-%m-%d'),
        'sessions_count': 0,
        'distance': 0.0,
        'duration_seconds': 0.0,
        'calories': 0.0,
    }


def _add_to_bucket(bucket: Dict, session: RuckSession):
    bucket['sessions_count'] += 1
    bucket['distance'] += session.total_distance
    bucket['duration_seconds'] += session.total_duration
    bucket['calories'] += session.total_calories


def get_daily_breakdown(sessions, start_date):
    """Seven buckets, Monday to Sunday, for a weekly view."""
    buckets = [_empty_bucket(DAY_NAMES[i], start_date + timedelta(days=i)) for i in range(7)]
    for session in sessions:
        index = (session.start_date - start_date).days
        if 0 <= index < 7:
            _add_to_bucket(buckets[index], session)
    return buckets


def get_weekly_breakdown(sessions, start_date, end_date):
    """Week buckets (W1, W2...) starting from the Monday on or before start_date."""
    first_monday = get_week_range(start_date)[0]
    buckets = []
    week_start = first_monday
    while week_start <= end_date:
        buckets.append(_empty_bucket(f'W{len(buckets) + 1}', week_start))
        week_start += timedelta(weeks=1)
    for session in sessions:
        index = (session.start_date - first_monday).days // 7
        if 0 <= index < len(buckets):
            _add_to_bucket(buckets[index], session)
    return buckets


def get_monthly_breakdown(sessions, start_date):
    """Twelve month buckets for a yearly view."""
    buckets = [
        _empty_bucket(MONTH_NAMES[i], datetime(start_date.year, i + 1, 1, tzinfo=timezone.utc)) for i in range(12)
    ]
    for session in sessions:
        if session.start_date.year == start_date.year:
            _add_to_bucket(buckets[session.start_date.month - 1], session)
    return buckets


def get_month_buckets(sessions):
    """One bucket per calendar month that has sessions, oldest first."""
    buckets = {}
    for session in sorted(sessions, key=lambda s: s.start_date):
        key = (session.start_date.year, session.start_date.month)
        if key not in buckets:
            month_start = datetime(key[0], key[1], 1, tzinfo=timezone.utc)
            buckets[key] = _empty_bucket(month_start.strftime('%b %Y'), month_start)
        _add_to_bucket(buckets[key], session)
    return list(buckets.values())


def calculate_breakdown(time_range, sessions, start, end):
    if time_range in ('weekly', 'last_week'):
        return get_daily_breakdown(sessions, start)
    if time_range in ('monthly', 'last_month'):
        return get_weekly_breakdown(sessions, start, end)
    if time_range == 'yearly':
        return get_monthly_breakdown(sessions, start)
    return get_month_buckets(sessions)


def training_streak(sessions: Sequence[RuckSession], now: datetime,
                    min_per_week: int = STREAK_MIN_RUCKS_PER_WEEK) -> int:
    """
    Consecutive weeks with at least `min_per_week` rucks, counting back from
    the current week. A current week that has not reached the minimum yet
    does not break the streak.
    """
    per_week = defaultdict(int)
    for session in sessions:
        per_week[get_week_range(session.start_date)[0]] += 1

    week = get_week_range(ensure_utc(now))[0]
    if per_week.get(week, 0) < min_per_week:
        week -= timedelta(weeks=1)

    streak = 0
    while per_week.get(week, 0) >= min_per_week:
        streak += 1
        week -= timedelta(weeks=1)
    return streak


def _record(sessions, key, lowest=False) -> Optional[PersonalRecord]:
    candidates = [s for s in sessions if key(s) is not None]
    if not candidates:
        return None
    best = min(candidates, key=key) if lowest else max(candidates, key=key)
    return PersonalRecord(value=key(best), session_id=best.id, date=best.start_date)


def calculate_personal_records(sessions: Sequence[RuckSession]) -> PersonalRecords:
    if not sessions:
        return PersonalRecords()
    return PersonalRecords(
        longest_distance=_record(sessions, lambda s: s.total_distance),
        fastest_pace=_record(
            sessions, lambda s: s.average_pace if s.total_distance > 0 and s.average_pace > 0 else None, lowest=True
        ),
        heaviest_load=_record(sessions, lambda s: s.load_weight),
        highest_calorie_burn=_record(sessions, lambda s: s.total_calories),
        longest_duration=_record(sessions, lambda s: s.total_duration),
        most_weight_moved=_record(sessions, lambda s: s.load_weight * s.total_distance / 1000.0),
    )


def calculate_achievements(sessions: Sequence[RuckSession]) -> List[AchievementProgress]:
    per_week = defaultdict(int)
    for session in sessions:
        per_week[get_week_range(session.start_date)[0]] += 1

    total_miles = sum(s.total_distance for s in sessions) / METERS_PER_MILE
    heaviest_lb = max((s.load_weight for s in sessions), default=0.0) / KG_PER_LB

    return [
        AchievementProgress('century_club', 'Century Club', 'Ruck 100 miles in total', total_miles, 100.0),
        AchievementProgress('week_warrior', 'Week Warrior', 'Complete 5 rucks in one week',
                            max(per_week.values(), default=0), 5),
        AchievementProgress('early_bird', 'Early Bird', 'Start 10 rucks before 07:00',
                            sum(1 for s in sessions if s.start_date.hour < 7), 10),
        AchievementProgress('heavy_hauler', 'Heavy Hauler', 'Carry 50 lb or more on a ruck', heaviest_lb, 50.0),
        AchievementProgress('marathon_marcher', 'Marathon Marcher', 'Ruck a marathon distance in one session',
                            max((s.total_distance for s in sessions), default=0.0), 42195.0),
        AchievementProgress('summit_seeker', 'Summit Seeker', 'Climb 1000 m in total',
                            sum(s.elevation_gain for s in sessions), 1000.0),
    ]


class StatsService:
    def __init__(self, repository: SessionRepository, config: Optional[RuckCoreConfig] = None,
                 clock=utcnow):
        self.repository = repository
        self.config = config or RuckCoreConfig()
        self.clock = clock

    def summary_stats(self, time_range: str = 'all_time', start: Optional[datetime] = None,
                      end: Optional[datetime] = None) -> SummaryStats:
        """Summary over a named range, or over an explicit [start, end] when both are given."""
        if start is not None and end is not None:
            start, end = ensure_utc(start), ensure_utc(end)
            if start > end:
                raise InvalidQuery("start must not be after end")
            label = 'custom'
        else:
            start, end = resolve_time_range(time_range, self.clock())
            label = time_range

        cache_key = f"ruck_stats:summary:{label}:{to_iso(start)}:{to_iso(end)}"
        cached = cache_get(cache_key)
        if cached:
            logger.debug(f"[STATS] Cache hit for {cache_key}")
            return SummaryStats(**cached)

        summary = calculate_summary(self.repository.completed_between(start, end))
        cache_set(cache_key, summary.to_dict(), self.config.stats_cache_ttl_s)
        return summary

    def period_stats(self, time_range: str) -> PeriodStats:
        now = self.clock()
        start, end = resolve_time_range(time_range, now)
        sessions = self.repository.completed_between(start, end)

        trends = []
        prev_start, prev_end = previous_range(time_range, start, end)
        if prev_start is not None:
            previous = calculate_summary(self.repository.completed_between(prev_start, prev_end))
            trends = calculate_trends(calculate_summary(sessions), previous)

        all_sessions = self.repository.completed_between(None, None)
        period = PeriodStats(
            time_range=time_range,
            start=start,
            end=end,
            summary=calculate_summary(sessions),
            trends=trends,
            breakdown=calculate_breakdown(time_range, sessions, start, end),
            training_streak_weeks=training_streak(all_sessions, now),
        )
        logger.debug(f"[STATS] {time_range}: {period.summary.session_count} sessions")
        return period

    def personal_records(self) -> PersonalRecords:
        return calculate_personal_records(self.repository.completed_between(None, None))

    def achievements(self) -> List[AchievementProgress]:
        return calculate_achievements(self.repository.completed_between(None, None))
