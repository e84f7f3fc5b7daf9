import logging
from flask import current_app
from flask_restful import Resource
from marshmallow import ValidationError as SchemaValidationError

from ..errors import RuckCoreError
from ..services.redis_cache_service import cache_get, cache_set
from ..utils.api_response import success_response, error_response, exception_response
from ..utils.dates import to_iso
from .schemas import StatsQuerySchema

logger = logging.getLogger(__name__)

stats_query_schema = StatsQuerySchema()


def get_stats_service():
    return current_app.config['STATS_SERVICE']


class PeriodStatsResource(Resource):
    def get(self, time_range):
        """Aggregated stats with trends and breakdown (GET /api/stats/<time_range>)"""
        service = get_stats_service()
        try:
            stats_query_schema.load({'time_range': time_range})
        except SchemaValidationError as e:
            return error_response("Invalid time range", details=e.messages, status_code=400)

        try:
            cache_key = f"ruck_stats:period:{time_range}:{to_iso(service.clock())[:10]}"
            cached_response = cache_get(cache_key)
            if cached_response:
                logger.debug(f"[STATS] Returning cached response for {cache_key}")
                return success_response(cached_response)

            stats = service.period_stats(time_range).to_dict()
            cache_set(cache_key, stats, service.config.stats_cache_ttl_s)
            return success_response(stats)
        except RuckCoreError as e:
            return exception_response(e)


class PersonalRecordsResource(Resource):
    def get(self):
        try:
            return success_response(get_stats_service().personal_records().to_dict())
        except RuckCoreError as e:
            return exception_response(e)


class AchievementsResource(Resource):
    def get(self):
        try:
            achievements = get_stats_service().achievements()
        except RuckCoreError as e:
            return exception_response(e)
        return success_response({
            'achievements': [a.to_dict() for a in achievements],
            'unlocked': sum(1 for a in achievements if a.is_unlocked),
        })
