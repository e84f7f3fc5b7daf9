import os
import sys
import atexit
import logging
from flask import Flask, jsonify
from flask_restful import Api

from . import __version__
from .config import RuckCoreConfig
from .api.gpx_export import SessionGPXExportResource
from .api.ruck import (
    RuckSessionListResource, RuckSessionResource, RuckSessionPauseResource, RuckSessionResumeResource,
    RuckSessionStopResource, RuckSessionLocationResource, RuckSessionWeatherResource,
    RuckSessionTerrainResource, RuckSessionCheckpointResource, RuckSessionRecoverResource,
    RuckSessionCaloriesResource,
)
from .api.session_export import SessionExportResource
from .api.stats import PeriodStatsResource, PersonalRecordsResource, AchievementsResource
from .services.redis_cache_service import get_cache_service
from .services.session_repository import SessionRepository
from .services.session_service import SessionService
from .services.session_store import InMemorySessionStore, SupabaseSessionStore
from .services.stats_service import StatsService
from .services.weather_provider import WeatherKitProvider

logger = logging.getLogger(__name__)


def configure_logging():
    # Errors always show; VERBOSE_LOGS=true adds INFO, development adds DEBUG
    log_level = logging.ERROR
    if os.environ.get("VERBOSE_LOGS") == "true":
        log_level = logging.INFO
    elif os.environ.get("FLASK_ENV") == "development":
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def init_sentry():
    """Error tracking for non-development deployments with SENTRY_DSN set."""
    if not os.environ.get("SENTRY_DSN") or os.environ.get("FLASK_ENV") == "development":
        logger.info("Sentry not initialized (development mode or missing DSN)")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_logging = LoggingIntegration(
        level=logging.ERROR,
        event_level=logging.ERROR
    )
    sentry_sdk.init(
        dsn=os.environ.get("SENTRY_DSN"),
        integrations=[
            FlaskIntegration(transaction_style='endpoint'),
            sentry_logging,
        ],
        traces_sample_rate=0.1,
        release=__version__,
        environment=os.environ.get("FLASK_ENV", "production"),
    )
    logger.info("Sentry initialized for error tracking")
    return True


def build_session_service(config: RuckCoreConfig) -> SessionService:
    if config.storage_backend == 'supabase':
        store = SupabaseSessionStore()
    elif config.storage_backend == 'memory':
        store = InMemorySessionStore()
    else:
        raise ValueError(f"Unknown storage backend {config.storage_backend!r}")

    provider = WeatherKitProvider(timeout=config.weather_timeout_s, cache_ttl=config.weather_cache_ttl_s)
    return SessionService(SessionRepository(store), config, weather_provider=provider if provider.is_configured else None)


def create_app(service: SessionService = None, config: RuckCoreConfig = None, stats_service: StatsService = None):
    configure_logging()
    init_sentry()

    config = config or RuckCoreConfig.from_env()
    if service is None:
        service = build_session_service(config)
        atexit.register(service.close)
    stats_service = stats_service or StatsService(service.repository, config, clock=service.clock)

    app = Flask(__name__)
    app.config['RUCK_CONFIG'] = config
    app.config['SESSION_SERVICE'] = service
    app.config['STATS_SERVICE'] = stats_service

    api = Api(app)

    api.add_resource(RuckSessionListResource, '/api/rucks')
    api.add_resource(RuckSessionResource, '/api/rucks/<string:ruck_id>')
    api.add_resource(RuckSessionPauseResource, '/api/rucks/<string:ruck_id>/pause')
    api.add_resource(RuckSessionResumeResource, '/api/rucks/<string:ruck_id>/resume')
    api.add_resource(RuckSessionStopResource, '/api/rucks/<string:ruck_id>/stop')
    api.add_resource(RuckSessionLocationResource, '/api/rucks/<string:ruck_id>/location')
    api.add_resource(RuckSessionWeatherResource, '/api/rucks/<string:ruck_id>/weather')
    api.add_resource(RuckSessionTerrainResource, '/api/rucks/<string:ruck_id>/terrain')
    api.add_resource(RuckSessionCheckpointResource, '/api/rucks/<string:ruck_id>/checkpoint')
    api.add_resource(RuckSessionRecoverResource, '/api/rucks/<string:ruck_id>/recover')
    api.add_resource(RuckSessionCaloriesResource, '/api/rucks/<string:ruck_id>/calories')
    api.add_resource(SessionGPXExportResource, '/api/rucks/<string:ruck_id>/gpx')
    api.add_resource(SessionExportResource, '/api/rucks/<string:ruck_id>/export/<string:export_format>')

    api.add_resource(PersonalRecordsResource, '/api/stats/records')
    api.add_resource(AchievementsResource, '/api/stats/achievements')
    api.add_resource(PeriodStatsResource, '/api/stats/<string:time_range>')

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'ok',
            'version': __version__,
            'storage': config.storage_backend,
            'cache': get_cache_service().is_connected(),
        })

    logger.info(f"[APP] RuckCore API ready (storage backend: {config.storage_backend})")
    return app
