"""
Ruck session endpoints: lifecycle, ingestion and history.
"""

import logging
from flask import current_app, request
from flask_restful import Resource
from marshmallow import ValidationError as SchemaValidationError

from ..errors import RuckCoreError
from ..models import WeatherConditions
from ..utils.api_response import success_response, error_response, exception_response
from .schemas import (
    StartSessionSchema, StopSessionSchema, LocationBatchSchema, WeatherSnapshotSchema,
    TerrainOverrideSchema, HistoryQuerySchema,
)

logger = logging.getLogger(__name__)

start_schema = StartSessionSchema()
stop_schema = StopSessionSchema()
location_batch_schema = LocationBatchSchema()
weather_schema = WeatherSnapshotSchema()
terrain_schema = TerrainOverrideSchema()
history_query_schema = HistoryQuerySchema()


def get_session_service():
    return current_app.config['SESSION_SERVICE']


def _truthy(value) -> bool:
    return str(value).lower() in ('1', 'true', 'yes')


class RuckResource(Resource):
    """Shared error mapping for ruck endpoints."""

    def dispatch_request(self, *args, **kwargs):
        try:
            return super().dispatch_request(*args, **kwargs)
        except SchemaValidationError as e:
            return error_response("Invalid request", details=e.messages, status_code=400)
        except RuckCoreError as e:
            if e.http_status >= 500:
                logger.error(f"[API] {request.method} {request.path} failed: {e.message}")
            return exception_response(e)


class RuckSessionListResource(RuckResource):
    def get(self):
        """Completed session history (GET /api/rucks?after=&min_distance=&min_weight=)"""
        params = history_query_schema.load(request.args)
        sessions = get_session_service().query_history(
            after=params.get('after'),
            min_distance=params['min_distance'],
            min_weight=params['min_weight'],
        )
        return success_response([s.to_dict(include_children=False) for s in sessions])

    def post(self):
        """Start a new session (POST /api/rucks)"""
        data = start_schema.load(request.get_json(silent=True) or {})
        handle = get_session_service().start_session(data['load_weight'], body_weight=data.get('body_weight'))
        session = handle.snapshot()
        return success_response(session.to_dict(include_children=False), message='Session started', status_code=201)


class RuckSessionResource(RuckResource):
    def get(self, ruck_id):
        """Session by id; children only when include_points is set (GET /api/rucks/<id>)"""
        include_children = _truthy(request.args.get('include_points', 'false'))
        session = get_session_service().snapshot(ruck_id, include_children=include_children)
        return success_response(session.to_dict(include_children=include_children))

    def delete(self, ruck_id):
        service = get_session_service()
        if service.active_session_id() == ruck_id:
            return error_response("Stop the session before deleting it", status_code=409)
        service.repository.delete(ruck_id)
        return success_response(message='Session deleted')


class RuckSessionPauseResource(RuckResource):
    def post(self, ruck_id):
        session = get_session_service().pause(ruck_id)
        return success_response(session.to_dict(include_children=False))


class RuckSessionResumeResource(RuckResource):
    def post(self, ruck_id):
        session = get_session_service().resume(ruck_id)
        return success_response(session.to_dict(include_children=False))


class RuckSessionStopResource(RuckResource):
    def post(self, ruck_id):
        data = stop_schema.load(request.get_json(silent=True) or {})
        session = get_session_service().stop(ruck_id, rpe=data.get('rpe'), notes=data.get('notes'))
        return success_response(session.to_dict(include_children=False), message='Session completed')


class RuckSessionLocationResource(RuckResource):
    def post(self, ruck_id):
        """Ingest a batch of raw samples (POST /api/rucks/<id>/location)"""
        data = location_batch_schema.load(request.get_json(silent=True) or {})
        results = get_session_service().ingest_batch(ruck_id, data['points'])
        accepted = sum(1 for r in results if r.accepted)
        if accepted < len(results):
            logger.debug(f"[API] {ruck_id}: accepted {accepted}/{len(results)} samples")
        return success_response({
            'accepted': accepted,
            'rejected': len(results) - accepted,
            'results': [r.to_dict() for r in results],
        })


class RuckSessionWeatherResource(RuckResource):
    def post(self, ruck_id):
        data = weather_schema.load(request.get_json(silent=True) or {})
        snapshot = WeatherConditions(**data)
        get_session_service().add_weather(ruck_id, snapshot)
        return success_response(snapshot.to_dict(), status_code=201)


class RuckSessionTerrainResource(RuckResource):
    def post(self, ruck_id):
        """Manual terrain override for the live session"""
        data = terrain_schema.load(request.get_json(silent=True) or {})
        terrain = get_session_service().override_terrain(ruck_id, data['terrain_type'])
        return success_response({'terrain_type': terrain.value, 'energy_factor': terrain.energy_factor})

    def delete(self, ruck_id):
        """Drop the manual override and return to automatic classification"""
        cleared = get_session_service().clear_terrain_override(ruck_id)
        return success_response({'cleared': cleared}, message='Automatic terrain classification resumed' if cleared else None)


class RuckSessionCaloriesResource(RuckResource):
    def get(self, ruck_id):
        """Calorie total, 10% confidence interval and cumulative profile (GET /api/rucks/<id>/calories)"""
        return success_response(get_session_service().calorie_breakdown(ruck_id))


class RuckSessionCheckpointResource(RuckResource):
    def post(self, ruck_id):
        get_session_service().checkpoint(ruck_id)
        return success_response(message='Checkpoint written')


class RuckSessionRecoverResource(RuckResource):
    def post(self, ruck_id):
        handle = get_session_service().recover(ruck_id)
        return success_response(handle.snapshot().to_dict(include_children=False))
