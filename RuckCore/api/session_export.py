"""
CSV and JSON export for completed ruck sessions.

The CSV holds one row per committed point followed by a summary block; the
JSON document is the full session with points, segments and weather.
"""

import csv
import io
import json
import logging
from typing import List

from flask import current_app, make_response, request

from ..errors import InvalidQuery, SessionStateError
from ..models import RuckSession
from ..services.energy_estimator import SegmentConditions
from ..services.grade_calculator import GradeTracker
from ..services.track_compressor import is_pause_gap
from ..services.weather_overlay import WeatherOverlay
from .gpx_export import split_legs
from .ruck import RuckResource
from .schemas import EXPORT_FORMATS, TrackExportQuerySchema

logger = logging.getLogger(__name__)

export_query_schema = TrackExportQuerySchema()

POINT_COLUMNS = [
    'timestamp', 'latitude', 'longitude', 'altitude', 'best_altitude', 'horizontal_accuracy',
    'vertical_accuracy', 'speed', 'course', 'barometric_altitude', 'terrain_type', 'weather_impact', 'grade', 'is_key_point',
]


def summary_rows(session: RuckSession) -> List[List]:
    return [
        ['session_id', session.id, ''],
        ['start_date', session.start_date.isoformat(), ''],
        ['end_date', session.end_date.isoformat() if session.end_date else '', ''],
        ['total_duration', f"{session.total_duration:.0f}", 's'],
        ['total_distance', f"{session.total_distance:.1f}", 'm'],
        ['total_distance_km', f"{session.total_distance / 1000:.2f}", 'km'],
        ['load_weight', f"{session.load_weight:g}", 'kg'],
        ['total_calories', f"{session.total_calories:.1f}", 'kcal'],
        ['average_pace', f"{session.average_pace:.2f}", 'min/km'],
        ['elevation_gain', f"{session.elevation_gain:.1f}", 'm'],
        ['elevation_loss', f"{session.elevation_loss:.1f}", 'm'],
        ['point_count', len(session.location_points), ''],
        ['segment_count', len(session.terrain_segments), ''],
    ]


def build_session_csv(session: RuckSession, simplify_tolerance_m: float = 0.0) -> str:
    """Point rows with terrain, weather impact and smoothed grade, then a '# Summary Statistics' block."""
    conditions = SegmentConditions(session.terrain_segments, WeatherOverlay(session.weather_snapshots))
    grades = GradeTracker()
    rows = []
    previous = None
    for point in session.location_points:
        gap = previous is None or is_pause_gap(previous, point, session.pause_intervals)
        grade = grades.update(point, segment_break=gap)
        terrain, impact = conditions.at(point.timestamp)
        rows.append((point, grade, terrain, impact))
        previous = point

    if simplify_tolerance_m > 0:
        kept = {p.timestamp for leg in split_legs(session, simplify_tolerance_m) for p in leg}
        rows = [row for row in rows if row[0].timestamp in kept]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(POINT_COLUMNS)
    for point, grade, terrain, impact in rows:
        writer.writerow([
            point.timestamp.isoformat(),
            f"{point.latitude:.7f}",
            f"{point.longitude:.7f}",
            f"{point.altitude:.1f}",
            f"{point.best_altitude:.1f}",
            f"{point.horizontal_accuracy:.1f}",
            f"{point.vertical_accuracy:.1f}",
            f"{point.speed:.2f}",
            f"{point.course:.1f}",
            '' if point.barometric_altitude is None else f"{point.barometric_altitude:.1f}",
            terrain.value,
            impact.value,
            f"{grade:.1f}",
            'true' if point.is_key_point else 'false',
        ])

    writer.writerow([])
    writer.writerow(['# Summary Statistics'])
    writer.writerow(['Metric', 'Value', 'Unit'])
    writer.writerows(summary_rows(session))
    return buffer.getvalue()


def build_session_json(session: RuckSession) -> str:
    return json.dumps(session.to_dict(include_children=True), indent=2, sort_keys=True)


class SessionExportResource(RuckResource):
    """Download a completed session (GET /api/rucks/<id>/export/<csv|json>?simplify=<m>)"""

    def get(self, ruck_id, export_format):
        export_format = export_format.lower()
        if export_format not in EXPORT_FORMATS:
            raise InvalidQuery(f"Unsupported export format {export_format!r}", details={'formats': EXPORT_FORMATS})
        params = export_query_schema.load(request.args)

        session = current_app.config['SESSION_SERVICE'].repository.get(ruck_id, include_children=True)
        if not session.is_completed:
            raise SessionStateError(f"Session {ruck_id} is not completed")

        if export_format == 'csv':
            content = build_session_csv(session, params['simplify'])
            content_type = 'text/csv'
        else:
            content = build_session_json(session)
            content_type = 'application/json'
        logger.info(f"[EXPORT] {ruck_id} exported as {export_format} ({len(content)} bytes)")

        response = make_response(content)
        response.headers['Content-Type'] = content_type
        response.headers['Content-Disposition'] = f'attachment; filename="ruck_{ruck_id}.{export_format}"'
        return response
