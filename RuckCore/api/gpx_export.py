"""
GPX export for completed ruck sessions.
Each leg between pauses becomes its own track segment; load, calories and
terrain segments go into a `ruck:` extension block.
"""

from flask import current_app, make_response, request
from flask_restful import Resource
import logging
from typing import List
import xml.etree.ElementTree as ET
from xml.dom import minidom
from marshmallow import ValidationError as SchemaValidationError

from ..errors import RuckCoreError, SessionStateError
from ..models import RuckSession, LocationPoint
from ..services.track_compressor import is_pause_gap, simplify_points
from ..utils.api_response import exception_response, error_response
from .schemas import TrackExportQuerySchema

logger = logging.getLogger(__name__)

export_query_schema = TrackExportQuerySchema()

RUCK_NAMESPACE = 'https://getrucky.com/xmlns/ruck/1'


def split_legs(session: RuckSession, simplify_tolerance_m: float = 0.0) -> List[List[LocationPoint]]:
    """Committed points grouped into the legs between pauses, optionally thinned per leg."""
    legs = []
    previous = None
    for point in session.location_points:
        if previous is None or is_pause_gap(previous, point, session.pause_intervals):
            legs.append([])
        legs[-1].append(point)
        previous = point
    if simplify_tolerance_m > 0:
        legs = [simplify_points(leg, simplify_tolerance_m) for leg in legs]
    return legs


def build_session_gpx(session: RuckSession, simplify_tolerance_m: float = 0.0) -> str:
    """Generate GPX 1.1 XML content for a completed ruck session."""
    gpx = ET.Element('gpx')
    gpx.set('version', '1.1')
    gpx.set('creator', 'RuckCore')
    gpx.set('xmlns', 'http://www.topografix.com/GPX/1/1')
    gpx.set('xmlns:xsi', 'http://www.w3.org/2001/XMLSchema-instance')
    gpx.set('xmlns:ruck', RUCK_NAMESPACE)
    gpx.set('xsi:schemaLocation', 'http://www.topografix.com/GPX/1/1 http://www.topografix.com/GPX/1/1/gpx.xsd')

    metadata = ET.SubElement(gpx, 'metadata')
    session_name = f"Ruck Session {session.start_date.strftime('%Y-%m-%d %H:%M')}"
    ET.SubElement(metadata, 'name').text = session_name
    ET.SubElement(metadata, 'desc').text = (
        f"Rucking session with {session.load_weight:g}kg pack, "
        f"{session.total_distance / 1000:.2f}km total distance"
    )
    ET.SubElement(metadata, 'time').text = session.start_date.isoformat()

    trk = ET.SubElement(gpx, 'trk')
    ET.SubElement(trk, 'name').text = session_name
    ET.SubElement(trk, 'type').text = 'Rucking'

    extensions = ET.SubElement(trk, 'extensions')
    ET.SubElement(extensions, 'ruck:load_weight').text = f"{session.load_weight:g}"
    ET.SubElement(extensions, 'ruck:calories').text = f"{session.total_calories:.1f}"
    ET.SubElement(extensions, 'ruck:elevation_gain').text = f"{session.elevation_gain:.1f}"
    ET.SubElement(extensions, 'ruck:elevation_loss').text = f"{session.elevation_loss:.1f}"
    terrain = ET.SubElement(extensions, 'ruck:terrain')
    for segment in session.terrain_segments:
        seg = ET.SubElement(terrain, 'ruck:segment')
        seg.set('type', segment.terrain_type.value)
        seg.set('name', segment.terrain_type.display_name)
        seg.set('start', segment.start_time.isoformat())
        seg.set('end', segment.end_time.isoformat())
        seg.set('grade', f"{segment.grade:.1f}")
        seg.set('confidence', f"{segment.confidence:.2f}")
        if segment.is_manually_set:
            seg.set('manual', 'true')

    for leg in split_legs(session, simplify_tolerance_m):
        trkseg = ET.SubElement(trk, 'trkseg')
        for point in leg:
            trkpt = ET.SubElement(trkseg, 'trkpt')
            trkpt.set('lat', str(point.latitude))
            trkpt.set('lon', str(point.longitude))
            ET.SubElement(trkpt, 'ele').text = f"{point.best_altitude:.1f}"
            ET.SubElement(trkpt, 'time').text = point.timestamp.isoformat()

    rough_string = ET.tostring(gpx, encoding='unicode')
    reparsed = minidom.parseString(rough_string)
    return reparsed.toprettyxml(indent='  ', encoding='UTF-8').decode('utf-8')


class SessionGPXExportResource(Resource):
    """Export a completed ruck session as a GPX file."""

    def get(self, ruck_id):
        try:
            params = export_query_schema.load(request.args)
            session = current_app.config['SESSION_SERVICE'].repository.get(ruck_id, include_children=True)
            if not session.is_completed:
                raise SessionStateError(f"Session {ruck_id} is not completed")
            gpx_content = build_session_gpx(session, params['simplify'])
        except SchemaValidationError as e:
            return error_response("Invalid request", details=e.messages, status_code=400)
        except RuckCoreError as e:
            return exception_response(e)
        except Exception as e:
            logger.error(f"Error exporting session GPX {ruck_id}: {e}", exc_info=True)
            return error_response("Failed to export session as GPX", status_code=500)

        response = make_response(gpx_content)
        response.headers['Content-Type'] = 'application/gpx+xml'
        response.headers['Content-Disposition'] = f'attachment; filename="ruck_{ruck_id}.gpx"'
        return response
