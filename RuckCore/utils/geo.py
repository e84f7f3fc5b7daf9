"""
Great-circle helpers shared by compression, segmentation and replay.
"""
import math

EARTH_RADIUS_M = 6371000


def haversine_distance(lat1, lon1, lat2, lon2):
    """Distance in meters between two WGS84 coordinates."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return c * EARTH_RADIUS_M


def initial_bearing(lat1, lon1, lat2, lon2):
    """Initial bearing in degrees [0, 360) from the first point to the second."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def bearing_change(bearing_in, bearing_out):
    """Signed turn in degrees, normalized to [-180, 180]."""
    delta = (bearing_out - bearing_in) % 360.0
    if delta > 180.0:
        delta -= 360.0
    return delta


def _to_local_xy(lat, lon, ref_lat, ref_lon):
    # Equirectangular projection around the reference; accurate at track scale
    x = math.radians(lon - ref_lon) * math.cos(math.radians(ref_lat)) * EARTH_RADIUS_M
    y = math.radians(lat - ref_lat) * EARTH_RADIUS_M
    return x, y


def perpendicular_distance(lat, lon, start_lat, start_lon, end_lat, end_lon):
    """Distance in meters from a point to the segment start -> end."""
    px, py = _to_local_xy(lat, lon, start_lat, start_lon)
    ex, ey = _to_local_xy(end_lat, end_lon, start_lat, start_lon)
    seg_len_sq = ex * ex + ey * ey
    if seg_len_sq == 0:
        return math.hypot(px, py)
    t = max(0.0, min(1.0, (px * ex + py * ey) / seg_len_sq))
    return math.hypot(px - t * ex, py - t * ey)
