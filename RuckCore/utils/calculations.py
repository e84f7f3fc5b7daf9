import logging

logger = logging.getLogger(__name__)

KG_PER_LB = 0.45359237
METERS_PER_MILE = 1609.344


def lbs_to_kg(weight_lbs):
    return weight_lbs * KG_PER_LB


def calculate_pace(distance_m, duration_seconds):
    """
    Calculate pace in minutes per kilometer.

    Args:
        distance_m (float): Distance covered in meters
        duration_seconds (float): Active duration in seconds

    Returns:
        float: Pace in minutes per kilometer, 0 when either input is empty
    """
    if distance_m <= 0 or duration_seconds <= 0:
        return 0.0

    duration_minutes = duration_seconds / 60
    return duration_minutes / (distance_m / 1000)


def grade_percent(elevation_delta_m, horizontal_distance_m):
    """Signed grade as percent rise over run; flat when the run is too short to measure."""
    if horizontal_distance_m < 1.0:
        return 0.0
    return elevation_delta_m / horizontal_distance_m * 100.0
