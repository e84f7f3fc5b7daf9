from datetime import timedelta

import pytest

from RuckCore.config import RuckCoreConfig
from RuckCore.services.grade_calculator import (
    ElevationFilter, GradeSmoother, GradeTracker, accuracy_factor, gps_weight,
)

from conftest import T0, make_samples, north_of


def _grades(samples, tracker=None, breaks=()):
    tracker = tracker or GradeTracker()
    return [tracker.update(s, segment_break=i in breaks) for i, s in enumerate(samples)]


def test_steady_climb_reports_rounded_grade():
    samples = make_samples(120, climb_per_sample=0.1)

    grades = _grades(samples)

    assert all(g % 0.5 == 0 for g in grades)
    assert grades[-1] == 6.5


def test_single_altitude_spike_is_smoothed_away():
    samples = make_samples(120)
    samples[60].altitude = 3.0

    grades = _grades(samples)

    # Unfiltered, the spike alone would read as roughly 28% over one run
    assert max(abs(g) for g in grades) < 8.0
    assert grades[-1] == 0.0


def test_short_runs_keep_previous_grade():
    smoother = GradeSmoother(min_run_m=10.0)
    smoother.add(0.0, 0.0)

    assert smoother.add(5.0, 4.0) == 0.0
    assert smoother.add(5.0, 4.0) == 0.0
    assert smoother.add(1.2, 4.0) == 10.0


def test_grade_is_clamped_to_configured_maximum():
    smoother = GradeSmoother(window=1, min_run_m=1.0, max_grade=60.0)
    smoother.add(0.0, 0.0)

    assert smoother.add(100.0, 2.0) == 60.0
    assert smoother.add(0.0, 2.0) == -60.0


def test_barometric_drift_is_pulled_towards_accurate_gps():
    accurate = make_samples(60, altitude=100.0, barometric_altitude=120.0, vertical_accuracy=2.0)
    vague = make_samples(60, altitude=100.0, barometric_altitude=120.0, vertical_accuracy=50.0)
    corrected, uncorrected = ElevationFilter(), ElevationFilter()

    for sample in accurate:
        corrected.update(sample)
    for sample in vague:
        uncorrected.update(sample)

    assert uncorrected.state == pytest.approx(120.0)
    assert corrected.state < 118.0


def test_segment_break_starts_a_new_run():
    before = make_samples(40)
    after = make_samples(40, start=before[-1].timestamp + timedelta(minutes=10),
                         lat=north_of(before), altitude=20.0)

    with_break = _grades(before + after, breaks={len(before)})
    without_break = _grades(before + after)

    assert max(abs(g) for g in with_break) == 0.0
    assert max(without_break) > 10.0


def test_tracker_reads_config():
    config = RuckCoreConfig(grade_smoothing_window=5, grade_min_run_m=20.0,
                            elevation_process_noise=0.1, elevation_measurement_noise=0.5)

    tracker = GradeTracker(config)

    assert tracker.smoother.min_run_m == 20.0
    assert tracker.smoother._window.maxlen == 5
    assert tracker.filter.process_noise == 0.1
    assert tracker.filter.measurement_noise == 0.5


@pytest.mark.parametrize('accuracy, expected', [(0, 0.1), (2.0, 1.0), (20.0, 0.5), (500.0, 0.1)])
def test_gps_weight(accuracy, expected):
    assert gps_weight(accuracy) == pytest.approx(expected)


@pytest.mark.parametrize('accuracy, expected', [(-1, 0.5), (1.0, 1.0), (5.0, 0.8), (8.0, 0.6), (30.0, 0.3)])
def test_accuracy_factor(accuracy, expected):
    assert accuracy_factor(accuracy) == expected
