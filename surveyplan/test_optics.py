#!/usr/bin/env python3
"""Tests for the camera / lens optical model."""

import math

import pytest

from surveyplan.core import hardware, optics
from surveyplan.core.errors import InvalidInputError

PHASE_ONE = hardware.CameraProfile("test-ixm", "Phase One", "iXM", "Medium Format",
                                   53.4, 40.0, 11656, 8742)
RSM_80 = hardware.LensProfile("test-80", "Phase One", "RSM 80mm", 80.0, 5.6, 32.0)


def test_field_of_view():
    assert optics.field_of_view(50.0, 36.0) == pytest.approx(math.degrees(2 * math.atan(0.36)))
    assert optics.field_of_view(80.0, 53.4) == pytest.approx(36.9, abs=0.1)


def test_footprint_uses_similar_triangles_and_square_pixels():
    fp = optics.footprint(80.0, 53.4, 40.0, 11656, 8742, 20.0)
    assert fp.width == pytest.approx(53.4 * 20.0 / 80.0)
    assert fp.height == pytest.approx(fp.width / 11656 * 8742)


def test_gsd_inverse_law():
    for target in (0.0005, 0.001, 0.005, 0.02):
        distance = optics.distance_for_target_gsd(target, 80.0, 53.4, 11656)
        fp = optics.footprint(80.0, 53.4, 40.0, 11656, 8742, distance)
        achieved = optics.gsd(fp.width, 11656)
        assert abs(achieved - target) / target < 0.01


def test_one_millimetre_gsd_standoff():
    distance = optics.distance_for_target_gsd(0.001, 80.0, 53.4, 11656)
    assert distance == pytest.approx(0.001 * 80.0 * 11656 / 53.4)
    assert distance == pytest.approx(17.46, abs=0.01)


def test_hyperfocal_distance():
    assert optics.hyperfocal_distance(50.0, 8.0, 0.03) == pytest.approx(2500.0 / 0.24 / 1000.0)


def test_far_limit_infinite_beyond_hyperfocal():
    hyperfocal = optics.hyperfocal_distance(24.0, 11.0, 0.03)
    dof = optics.depth_of_field(24.0, 11.0, hyperfocal + 1.0, circle_of_confusion_mm=0.03)
    assert math.isinf(dof.far_limit)
    assert dof.near_limit < hyperfocal


def test_depth_of_field_grows_with_f_number():
    totals = []
    for aperture in (2.8, 4.0, 5.6, 8.0, 11.0, 16.0, 22.0):
        dof = optics.depth_of_field(50.0, aperture, 5.0, sensor_type="Full Frame")
        assert dof.near_limit < 5.0 < dof.far_limit
        totals.append(dof.total)
    assert all(b >= a for a, b in zip(totals, totals[1:]))


def test_circle_of_confusion_defaults():
    assert optics.circle_of_confusion("Full Frame", 36.0) == 0.030
    assert optics.circle_of_confusion("APS-C", 23.5) == 0.020
    assert optics.circle_of_confusion("1-inch", 13.2) == 0.011
    assert optics.circle_of_confusion("1/2-inch", 6.4) == 0.006
    assert optics.circle_of_confusion("Medium Format", 53.4) == pytest.approx(53.4 / 1500)
    assert optics.circle_of_confusion("Custom", 18.0) == pytest.approx(0.015)
    assert optics.circle_of_confusion("Custom", 60.0) == 0.030
    assert optics.circle_of_confusion() == 0.030


def test_zoom_lens_uses_representative_focal_length():
    zoom = hardware.get_lens("sony-e-24-70mm-f2.8-gm")
    assert zoom.is_zoom
    assert optics.effective_focal_length(zoom) == pytest.approx(47.0)
    assert optics.effective_focal_length(zoom, 0.0) == pytest.approx(24.0)
    assert optics.effective_focal_length(RSM_80, 0.9) == 80.0
    with pytest.raises(InvalidInputError):
        optics.effective_focal_length(zoom, 1.5)


@pytest.mark.parametrize("call", [
    lambda: optics.field_of_view(0.0, 36.0),
    lambda: optics.footprint(80.0, 53.4, 40.0, 11656, 8742, -1.0),
    lambda: optics.footprint(80.0, 53.4, 40.0, 0, 8742, 10.0),
    lambda: optics.gsd(float("nan"), 100),
    lambda: optics.distance_for_target_gsd(0.0, 80.0, 53.4, 11656),
    lambda: optics.depth_of_field(50.0, float("nan"), 5.0),
    lambda: optics.depth_of_field(50.0, 8.0, 0.0),
    lambda: optics.overlap_spacing(optics.Footprint(10.0, 8.0), 1.0, 0.5),
    lambda: optics.overlap_spacing(optics.Footprint(10.0, 8.0), 0.5, -0.1),
])
def test_invalid_inputs_raise(call):
    with pytest.raises(InvalidInputError):
        call()


def test_overlap_spacing():
    interval, spacing = optics.overlap_spacing(optics.Footprint(10.0, 8.0), 0.8, 0.6)
    assert interval == pytest.approx(2.0)
    assert spacing == pytest.approx(3.2)


def test_solve_is_deterministic():
    first = optics.solve(PHASE_ONE, RSM_80, 5.6, 17.46)
    second = optics.solve(PHASE_ONE, RSM_80, 5.6, 17.46)
    assert first == second
    assert first.gsd == pytest.approx(0.001, rel=1e-3)
    assert first.circle_of_confusion == pytest.approx(53.4 / 1500)
    assert first.horizontal_fov > first.vertical_fov


def test_catalogue_lookups():
    camera = hardware.get_camera("phase-one-ixm-100")
    assert camera.megapixels == pytest.approx(102, abs=1)
    assert hardware.get_camera("missing") is None
    mounts = {lens.lens_mount for lens in hardware.compatible_lenses(camera)}
    assert mounts == {"PhaseOne-RSM"}
