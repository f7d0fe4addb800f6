#!/usr/bin/env python3
"""Tests for the matplotlib path preview and the headless planning command."""

import json

from surveyplan import main as cli
from surveyplan.core.face_detector import FaceSelection, FaceStrategy
from surveyplan.core.hardware import get_camera, get_lens
from surveyplan.core.mission import GeoPoint, LocalPoint
from surveyplan.core.mission_area import promote
from surveyplan.core.mission_planner import MissionPlanner
from surveyplan.core.raster_path import generate_raster_path
from surveyplan.utils.path_preview import plot_raster_path

DECK = (LocalPoint(0.0, 0.0, 2.0), LocalPoint(30.0, 0.0, 2.0),
        LocalPoint(30.0, 12.0, 2.0), LocalPoint(0.0, 12.0, 2.0))


def deck_selection():
    return FaceSelection(
        object_id="barge", face_id="barge:+y", face_index=4,
        strategy=FaceStrategy.AXIS_ALIGNED_BOX,
        ray_origin=(5.0, 20.0, -5.0), ray_direction=(0.0, -1.0, 0.0),
        hit_point=LocalPoint(5.0, 5.0, 2.0), distance=18.0,
        normal=(0.0, 0.0, 1.0), vertices=DECK, area=360.0,
    )


def test_plot_raster_path(tmp_path):
    area = promote(deck_selection(), 1.0, "origin-1", name="Deck")
    segment = generate_raster_path(area, get_camera("sony-a7r-iv"), get_lens("sony-e-50mm-f1.8"),
                                   0.003, snake_pattern=False)
    output = tmp_path / "deck.png"
    assert plot_raster_path(segment, area, str(output)) == str(output)
    assert output.exists() and output.stat().st_size > 0


def test_load_config(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("raster:\n  default_overlap: 0.65\n")
    assert cli.load_config(str(config_file)) == {"raster": {"default_overlap": 0.65}}
    assert cli.load_config(str(tmp_path / "missing.yaml")) == {}
    (tmp_path / "broken.yaml").write_text("raster: [unclosed\n")
    assert cli.load_config(str(tmp_path / "broken.yaml")) == {}
    assert "raster" in cli.load_config()


def test_command_line_plans_saved_mission(tmp_path):
    planner = MissionPlanner({})
    mission = planner.create_mission("Barge", GeoPoint(47.6, -122.3, 0.0)).value
    planner.promote_face(mission.mission_id, deck_selection(), offset_distance=0.5)
    mission_file = tmp_path / "barge.json"
    planner.save_mission(mission.mission_id, str(mission_file))

    config_file = tmp_path / "config.yaml"
    config_file.write_text(f"device_options:\n  log_file_path: \"{tmp_path / 'plan.log'}\"\n")
    output = tmp_path / "planned.json"
    exit_code = cli.main([str(mission_file), "--gsd", "0.002", "--output", str(output),
                          "--waypoints", str(tmp_path / "barge.waypoints"),
                          "--preview", str(tmp_path / "barge.png"),
                          "--config", str(config_file)])

    assert exit_code == 0
    planned = json.loads(output.read_text())
    assert len(planned['path_segments']) == 1
    assert planned['path_segments'][0]['metadata']['target_gsd_m'] == 0.002
    assert (tmp_path / "barge.waypoints").read_text().startswith("QGC WPL 110")
    assert (tmp_path / "barge.png").exists()
