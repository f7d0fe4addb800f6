import argparse
import logging
import os
import sys

import yaml

from surveyplan.core import hardware
from surveyplan.core.mission_planner import MissionPlanner
from surveyplan.core.raster_path import FlightOrientation


def setup_global_logging(config):
    """Configure logging for the entire application."""
    log_file_path = config.get("device_options", {}).get("log_file_path", "data/logs/surveyplan_log.txt")

    # Create directory if it doesn't exist
    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file_path, mode='a'),
            logging.StreamHandler()  # Also log to console
        ]
    )

    logger = logging.getLogger("SURVEYPLAN.Main")
    logger.info("Survey planner logging initialized")
    logger.info(f"Log file: {log_file_path}")


def load_config(path=None):
    if path is None:
        # config.yaml lives next to this module
        base_dir = os.path.dirname(os.path.abspath(__file__))
        path = os.path.join(base_dir, "config.yaml")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            print(f"Configuration loaded successfully from: {path}")
            return config
    except FileNotFoundError:
        print(f"Configuration file not found: {path}")
        return {}
    except yaml.YAMLError as e:
        print(f"Error parsing YAML file: {e}")
        return {}


def _orientation(value: str):
    try:
        return FlightOrientation(value)
    except ValueError:
        return float(value)


def build_parser(config: dict) -> argparse.ArgumentParser:
    raster = config.get("raster", {}) or {}
    parser = argparse.ArgumentParser(
        description="Plan raster imaging paths for the mission areas of a saved mission.",
    )
    parser.add_argument("mission", nargs="?", help="Mission JSON file")
    parser.add_argument("--camera", default=raster.get("default_camera", "phase-one-ixm-100"),
                        help="Camera id from the hardware catalogue")
    parser.add_argument("--lens", default=raster.get("default_lens", "phaseone-rsm-80mm"),
                        help="Lens id from the hardware catalogue")
    parser.add_argument("--gsd", type=float, default=raster.get("default_gsd_m", 0.001),
                        help="Target ground sample distance in meters per pixel")
    parser.add_argument("--overlap", type=float, default=raster.get("default_overlap", 0.7),
                        help="Cross-track overlap fraction [0, 1)")
    parser.add_argument("--orientation", type=_orientation, default=FlightOrientation.LONG_AXIS,
                        help="long_axis, short_axis or a flight angle in degrees")
    parser.add_argument("--no-snake", action="store_true", help="Fly every row in the same direction")
    parser.add_argument("--output", default=None, help="Output mission JSON (default: overwrite input)")
    parser.add_argument("--waypoints", default=None, help="Also export a QGC WPL 110 .waypoints file")
    parser.add_argument("--preview", default=None, help="Save a PNG preview of the first generated path")
    parser.add_argument("--config", default=None, help="Alternative config.yaml")
    parser.add_argument("--list-hardware", action="store_true", help="List cameras and lenses and exit")
    return parser


def list_hardware():
    print("CAMERAS:")
    for camera in hardware.CAMERAS.values():
        print(f"  {camera.id:24s} {camera.brand} {camera.model} ({camera.sensor_type}, "
              f"{camera.megapixels:.0f} MP)")
    print("LENSES:")
    for lens in hardware.LENSES.values():
        print(f"  {lens.id:24s} {lens.brand} {lens.model} [{lens.lens_mount}]")


def run(args, config) -> int:
    logger = logging.getLogger("SURVEYPLAN.Main")
    planner = MissionPlanner(config)

    result = planner.load_mission(args.mission)
    if not result.ok:
        logger.error(f"Cannot plan: {result.message}")
        return 1
    mission_id = result.value
    mission = planner.get_mission(mission_id)
    if not mission.mission_areas:
        logger.error(f"Mission {mission_id} has no mission areas")
        return 1

    aperture = float((config.get("optics", {}) or {}).get("default_aperture", 5.6))

    first_segment = None
    for area in mission.mission_areas:
        result = planner.generate_raster_path(
            mission_id, area.id, args.camera, args.lens, args.gsd,
            overlap=args.overlap, orientation=args.orientation, snake_pattern=not args.no_snake,
        )
        if not result.ok:
            logger.error(f"Area {area.name}: {result.error_type}: {result.message}")
            return 1
        segment = result.value
        first_segment = first_segment or (segment, area)

        standoff = segment.metadata['standoff_m']
        result = planner.solve_optics(args.camera, args.lens, aperture, standoff,
                                      focal_length=segment.metadata['focal_length_mm'])
        if not result.ok:
            logger.warning(f"Area {area.name}: no optical solution: {result.message}")
            continue
        solution = result.value
        logger.info(
            f"Area {area.name}: standoff {standoff:.2f} m, footprint "
            f"{solution.footprint_width:.2f} x {solution.footprint_height:.2f} m, "
            f"sharp from {solution.near_limit:.2f} to {solution.far_limit:.2f} m at f/{aperture}"
        )

    validation = planner.validate_mission(mission_id)
    if not validation.ok:
        logger.warning(f"Mission validation: {validation.message}")
    minutes = planner.calculate_mission_time(mission_id).value

    result = planner.save_mission(mission_id, args.output or args.mission)
    if not result.ok:
        return 1
    if args.waypoints:
        result = planner.export_waypoints(mission_id, args.waypoints)
        if not result.ok:
            return 1
    if args.preview and first_segment:
        from surveyplan.utils.path_preview import plot_raster_path
        plot_raster_path(first_segment[0], first_segment[1], args.preview)

    logger.info(f"Planned {len(mission.mission_areas)} area(s), estimated flight time {minutes:.1f} minutes")
    return 0


def main(argv=None):
    config = load_config()
    parser = build_parser(config)
    args = parser.parse_args(argv)
    if args.config:
        config = load_config(args.config)

    if args.list_hardware:
        list_hardware()
        return 0
    if not args.mission:
        parser.error("a mission file is required")

    # Setup global logging first
    setup_global_logging(config)
    return run(args, config)


if __name__ == "__main__":
    sys.exit(main())
