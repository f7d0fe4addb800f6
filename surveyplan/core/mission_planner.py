# core/mission_planner.py

import json
import logging
import math
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from pymavlink import mavutil
from PySide6.QtCore import QObject, Signal

from surveyplan.core import coordinates, hardware, optics
from surveyplan.core.errors import (
    InvalidInputError,
    PlanningError,
    PlanningResult,
    StaleOriginError,
    ValidationError,
)
from surveyplan.core.face_detector import FaceSelection, MeshSnapshot, Ray, SurfaceFaceDetector
from surveyplan.core.mission import (
    AltitudeReference,
    CameraAction,
    GeoPoint,
    LocalPoint,
    Mission,
    ReferencePoint,
    SceneObject,
    SceneOrigin,
    mission_from_dict,
    mission_to_dict,
    utc_now,
)
from surveyplan.core.mission_area import MissionAreaBuilder
from surveyplan.core.raster_path import FlightOrientation, generate_raster_path, path_statistics

_ALTITUDE_FRAMES = {
    AltitudeReference.RELATIVE: mavutil.mavlink.MAV_FRAME_GLOBAL_RELATIVE_ALT,
    AltitudeReference.SEA_LEVEL: mavutil.mavlink.MAV_FRAME_GLOBAL,
    AltitudeReference.TERRAIN: mavutil.mavlink.MAV_FRAME_GLOBAL_TERRAIN_ALT,
}


class MissionPlanner(QObject):
    """Planning boundary for the UI.

    Every public operation returns a PlanningResult; engine errors are logged
    and carried in the result instead of being raised. Missions are immutable
    values swapped under a lock, so a reader sees either the old or the new
    mission.
    """

    # Planning signals
    mission_created = Signal(str, dict)        # mission_id, mission_data
    origin_rebased = Signal(str, str)          # mission_id, new origin id
    mission_area_created = Signal(str, dict)   # mission_id, area summary
    mission_area_deleted = Signal(str, str)    # mission_id, area_id
    path_generated = Signal(str, dict)         # mission_id, segment summary
    mission_saved = Signal(str, str)           # mission_id, filepath
    mission_loaded = Signal(str, dict)         # mission_id, mission_data

    def __init__(self, config: dict = None):
        super().__init__()
        self.config = config or {}
        self.missions: Dict[str, Mission] = {}
        self._lock = threading.Lock()

        coords_config = self.config.get("coordinates", {}) or {}
        self.earth_radius = float(coords_config.get("earth_radius_m", coordinates.EARTH_RADIUS_M))
        self.ground_clearance = float(
            coords_config.get("takeoff_ground_clearance_m", coordinates.DEFAULT_GROUND_CLEARANCE_M)
        )
        self.raster_config = self.config.get("raster", {}) or {}
        optics_config = self.config.get("optics", {}) or {}
        self.zoom_position = float(optics_config.get("default_zoom_position", 0.5))

        self.face_detector = SurfaceFaceDetector(self.config)
        self.area_builder = MissionAreaBuilder(self.config, self.face_detector.tolerances)
        self.logger = logging.getLogger("SURVEYPLAN.MissionPlanner")
        self.logger.info("Mission Planner initialized")

    # Mission store

    def _get(self, mission_id: str) -> Mission:
        with self._lock:
            mission = self.missions.get(mission_id)
        if mission is None:
            raise InvalidInputError(f"Mission {mission_id} not found")
        return mission

    def _update(self, mission_id: str, change: Callable[[Mission], Mission]) -> Mission:
        with self._lock:
            mission = self.missions.get(mission_id)
            if mission is None:
                raise InvalidInputError(f"Mission {mission_id} not found")
            updated = change(mission)
            self.missions[mission_id] = updated
        return updated

    def get_mission(self, mission_id: str) -> Optional[Mission]:
        """Get mission by ID."""
        with self._lock:
            return self.missions.get(mission_id)

    def get_all_missions(self) -> Dict[str, Mission]:
        with self._lock:
            return self.missions.copy()

    def delete_mission(self, mission_id: str) -> bool:
        with self._lock:
            if mission_id not in self.missions:
                return False
            del self.missions[mission_id]
        self.logger.info(f"Mission {mission_id} deleted")
        return True

    def create_mission(self, name: str, origin: GeoPoint, default_speed: float = None) -> PlanningResult:
        """Create an empty mission anchored at ``origin``."""
        try:
            coordinates.geo_to_local(origin, SceneOrigin(geo=origin))
            speed = default_speed if default_speed is not None else self.raster_config.get("default_speed", 5.0)
            if not math.isfinite(speed) or speed <= 0:
                raise InvalidInputError(f"Default speed must be positive, got {speed}")

            mission = Mission(name=name, origin=SceneOrigin(geo=origin), default_speed=float(speed))
            with self._lock:
                self.missions[mission.mission_id] = mission
            self.mission_created.emit(mission.mission_id, mission_to_dict(mission))
            self.logger.info(f"Mission created: {name} ({mission.mission_id})")
            return PlanningResult.success(mission)

        except PlanningError as e:
            self.logger.error(f"Failed to create mission {name}: {e}")
            return PlanningResult.failure(e)

    def add_reference_point(self, mission_id: str, name: str, position: LocalPoint) -> PlanningResult:
        try:
            if not position.is_finite():
                raise InvalidInputError(f"Reference point {name} has non-finite coordinates")

            def change(mission):
                point = ReferencePoint(name=name, position=position, origin_id=mission.origin.id)
                return replace(mission, reference_points=mission.reference_points + (point,),
                               updated_at=utc_now())

            mission = self._update(mission_id, change)
            self.logger.info(f"Reference point {name} added to mission {mission_id}")
            return PlanningResult.success(mission.reference_points[-1])

        except PlanningError as e:
            self.logger.error(f"Failed to add reference point to mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def add_scene_object(self, mission_id: str, object_type: str, position: LocalPoint,
                         width: float = 0.0, length: float = 0.0, height: float = 0.0,
                         name: str = "") -> PlanningResult:
        try:
            if not position.is_finite():
                raise InvalidInputError(f"Scene object {name or object_type} has non-finite coordinates")

            def change(mission):
                obj = SceneObject(object_type=object_type, position=position, origin_id=mission.origin.id,
                                  width=width, length=length, height=height, name=name)
                return replace(mission, scene_objects=mission.scene_objects + (obj,), updated_at=utc_now())

            mission = self._update(mission_id, change)
            self.logger.info(f"Scene object {object_type} added to mission {mission_id}")
            return PlanningResult.success(mission.scene_objects[-1])

        except PlanningError as e:
            self.logger.error(f"Failed to add scene object to mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    # Frames

    def rebase_origin(self, mission_id: str, new_origin: GeoPoint) -> PlanningResult:
        """Move the mission origin; all owned points shift together or not at all."""
        try:
            mission = self._update(
                mission_id,
                lambda m: coordinates.rebase_origin(m, SceneOrigin(geo=new_origin), self.earth_radius),
            )
            self.origin_rebased.emit(mission_id, mission.origin.id)
            return PlanningResult.success(mission)

        except PlanningError as e:
            self.logger.error(f"Failed to rebase mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def fix_takeoff_point(self, mission_id: str, takeoff: LocalPoint) -> PlanningResult:
        try:
            with self._lock:
                first_fix = mission_id in self.missions and self.missions[mission_id].takeoff_point is None
            mission = self._update(
                mission_id,
                lambda m: coordinates.fix_takeoff_point(m, takeoff, self.ground_clearance, self.earth_radius),
            )
            if first_fix:
                self.origin_rebased.emit(mission_id, mission.origin.id)
            return PlanningResult.success(mission)

        except PlanningError as e:
            self.logger.error(f"Failed to fix takeoff point for mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def geo_to_local(self, mission_id: str, geo: GeoPoint) -> PlanningResult:
        """LocalPoint of ``geo`` against the mission's active origin."""
        try:
            mission = self._get(mission_id)
            return PlanningResult.success(coordinates.geo_to_local(geo, mission.origin, self.earth_radius))

        except PlanningError as e:
            self.logger.error(f"Failed to convert geodetic point for mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def local_to_geo(self, mission_id: str, local: LocalPoint, origin_id: str = None) -> PlanningResult:
        """GeoPoint of ``local``; ``origin_id`` is the stamp the point was taken under."""
        try:
            mission = self._get(mission_id)
            if origin_id is not None and origin_id != mission.origin.id:
                raise StaleOriginError(f"Point stamped with origin {origin_id}, active origin is {mission.origin.id}")
            return PlanningResult.success(coordinates.local_to_geo(local, mission.origin, self.earth_radius))

        except PlanningError as e:
            self.logger.error(f"Failed to convert local point for mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    # Optics

    def _hardware(self, camera_id: str, lens_id: str):
        camera = hardware.get_camera(camera_id)
        lens = hardware.get_lens(lens_id)
        if camera is None:
            raise InvalidInputError(f"Unknown camera {camera_id}")
        if lens is None:
            raise InvalidInputError(f"Unknown lens {lens_id}")
        return camera, lens

    def _focal_length(self, lens, focal_length: float = None, zoom_position: float = None) -> float:
        if focal_length is not None:
            return focal_length
        if zoom_position is None:
            zoom_position = self.zoom_position
        return optics.effective_focal_length(lens, zoom_position)

    def solve_optics(self, camera_id: str, lens_id: str, aperture: float, focus_distance: float,
                     focal_length: float = None, zoom_position: float = None) -> PlanningResult:
        """FOV, footprint, GSD and depth of field for a camera/lens pair at ``focus_distance``."""
        try:
            camera, lens = self._hardware(camera_id, lens_id)
            solution = optics.solve(camera, lens, aperture, focus_distance,
                                    focal_length=self._focal_length(lens, focal_length, zoom_position))
            return PlanningResult.success(solution)

        except PlanningError as e:
            self.logger.error(f"Failed to solve optics for {camera_id} / {lens_id}: {e}")
            return PlanningResult.failure(e)

    def standoff_for_gsd(self, camera_id: str, lens_id: str, target_gsd: float,
                         focal_length: float = None, zoom_position: float = None) -> PlanningResult:
        """Distance from the surface at which the camera resolves ``target_gsd`` m/px."""
        try:
            camera, lens = self._hardware(camera_id, lens_id)
            distance = optics.distance_for_target_gsd(
                target_gsd, self._focal_length(lens, focal_length, zoom_position),
                camera.sensor_width, camera.image_width,
            )
            return PlanningResult.success(distance)

        except PlanningError as e:
            self.logger.error(f"Failed to compute standoff for {camera_id} / {lens_id}: {e}")
            return PlanningResult.failure(e)

    def depth_of_field(self, camera_id: str, lens_id: str, aperture: float, focus_distance: float,
                       focal_length: float = None, zoom_position: float = None) -> PlanningResult:
        try:
            camera, lens = self._hardware(camera_id, lens_id)
            dof = optics.depth_of_field(self._focal_length(lens, focal_length, zoom_position),
                                        aperture, focus_distance,
                                        sensor_type=camera.sensor_type, sensor_width=camera.sensor_width)
            return PlanningResult.success(dof)

        except PlanningError as e:
            self.logger.error(f"Failed to compute depth of field for {camera_id} / {lens_id}: {e}")
            return PlanningResult.failure(e)

    # Faces and areas

    def register_mesh(self, snapshot: MeshSnapshot, background: bool = True) -> PlanningResult:
        """Track a mesh and start building its acceleration structure."""
        try:
            state = self.face_detector.ensure_acceleration_structure(snapshot, background=background)
            return PlanningResult.success(state)

        except PlanningError as e:
            self.logger.error(f"Failed to register mesh {snapshot.object_id}: {e}")
            return PlanningResult.failure(e)

    def query_face(self, ray: Ray, candidate_meshes: List[MeshSnapshot], wait: bool = False,
                   timeout: float = None) -> PlanningResult:
        """FaceSelection under the ray; a miss is a success with value None."""
        try:
            return PlanningResult.success(
                self.face_detector.query_face(ray, candidate_meshes, wait=wait, timeout=timeout)
            )

        except PlanningError as e:
            if e.retryable:
                self.logger.warning(f"Face query deferred: {e}")
            else:
                self.logger.error(f"Face query failed: {e}")
            return PlanningResult.failure(e)

    def promote_face(self, mission_id: str, selection: FaceSelection, offset_distance: float = None,
                     name: str = None) -> PlanningResult:
        """Confirm a face selection as a MissionArea of ``mission_id``."""
        try:
            def change(mission):
                area = self.area_builder.promote(selection, offset_distance, mission.origin.id, name)
                return mission.with_area(area)

            mission = self._update(mission_id, change)
            area = mission.mission_areas[-1]
            self.mission_area_created.emit(mission_id, {
                'area_id': area.id,
                'name': area.name,
                'source_face_id': area.source_face_id,
                'area_m2': area.area,
            })
            return PlanningResult.success(area)

        except PlanningError as e:
            self.logger.error(f"Failed to create mission area for mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def delete_mission_area(self, mission_id: str, area_id: str) -> PlanningResult:
        try:
            def change(mission):
                if mission.find_area(area_id) is None:
                    raise InvalidInputError(f"Mission area {area_id} not found")
                return mission.without_area(area_id)

            self._update(mission_id, change)
            self.mission_area_deleted.emit(mission_id, area_id)
            self.logger.info(f"Mission area {area_id} deleted from mission {mission_id}")
            return PlanningResult.success(area_id)

        except PlanningError as e:
            self.logger.error(f"Failed to delete mission area {area_id}: {e}")
            return PlanningResult.failure(e)

    # Paths

    def generate_raster_path(self, mission_id: str, area_id: str, camera_id: str, lens_id: str,
                             target_gsd: float, overlap: float = None,
                             orientation=FlightOrientation.LONG_AXIS, snake_pattern: bool = True,
                             **options) -> PlanningResult:
        """Generate a raster PathSegment over a mission area and add it to the mission."""
        try:
            camera, lens = self._hardware(camera_id, lens_id)
            if overlap is None:
                overlap = self.raster_config.get("default_overlap", 0.7)

            def change(mission):
                area = mission.find_area(area_id)
                if area is None:
                    raise InvalidInputError(f"Mission area {area_id} not found")
                if area.origin_id != mission.origin.id:
                    raise StaleOriginError(f"Mission area {area_id} predates the active origin")
                options.setdefault("speed", mission.default_speed)
                options.setdefault("hold_time", self.raster_config.get("hold_time", 0.0))
                options.setdefault("zoom_position", self.zoom_position)
                segment = generate_raster_path(area, camera, lens, target_gsd, overlap=overlap,
                                               orientation=orientation, snake_pattern=snake_pattern,
                                               **options)
                return mission.with_segment(segment)

            mission = self._update(mission_id, change)
            segment = mission.path_segments[-1]
            summary = dict(path_statistics(segment), segment_id=segment.id, area_id=area_id,
                           rows=segment.metadata.get('rows'), standoff_m=segment.metadata.get('standoff_m'))
            self.path_generated.emit(mission_id, summary)
            return PlanningResult.success(segment)

        except PlanningError as e:
            self.logger.error(f"Failed to generate raster path for mission {mission_id}: {e}")
            return PlanningResult.failure(e)

    def delete_path_segment(self, mission_id: str, segment_id: str) -> PlanningResult:
        try:
            def change(mission):
                if mission.find_segment(segment_id) is None:
                    raise InvalidInputError(f"Path segment {segment_id} not found")
                return mission.without_segment(segment_id)

            self._update(mission_id, change)
            self.logger.info(f"Path segment {segment_id} deleted from mission {mission_id}")
            return PlanningResult.success(segment_id)

        except PlanningError as e:
            self.logger.error(f"Failed to delete path segment {segment_id}: {e}")
            return PlanningResult.failure(e)

    def validate_mission(self, mission_id: str) -> PlanningResult:
        """Validate mission for consistency and flyability."""
        try:
            mission = self._get(mission_id)
            self.logger.info(f"Validating mission: {mission_id}")

            for entity in mission.owned_entities():
                if entity.origin_id != mission.origin.id:
                    raise StaleOriginError(
                        f"{type(entity).__name__} {entity.id} is expressed against a stale origin"
                    )
                if not all(p.is_finite() for p in entity.local_points()):
                    raise ValidationError(f"{type(entity).__name__} {entity.id} has non-finite coordinates")

            if not mission.path_segments:
                raise ValidationError("Mission has no path segments")
            for segment in mission.path_segments:
                if not segment.waypoints:
                    raise ValidationError(f"Path segment {segment.id} has no waypoints")
                if any(wp.speed <= 0 for wp in segment.waypoints):
                    raise ValidationError(f"Path segment {segment.id} has a non-positive waypoint speed")

            self.logger.info(f"Mission {mission_id} validation: PASSED")
            return PlanningResult.success("Mission validation passed")

        except PlanningError as e:
            self.logger.warning(f"Mission {mission_id} validation failed: {e}")
            return PlanningResult.failure(e)

    def calculate_mission_time(self, mission_id: str) -> PlanningResult:
        """Estimate mission duration in minutes."""
        try:
            mission = self._get(mission_id)
            seconds = sum(path_statistics(seg)['duration_s'] for seg in mission.path_segments)
            estimated_time = seconds / 60.0
            self.logger.info(f"Mission {mission_id} estimated time: {estimated_time:.1f} minutes")
            return PlanningResult.success(estimated_time)

        except PlanningError as e:
            self.logger.error(f"Failed to calculate mission time for {mission_id}: {e}")
            return PlanningResult.failure(e)

    # Persistence

    def save_mission(self, mission_id: str, filepath: str) -> PlanningResult:
        """Save mission to file."""
        try:
            mission_dict = mission_to_dict(self._get(mission_id))
            with open(filepath, 'w') as f:
                json.dump(mission_dict, f, indent=2)

            self.mission_saved.emit(mission_id, filepath)
            self.logger.info(f"Mission {mission_id} saved to {filepath}")
            return PlanningResult.success(filepath)

        except PlanningError as e:
            self.logger.error(f"Failed to save mission {mission_id}: {e}")
            return PlanningResult.failure(e)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to save mission {mission_id}: {e}")
            return PlanningResult.failure(InvalidInputError(f"Cannot write {filepath}: {e}"))

    def load_mission(self, filepath: str) -> PlanningResult:
        """Load mission from file; the value is the mission id."""
        try:
            with open(filepath, 'r') as f:
                mission_dict = json.load(f)

            mission = mission_from_dict(mission_dict)
            with self._lock:
                self.missions[mission.mission_id] = mission
            self.mission_loaded.emit(mission.mission_id, mission_dict)
            self.logger.info(f"Mission loaded from {filepath}: {mission.mission_id}")
            return PlanningResult.success(mission.mission_id)

        except (OSError, KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Failed to load mission from {filepath}: {e}")
            return PlanningResult.failure(InvalidInputError(f"Cannot load {filepath}: {e}"))

    def export_waypoints(self, mission_id: str, filepath: str, segment_id: str = None) -> PlanningResult:
        """Write path waypoints as a QGC WPL 110 ``.waypoints`` file.

        Row 0 is the home position (the mission origin). Each waypoint becomes a
        NAV_WAYPOINT item; photo waypoints are followed by a DO_DIGICAM_CONTROL
        item. Returns the number of mission items written.
        """
        try:
            mission = self._get(mission_id)
            segments = mission.path_segments
            if segment_id is not None:
                segments = [s for s in segments if s.id == segment_id]
                if not segments:
                    raise InvalidInputError(f"Path segment {segment_id} not found")
            if not any(seg.waypoints for seg in segments):
                raise ValidationError(f"Mission {mission_id} has no waypoints to export")

            home = mission.origin.geo
            nav = mavutil.mavlink.MAV_CMD_NAV_WAYPOINT
            camera = mavutil.mavlink.MAV_CMD_DO_DIGICAM_CONTROL
            lines = ["QGC WPL 110\n",
                     f"0\t1\t0\t{nav}\t0\t0\t0\t0\t{home.latitude:.8f}\t{home.longitude:.8f}\t{home.altitude:.2f}\t1\n"]

            index = 1
            for segment in segments:
                for wp in segment.waypoints:
                    geo = coordinates.local_to_geo(wp.position, mission.origin, self.earth_radius)
                    frame = _ALTITUDE_FRAMES[wp.altitude_reference]
                    alt = geo.altitude if wp.altitude_reference is AltitudeReference.SEA_LEVEL else wp.position.z
                    # index current frame command p1 p2 p3 p4 lat lon alt autocontinue
                    lines.append(f"{index}\t0\t{frame}\t{nav}\t{wp.hold_time:g}\t0\t0\t0\t"
                                 f"{geo.latitude:.8f}\t{geo.longitude:.8f}\t{alt:.2f}\t1\n")
                    index += 1
                    if wp.camera_action is CameraAction.TAKE_PHOTO:
                        lines.append(f"{index}\t0\t{frame}\t{camera}\t0\t0\t0\t0\t1\t0\t0\t1\n")
                        index += 1

            with open(filepath, 'w') as f:
                f.writelines(lines)

            self.logger.info(f"Mission {mission_id}: {index - 1} mission items exported to {filepath}")
            return PlanningResult.success(index - 1)

        except PlanningError as e:
            self.logger.error(f"Failed to export waypoints for mission {mission_id}: {e}")
            return PlanningResult.failure(e)
        except OSError as e:
            self.logger.error(f"Failed to export waypoints for mission {mission_id}: {e}")
            return PlanningResult.failure(InvalidInputError(f"Cannot write {filepath}: {e}"))
