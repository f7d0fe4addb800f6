# core/coordinates.py

"""Conversions between the three frames the planner works in.

* geodetic  - WGS84 latitude / longitude / altitude (GeoPoint)
* local     - East-North-Up meters around the mission SceneOrigin (LocalPoint)
* scene     - the renderer's Y-up frame: x = east, y = up, z = -north

The geodetic <-> local projection is a flat-earth (equirectangular) tangent
plane. It is accurate to well under a centimetre of round-trip error for the
few-kilometre spans a single inspection mission covers and makes no attempt at
high-latitude or long-distance correction.
"""

import logging
import math
from dataclasses import replace
from typing import Iterable

import numpy as np

from surveyplan.core.errors import InvalidInputError, StaleOriginError
from surveyplan.core.mission import GeoPoint, LocalPoint, Mission, SceneOrigin, utc_now

EARTH_RADIUS_M = 6378137.0
FEET_TO_METERS = 0.3048
DEFAULT_GROUND_CLEARANCE_M = 16 * FEET_TO_METERS

logger = logging.getLogger("SURVEYPLAN.Coordinates")


def _require_finite(*values):
    for value in values:
        if value is None or not math.isfinite(value):
            raise InvalidInputError(f"Coordinate value must be finite, got {value}")


def geo_to_local(geo: GeoPoint, origin: SceneOrigin, earth_radius: float = EARTH_RADIUS_M) -> LocalPoint:
    """Project a geodetic point onto the tangent plane around ``origin``."""
    _require_finite(geo.latitude, geo.longitude, geo.altitude)
    ref = origin.geo
    ref_lat_rad = math.radians(ref.latitude)

    x = earth_radius * math.radians(geo.longitude - ref.longitude) * math.cos(ref_lat_rad)
    y = earth_radius * math.radians(geo.latitude - ref.latitude)
    z = geo.altitude - ref.altitude
    return LocalPoint(x, y, z)


def local_to_geo(local: LocalPoint, origin: SceneOrigin, earth_radius: float = EARTH_RADIUS_M) -> GeoPoint:
    """Exact inverse of geo_to_local."""
    _require_finite(local.x, local.y, local.z)
    ref = origin.geo
    ref_lat_rad = math.radians(ref.latitude)

    latitude = ref.latitude + math.degrees(local.y / earth_radius)
    longitude = ref.longitude + math.degrees(local.x / (earth_radius * math.cos(ref_lat_rad)))
    altitude = ref.altitude + local.z
    return GeoPoint(latitude, longitude, altitude)


def local_to_scene(local: LocalPoint) -> np.ndarray:
    """ENU (x east, y north, z up) -> scene (x east, y up, z south)."""
    return np.array([local.x, local.z, -local.y], dtype=float)


def scene_to_local(scene) -> LocalPoint:
    """Scene (x east, y up, z south) -> ENU."""
    return LocalPoint(float(scene[0]), float(-scene[2]), float(scene[1]))


def scene_vector_to_local(vector) -> np.ndarray:
    """Same axis mapping as scene_to_local, for direction vectors."""
    return np.array([vector[0], -vector[2], vector[1]], dtype=float)


def local_distance(a: LocalPoint, b: LocalPoint) -> float:
    return math.sqrt((b.x - a.x) ** 2 + (b.y - a.y) ** 2 + (b.z - a.z) ** 2)


def haversine_distance(a: GeoPoint, b: GeoPoint, earth_radius: float = EARTH_RADIUS_M) -> float:
    """Great-circle distance between two GeoPoints in meters."""
    lat1_rad = math.radians(a.latitude)
    lat2_rad = math.radians(b.latitude)
    delta_lat = math.radians(b.latitude - a.latitude)
    delta_lon = math.radians(b.longitude - a.longitude)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2)
    return earth_radius * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _check_origin_stamps(mission: Mission, entities: Iterable):
    active = mission.origin.id
    for entity in entities:
        if entity.origin_id != active:
            raise StaleOriginError(
                f"{type(entity).__name__} {entity.id} is expressed against origin "
                f"{entity.origin_id}, mission origin is {active}"
            )
        for point in entity.local_points():
            if not point.is_finite():
                raise StaleOriginError(
                    f"{type(entity).__name__} {entity.id} holds an unresolvable point {point}"
                )


def _shift_mission(mission: Mission, offset, new_origin: SceneOrigin, takeoff_point) -> Mission:
    entities = mission.owned_entities()
    _check_origin_stamps(mission, entities)

    new_id = new_origin.id
    return replace(
        mission,
        origin=new_origin,
        takeoff_point=takeoff_point,
        reference_points=tuple(rp.translated(offset, new_id) for rp in mission.reference_points),
        scene_objects=tuple(obj.translated(offset, new_id) for obj in mission.scene_objects),
        mission_areas=tuple(area.translated(offset, new_id) for area in mission.mission_areas),
        path_segments=tuple(seg.translated(offset, new_id) for seg in mission.path_segments),
        updated_at=utc_now(),
    )


def rebase_origin(mission: Mission, new_origin: SceneOrigin,
                  earth_radius: float = EARTH_RADIUS_M) -> Mission:
    """Return a copy of ``mission`` expressed against ``new_origin``.

    The new origin's position in the current frame (``delta``) is subtracted
    from every owned LocalPoint. The input mission is never modified; any
    failure raises before a new mission is produced.
    """
    if new_origin.id == mission.origin.id:
        raise InvalidInputError("New origin must carry a fresh id")

    delta = geo_to_local(new_origin.geo, mission.origin, earth_radius)
    offset = (-delta.x, -delta.y, -delta.z)

    takeoff = mission.takeoff_point
    if takeoff is not None:
        takeoff = takeoff.translated(*offset)

    rebased = _shift_mission(mission, offset, new_origin, takeoff)
    logger.info(
        f"Mission {mission.mission_id} rebased onto origin {new_origin.id} "
        f"(shift {offset[0]:.3f}, {offset[1]:.3f}, {offset[2]:.3f})"
    )
    return rebased


def fix_takeoff_point(mission: Mission, takeoff: LocalPoint,
                      ground_clearance: float = DEFAULT_GROUND_CLEARANCE_M,
                      earth_radius: float = EARTH_RADIUS_M) -> Mission:
    """Record a takeoff point; the first one becomes the mission origin.

    On the first fix the point is raised by ``ground_clearance``, the origin is
    moved onto it and the takeoff point itself becomes exactly (0, 0, 0).
    Later fixes only store the point.
    """
    _require_finite(takeoff.x, takeoff.y, takeoff.z, ground_clearance)

    if mission.takeoff_point is not None:
        logger.info(f"Mission {mission.mission_id}: additional takeoff point recorded at {takeoff}")
        return replace(mission, takeoff_point=takeoff, updated_at=utc_now())

    anchor = takeoff.translated(0.0, 0.0, ground_clearance)
    anchor_geo = local_to_geo(anchor, mission.origin, earth_radius)
    new_origin = SceneOrigin(geo=anchor_geo, takeoff_anchored=True)

    offset = (-anchor.x, -anchor.y, -anchor.z)
    rebased = _shift_mission(mission, offset, new_origin, LocalPoint(0.0, 0.0, 0.0))
    logger.info(
        f"Mission {mission.mission_id}: first takeoff point fixed, origin moved to "
        f"({anchor_geo.latitude:.7f}, {anchor_geo.longitude:.7f}, {anchor_geo.altitude:.2f})"
    )
    return rebased
