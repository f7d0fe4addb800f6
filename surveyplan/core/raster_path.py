# core/raster_path.py

"""Lawn-mower coverage of a planar mission area.

The area polygon is flattened into (along, across) plane coordinates, where
"along" is the flight direction of each row. Rows are stacked across the
polygon from edge to edge, cut against the polygon outline, and lifted back
into local ENU at the optical standoff distance along the area normal.
"""

import logging
import math
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from surveyplan.core import optics
from surveyplan.core.errors import InvalidInputError, ValidationError
from surveyplan.core.hardware import CameraProfile, LensProfile
from surveyplan.core.mission import (
    CameraAction,
    LocalPoint,
    MissionArea,
    PathSegment,
    PathType,
    Waypoint,
)
from surveyplan.core.mission_area import newell_normal

logger = logging.getLogger("SURVEYPLAN.RasterPath")

_EDGE_EPS = 1e-9


class FlightOrientation(Enum):
    LONG_AXIS = "long_axis"
    SHORT_AXIS = "short_axis"


def reference_axes(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """In-plane axes used for explicit angles: east projected onto the plane
    (north when the plane faces east or west) and its left-hand perpendicular."""
    for candidate in (np.array([1.0, 0.0, 0.0]), np.array([0.0, 1.0, 0.0])):
        projected = candidate - np.dot(candidate, normal) * normal
        length = np.linalg.norm(projected)
        if length > 0.1:
            u = projected / length
            return u, np.cross(normal, u)
    raise ValidationError("Cannot derive in-plane axes for the area normal")


def _principal_axis(points_2d: np.ndarray, long_axis: bool) -> np.ndarray:
    centred = points_2d - points_2d.mean(axis=0)
    covariance = centred.T @ centred
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    axis = eigenvectors[:, 1] if long_axis else eigenvectors[:, 0]
    # Fixed sign so the same polygon always yields the same direction.
    if axis[int(np.argmax(np.abs(axis)))] < 0:
        axis = -axis
    return axis


def flight_axes(vertices: np.ndarray, normal: np.ndarray,
                orientation: Union[FlightOrientation, float]) -> Tuple[np.ndarray, np.ndarray]:
    """(along, across) unit vectors in the plane of the polygon."""
    u, v = reference_axes(normal)
    if isinstance(orientation, FlightOrientation):
        rel = vertices - vertices[0]
        points_2d = np.column_stack((rel @ u, rel @ v))
        a2d = _principal_axis(points_2d, orientation is FlightOrientation.LONG_AXIS)
        along = a2d[0] * u + a2d[1] * v
    else:
        angle = math.radians(float(orientation))
        along = math.cos(angle) * u + math.sin(angle) * v
    along = along / np.linalg.norm(along)
    return along, np.cross(normal, along)


def _row_extent(points_2d: np.ndarray, b: float) -> Optional[Tuple[float, float]]:
    """Min/max 'along' coordinate where the line across == b meets the polygon."""
    hits = []
    count = len(points_2d)
    for i in range(count):
        a1, b1 = points_2d[i]
        a2, b2 = points_2d[(i + 1) % count]
        if min(b1, b2) - _EDGE_EPS > b or max(b1, b2) + _EDGE_EPS < b:
            continue
        if abs(b2 - b1) < _EDGE_EPS:
            hits.extend((a1, a2))
        else:
            t = min(1.0, max(0.0, (b - b1) / (b2 - b1)))
            hits.append(a1 + t * (a2 - a1))
    if not hits:
        return None
    return min(hits), max(hits)


def row_count(span: float, row_spacing: float, footprint_height: float) -> int:
    """Rows needed to cover ``span`` with the first and last row on its edges.

    ceil(span / row_spacing), raised only when the resulting spacing would
    leave a gap wider than one footprint.
    """
    if span <= _EDGE_EPS:
        return 1
    return max(math.ceil(span / row_spacing), math.ceil(span / footprint_height) + 1)


def _row_samples(start: float, end: float, interval: float) -> List[float]:
    """Evenly spaced capture points no more than ``interval`` apart, endpoints included."""
    length = end - start
    if length <= _EDGE_EPS:
        return [start]
    segments = max(1, math.ceil(length / interval - 1e-9))
    return [start + length * k / segments for k in range(segments + 1)]


def _polygon_input(area_or_polygon, normal, origin_id):
    if isinstance(area_or_polygon, MissionArea):
        area = area_or_polygon
        vertices = area.offset_vertices or area.vertices
        return (np.array([p.as_array() for p in vertices], dtype=float),
                np.asarray(area.normal, dtype=float), area.origin_id, area.id)

    points = [p.as_array() if isinstance(p, LocalPoint) else p for p in area_or_polygon]
    vertices = np.array(points, dtype=float).reshape(-1, 3) if points else np.zeros((0, 3))
    if normal is None and len(vertices) >= 3:
        normal = newell_normal(vertices)
        length = np.linalg.norm(normal)
        normal = normal / length if length > 0 else normal
    return vertices, (None if normal is None else np.asarray(normal, dtype=float)), origin_id, None


def generate_raster_path(area_or_polygon: Union[MissionArea, Sequence[LocalPoint]],
                         camera: CameraProfile, lens: LensProfile, target_gsd: float,
                         overlap: float = 0.7,
                         orientation: Union[FlightOrientation, float] = FlightOrientation.LONG_AXIS,
                         snake_pattern: bool = True,
                         along_track_overlap: Optional[float] = None,
                         speed: float = 5.0, hold_time: float = 0.0,
                         focal_length: Optional[float] = None, zoom_position: float = 0.5,
                         normal=None, origin_id: str = "") -> PathSegment:
    """Raster scan of a planar area at the standoff that yields ``target_gsd``.

    ``overlap`` is the cross-track (side) overlap between rows;
    ``along_track_overlap`` defaults to the same value. Every precondition is
    checked before the first waypoint is produced.
    """
    vertices, normal, origin_id, area_id = _polygon_input(area_or_polygon, normal, origin_id)
    if along_track_overlap is None:
        along_track_overlap = overlap

    if len(vertices) < 3:
        raise ValidationError(f"Raster area needs at least 3 vertices, got {len(vertices)}")
    if not np.all(np.isfinite(vertices)):
        raise ValidationError("Raster area has non-finite vertices")
    if normal is None or not np.all(np.isfinite(normal)) or abs(np.linalg.norm(normal) - 1.0) > 1e-6:
        raise ValidationError("Raster area normal must be a finite unit vector")
    for name, value in (("overlap", overlap), ("along_track_overlap", along_track_overlap)):
        if value is None or not math.isfinite(value) or not 0.0 <= value < 1.0:
            raise ValidationError(f"{name} must be within [0, 1), got {value}")
    if not math.isfinite(speed) or speed <= 0:
        raise ValidationError(f"speed must be positive, got {speed}")

    try:
        if focal_length is None:
            focal_length = optics.effective_focal_length(lens, zoom_position)
        standoff = optics.distance_for_target_gsd(target_gsd, focal_length,
                                                  camera.sensor_width, camera.image_width)
    except InvalidInputError as e:
        raise ValidationError(f"Cannot derive standoff distance: {e}") from e
    if not math.isfinite(standoff) or standoff <= 0:
        raise ValidationError(f"Standoff distance must be positive and finite, got {standoff}")

    fp = optics.footprint(focal_length, camera.sensor_width, camera.sensor_height,
                          camera.image_width, camera.image_height, standoff)
    capture_interval, row_spacing = optics.overlap_spacing(fp, along_track_overlap, overlap)
    if not (math.isfinite(row_spacing) and row_spacing > 0 and capture_interval > 0):
        raise ValidationError(f"Row spacing must be positive, got {row_spacing}")

    along, across = flight_axes(vertices, normal, orientation)
    base = vertices[0]
    rel = vertices - base
    points_2d = np.column_stack((rel @ along, rel @ across))
    b_min, b_max = float(points_2d[:, 1].min()), float(points_2d[:, 1].max())
    span = b_max - b_min

    rows = row_count(span, row_spacing, fp.height)
    if rows == 1:
        row_positions = [(b_min + b_max) / 2.0]
    else:
        step = span / (rows - 1)
        row_positions = [b_min + i * step for i in range(rows - 1)] + [b_max]

    lift = normal * standoff

    def to_local(a: float, b: float) -> LocalPoint:
        return LocalPoint.from_array(base + a * along + b * across + lift)

    passes = []
    for b in row_positions:
        extent = _row_extent(points_2d, b)
        if extent is not None:
            passes.append((b, extent))

    waypoints: List[Waypoint] = []
    for i, (b, (a_start, a_end)) in enumerate(passes):
        samples = _row_samples(a_start, a_end, capture_interval)
        if snake_pattern and i % 2 == 1:
            samples = samples[::-1]
        elif not snake_pattern and i > 0:
            # Return leg from the end of the previous row.
            waypoints.append(Waypoint(position=to_local(a_start, passes[i - 1][0]),
                                      camera_action=CameraAction.NONE,
                                      speed=speed, hold_time=0.0))
        for a in samples:
            waypoints.append(Waypoint(position=to_local(a, b),
                                      camera_action=CameraAction.TAKE_PHOTO,
                                      speed=speed, hold_time=hold_time))

    metadata = {
        'area_id': area_id,
        'camera_id': camera.id,
        'lens_id': lens.id,
        'focal_length_mm': focal_length,
        'target_gsd_m': target_gsd,
        'standoff_m': standoff,
        'footprint_width_m': fp.width,
        'footprint_height_m': fp.height,
        'overlap': overlap,
        'along_track_overlap': along_track_overlap,
        'row_spacing_m': row_spacing,
        'effective_row_spacing_m': span / (rows - 1) if rows > 1 else 0.0,
        'capture_interval_m': capture_interval,
        'rows': len(passes),
        'snake_pattern': snake_pattern,
        'orientation': orientation.value if isinstance(orientation, FlightOrientation) else float(orientation),
        'flight_direction': [float(c) for c in along],
    }
    segment = PathSegment(path_type=PathType.RASTER, waypoints=tuple(waypoints),
                          origin_id=origin_id, metadata=metadata)
    logger.info(
        f"Raster path generated: {len(passes)} rows, {len(waypoints)} waypoints, "
        f"standoff {standoff:.2f} m, row spacing {row_spacing:.3f} m"
    )
    return segment


def path_statistics(segment: PathSegment) -> dict:
    """Length, photo count and flight duration of a path segment."""
    length = 0.0
    duration = 0.0
    previous = None
    for wp in segment.waypoints:
        if previous is not None:
            leg = float(np.linalg.norm(wp.position.as_array() - previous.position.as_array()))
            length += leg
            duration += leg / wp.speed if wp.speed > 0 else 0.0
        duration += wp.hold_time
        previous = wp
    return {
        'waypoint_count': len(segment.waypoints),
        'photo_count': sum(1 for wp in segment.waypoints if wp.camera_action is CameraAction.TAKE_PHOTO),
        'length_m': length,
        'duration_s': duration,
    }
