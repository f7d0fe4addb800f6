# core/mission_area.py

import logging
import math
from typing import Optional, Sequence

import numpy as np

from surveyplan.core.errors import DegenerateGeometryError
from surveyplan.core.face_detector import FaceDetectionTolerances, FaceSelection
from surveyplan.core.mission import LocalPoint, MissionArea

UNIT_NORMAL_TOLERANCE = 1e-6
_PARALLEL_EPS = 1e-9


def newell_normal(vertices) -> np.ndarray:
    """Unnormalised Newell normal of a (possibly non-planar) polygon.

    Its length is twice the polygon area; its direction follows the winding.
    """
    pts = np.asarray(vertices, dtype=float)
    nxt = np.roll(pts, -1, axis=0)
    return np.array([
        np.sum((pts[:, 1] - nxt[:, 1]) * (pts[:, 2] + nxt[:, 2])),
        np.sum((pts[:, 2] - nxt[:, 2]) * (pts[:, 0] + nxt[:, 0])),
        np.sum((pts[:, 0] - nxt[:, 0]) * (pts[:, 1] + nxt[:, 1])),
    ])


def polygon_area(vertices, normal=None) -> float:
    """Area of a planar polygon (shoelace projected onto its plane)."""
    nn = newell_normal(vertices)
    if normal is None:
        return float(np.linalg.norm(nn)) / 2.0
    normal = np.asarray(normal, dtype=float)
    return abs(float(np.dot(nn, normal / np.linalg.norm(normal)))) / 2.0


def plane_basis(normal):
    """Two orthonormal in-plane axes (u, v) with u x v == normal."""
    n = np.asarray(normal, dtype=float)
    n = n / np.linalg.norm(n)
    helper = np.array([0.0, 0.0, 1.0]) if abs(n[2]) < 0.9 else np.array([1.0, 0.0, 0.0])
    u = np.cross(helper, n)
    u /= np.linalg.norm(u)
    v = np.cross(n, u)
    return u, v


def _as_array(vertices) -> np.ndarray:
    return np.array([v.as_array() if isinstance(v, LocalPoint) else v for v in vertices], dtype=float)


def offset_polygon(vertices, normal, distance: float) -> np.ndarray:
    """Offset every edge of a planar polygon by ``distance`` within its plane.

    Positive distances grow the polygon, negative shrink it. Each new vertex is
    the intersection of its two neighbouring offset edge lines; where those
    lines are parallel the vertex is moved along the shared edge normal.
    Vertex count and winding are preserved. Raises DegenerateGeometryError if
    the offset collapses or flips the polygon.
    """
    pts = np.asarray(vertices, dtype=float)
    n = np.asarray(normal, dtype=float)
    count = len(pts)
    if distance == 0:
        return pts.copy()

    winding = 1.0 if np.dot(newell_normal(pts), n) >= 0 else -1.0
    edges = np.roll(pts, -1, axis=0) - pts
    edge_lengths = np.linalg.norm(edges, axis=1)
    if np.any(edge_lengths < _PARALLEL_EPS):
        raise DegenerateGeometryError("Polygon has a zero-length edge")
    directions = edges / edge_lengths[:, None]
    outward = winding * np.cross(directions, n)

    u_axis, v_axis = plane_basis(n)
    result = np.empty_like(pts)
    for j in range(count):
        i = (j - 1) % count
        a = pts[i] + distance * outward[i]
        b = pts[j] + distance * outward[j]
        da, db = directions[i], directions[j]
        # Solve a + s*da == b + t*db in plane coordinates.
        m = np.array([[np.dot(da, u_axis), -np.dot(db, u_axis)],
                      [np.dot(da, v_axis), -np.dot(db, v_axis)]])
        if abs(np.linalg.det(m)) < _PARALLEL_EPS:
            result[j] = b
            continue
        rhs = np.array([np.dot(b - a, u_axis), np.dot(b - a, v_axis)])
        s, _ = np.linalg.solve(m, rhs)
        result[j] = a + s * da

    new_edges = np.roll(result, -1, axis=0) - result
    if np.any(np.einsum('ij,ij->i', new_edges, edges) <= 0):
        raise DegenerateGeometryError(f"Offset of {distance} m flips the polygon")
    if winding * np.dot(newell_normal(result), n) <= 0:
        raise DegenerateGeometryError(f"Offset of {distance} m collapses the polygon")
    return result


class MissionAreaBuilder:
    """Turns a confirmed FaceSelection into a MissionArea."""

    def __init__(self, config: dict = None, tolerances: FaceDetectionTolerances = None):
        self.config = config or {}
        section = self.config.get("mission_area", {}) or {}
        self.min_area = float(section.get("min_area_m2", 0.01))
        self.default_offset = float(section.get("default_offset_m", 0.0))
        self.tolerances = tolerances or FaceDetectionTolerances.from_config(self.config)
        self.logger = logging.getLogger("SURVEYPLAN.MissionAreaBuilder")

    def _validate(self, vertices: np.ndarray, normal: np.ndarray, label: str):
        if len(vertices) < 3:
            raise DegenerateGeometryError(f"{label} has {len(vertices)} vertices, at least 3 are required")
        if not np.all(np.isfinite(vertices)):
            raise DegenerateGeometryError(f"{label} has non-finite vertices")

        length = float(np.linalg.norm(normal))
        if not math.isfinite(length) or abs(length - 1.0) > UNIT_NORMAL_TOLERANCE:
            raise DegenerateGeometryError(f"{label} normal is not unit length (|n| = {length})")

        deviation = np.abs((vertices - vertices[0]) @ normal).max()
        if deviation > self.tolerances.coplanar_point:
            raise DegenerateGeometryError(f"{label} is not planar (deviation {deviation:.4f} m)")

        area = polygon_area(vertices, normal)
        if area < self.min_area:
            raise DegenerateGeometryError(
                f"{label} area {area:.6f} m^2 is below the minimum of {self.min_area} m^2"
            )
        return area

    def build(self, vertices: Sequence[LocalPoint], normal, object_id: str, source_face_id: str,
              origin_id: str, offset_distance: Optional[float] = None,
              name: Optional[str] = None) -> MissionArea:
        """Create a MissionArea from a planar polygon in local ENU."""
        if offset_distance is None:
            offset_distance = self.default_offset
        if not math.isfinite(offset_distance):
            raise DegenerateGeometryError(f"Offset distance must be finite, got {offset_distance}")

        pts = _as_array(vertices)
        n = np.asarray(normal, dtype=float)
        label = f"Face {source_face_id}"
        self._validate(pts, n, label)

        offset_pts = offset_polygon(pts, n, offset_distance)
        area = polygon_area(offset_pts, n)
        if area < self.min_area:
            raise DegenerateGeometryError(
                f"Offset of {offset_distance} m leaves {area:.6f} m^2, below the minimum of {self.min_area} m^2"
            )

        mission_area = MissionArea(
            name=name or f"Area {source_face_id}",
            object_id=object_id,
            source_face_id=source_face_id,
            normal=tuple(float(c) for c in n),
            vertices=tuple(LocalPoint.from_array(p) for p in pts),
            offset_vertices=tuple(LocalPoint.from_array(p) for p in offset_pts),
            area=area,
            origin_id=origin_id,
            offset_distance=offset_distance,
        )
        self.logger.info(
            f"Mission area '{mission_area.name}' created from {source_face_id}: "
            f"{len(pts)} vertices, {area:.2f} m^2, offset {offset_distance} m"
        )
        return mission_area

    def promote(self, selection: FaceSelection, offset_distance: Optional[float] = None,
                origin_id: str = "", name: Optional[str] = None) -> MissionArea:
        """Persistable MissionArea for a confirmed face selection."""
        return self.build(
            vertices=selection.vertices,
            normal=selection.normal,
            object_id=selection.object_id,
            source_face_id=selection.face_id,
            origin_id=origin_id,
            offset_distance=offset_distance,
            name=name,
        )


def promote(selection: FaceSelection, offset_distance: float, origin_id: str,
            name: Optional[str] = None, config: dict = None) -> MissionArea:
    return MissionAreaBuilder(config).promote(selection, offset_distance, origin_id, name)
