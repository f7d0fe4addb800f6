# core/face_detector.py

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from surveyplan.core.bvh import BoundingVolumeHierarchy, RayHit
from surveyplan.core.coordinates import scene_to_local, scene_vector_to_local
from surveyplan.core.errors import (
    AccelerationStructureUnavailable,
    DegenerateGeometryError,
    InvalidInputError,
)
from surveyplan.core.mission import LocalPoint

# |e1 x e2| relative to the squared longest edge; below this a triangle is a sliver.
SLIVER_RATIO = 1e-8


class AccelerationState(Enum):
    UNBUILT = "unbuilt"
    BUILDING = "building"
    READY = "ready"


class FaceStrategy(Enum):
    AXIS_ALIGNED_BOX = "axis_aligned_box"
    GENERAL_MESH = "general_mesh"


@dataclass(frozen=True)
class FaceDetectionTolerances:
    """Numeric tolerances used by face reconstruction."""
    normal_length: float = 0.0005       # min length of the unit or averaged face normal
    axis_alignment: float = 0.75        # min |component| of a unit normal to snap to an axis
    normal_average_radius: float = 0.1  # m, centroid radius for normal averaging
    coplanar_point: float = 0.02        # m
    tie_distance: float = 1e-9          # m, equal-distance hits across meshes
    leaf_size: int = 8

    @classmethod
    def from_config(cls, config: dict) -> "FaceDetectionTolerances":
        section = config.get("face_detection", {}) or {}
        defaults = cls()
        return cls(
            normal_length=float(section.get("normal_length_tolerance", defaults.normal_length)),
            axis_alignment=float(section.get("axis_alignment_tolerance", defaults.axis_alignment)),
            normal_average_radius=float(section.get("normal_average_radius", defaults.normal_average_radius)),
            coplanar_point=float(section.get("coplanar_point_tolerance", defaults.coplanar_point)),
            tie_distance=float(section.get("tie_distance_tolerance", defaults.tie_distance)),
            leaf_size=int(section.get("bvh_leaf_size", defaults.leaf_size)),
        )


@dataclass(frozen=True, eq=False)
class MeshSnapshot:
    """Read-only copy of a mesh owned by the rendering side.

    Geometry is in the mesh's local frame; ``world_transform`` maps it into
    scene space. Any change of vertices, indices or transform must come with a
    new ``version``.
    """
    object_id: str
    vertices: np.ndarray
    indices: Optional[np.ndarray]
    world_transform: np.ndarray
    version: int = 0

    @classmethod
    def create(cls, object_id: str, vertices, indices=None, world_transform=None, version: int = 0):
        verts = np.array(vertices, dtype=float).reshape(-1, 3)
        if not np.all(np.isfinite(verts)):
            raise InvalidInputError(f"Mesh {object_id} has non-finite vertices")

        if indices is None:
            if len(verts) == 0 or len(verts) % 3:
                raise InvalidInputError(f"Non-indexed mesh {object_id} needs a multiple of 3 vertices")
            idx = None
        else:
            idx = np.array(indices, dtype=int).reshape(-1)
            if len(idx) == 0 or len(idx) % 3:
                raise InvalidInputError(f"Mesh {object_id} index buffer length must be a multiple of 3")
            if idx.min() < 0 or idx.max() >= len(verts):
                raise InvalidInputError(f"Mesh {object_id} index buffer references missing vertices")
            idx = idx.reshape(-1, 3)
            idx.setflags(write=False)

        matrix = np.eye(4) if world_transform is None else np.array(world_transform, dtype=float)
        if matrix.shape != (4, 4) or not np.all(np.isfinite(matrix)):
            raise InvalidInputError(f"Mesh {object_id} world transform must be a finite 4x4 matrix")
        if abs(np.linalg.det(matrix[:3, :3])) < 1e-12:
            raise InvalidInputError(f"Mesh {object_id} world transform is singular")

        verts.setflags(write=False)
        matrix.setflags(write=False)
        return cls(object_id=object_id, vertices=verts, indices=idx, world_transform=matrix, version=version)

    def local_triangles(self) -> np.ndarray:
        if self.indices is None:
            return self.vertices.reshape(-1, 3, 3)
        return self.vertices[self.indices]


@dataclass(frozen=True)
class Ray:
    """Scene-space ray with a unit direction."""
    origin: Tuple[float, float, float]
    direction: Tuple[float, float, float]

    @classmethod
    def create(cls, origin, direction) -> "Ray":
        o = np.array(origin, dtype=float).reshape(3)
        d = np.array(direction, dtype=float).reshape(3)
        length = float(np.linalg.norm(d))
        if not (np.all(np.isfinite(o)) and np.all(np.isfinite(d))) or length < 1e-12:
            raise InvalidInputError("Ray needs a finite origin and a non-zero direction")
        d = d / length
        return cls(origin=tuple(float(c) for c in o), direction=tuple(float(c) for c in d))


@dataclass(frozen=True)
class FaceSelection:
    """Face picked by a ray. Geometry is expressed in local ENU."""
    object_id: str
    face_id: str
    face_index: int
    strategy: FaceStrategy
    ray_origin: Tuple[float, float, float]
    ray_direction: Tuple[float, float, float]
    hit_point: LocalPoint
    distance: float
    normal: Tuple[float, float, float]
    vertices: Tuple[LocalPoint, ...]
    area: float


class MeshAccelerationStructure:
    """World-space triangle data plus BVH for one mesh snapshot."""

    def __init__(self, snapshot: MeshSnapshot, leaf_size: int = 8):
        self.object_id = snapshot.object_id
        self.version = snapshot.version
        self.transform = snapshot.world_transform
        self.linear = self.transform[:3, :3]
        self.normal_matrix = np.linalg.inv(self.linear).T

        local = snapshot.local_triangles()
        self.local_min = local.reshape(-1, 3).min(axis=0)
        self.local_max = local.reshape(-1, 3).max(axis=0)

        self.triangles = local @ self.linear.T + self.transform[:3, 3]
        edges_1 = self.triangles[:, 1] - self.triangles[:, 0]
        edges_2 = self.triangles[:, 2] - self.triangles[:, 0]
        self.raw_normals = np.cross(edges_1, edges_2)
        lengths = np.linalg.norm(self.raw_normals, axis=1)
        edges_3 = self.triangles[:, 2] - self.triangles[:, 1]
        longest = np.max(np.stack([
            np.einsum('ij,ij->i', e, e) for e in (edges_1, edges_2, edges_3)
        ]), axis=0)
        self.valid_normals = np.isfinite(lengths) & (lengths > 0.0) & (lengths > SLIVER_RATIO * longest)
        self.unit_normals = np.zeros_like(self.raw_normals)
        self.unit_normals[self.valid_normals] = (
            self.raw_normals[self.valid_normals] / lengths[self.valid_normals, None]
        )
        self.bvh = BoundingVolumeHierarchy(self.triangles, leaf_size=leaf_size)

    def to_world(self, points: np.ndarray) -> np.ndarray:
        return points @ self.linear.T + self.transform[:3, 3]


@dataclass
class _MeshEntry:
    snapshot: MeshSnapshot
    state: AccelerationState = AccelerationState.UNBUILT
    structure: Optional[MeshAccelerationStructure] = None
    generation: int = 0
    build_error: Optional[Exception] = None
    worker: Optional[threading.Thread] = field(default=None, repr=False)


class SurfaceFaceDetector:
    """Ray-based face picking over per-mesh BVHs.

    Each registered mesh moves through UNBUILT -> BUILDING -> READY. A new
    snapshot version sends it back to UNBUILT and any build still running for
    the old version is discarded when it finishes.
    """

    def __init__(self, config: dict = None, tolerances: FaceDetectionTolerances = None):
        self.config = config or {}
        self.tolerances = tolerances or FaceDetectionTolerances.from_config(self.config)
        self._entries: Dict[str, _MeshEntry] = {}
        self._cond = threading.Condition()
        self.logger = logging.getLogger("SURVEYPLAN.FaceDetector")
        self.logger.info("Surface face detector initialized")

    # Mesh registry

    def register_mesh(self, snapshot: MeshSnapshot) -> AccelerationState:
        """Track ``snapshot``; a new version invalidates the current structure."""
        with self._cond:
            entry = self._entries.get(snapshot.object_id)
            if entry is None:
                self._entries[snapshot.object_id] = _MeshEntry(snapshot=snapshot)
                self.logger.debug(f"Mesh {snapshot.object_id} registered (version {snapshot.version})")
                return AccelerationState.UNBUILT

            if entry.snapshot.version != snapshot.version:
                previous = entry.state
                entry.snapshot = snapshot
                entry.state = AccelerationState.UNBUILT
                entry.structure = None
                entry.build_error = None
                entry.generation += 1
                self._cond.notify_all()
                self.logger.info(
                    f"Mesh {snapshot.object_id} geometry changed to version {snapshot.version}, "
                    f"structure invalidated (was {previous.value})"
                )
            return entry.state

    update_mesh = register_mesh

    def remove_mesh(self, object_id: str) -> bool:
        with self._cond:
            entry = self._entries.pop(object_id, None)
            if entry is None:
                return False
            entry.generation += 1
            self._cond.notify_all()
        self.logger.debug(f"Mesh {object_id} removed")
        return True

    def state(self, object_id: str) -> Optional[AccelerationState]:
        with self._cond:
            entry = self._entries.get(object_id)
            return entry.state if entry else None

    # Building

    def _begin_build(self, entry: _MeshEntry) -> int:
        entry.state = AccelerationState.BUILDING
        entry.build_error = None
        return entry.generation

    def _finish_build(self, object_id: str, generation: int, structure=None, error=None) -> bool:
        with self._cond:
            entry = self._entries.get(object_id)
            if entry is None or entry.generation != generation:
                self.logger.debug(f"Discarding stale build for mesh {object_id} (generation {generation})")
                return False
            if error is not None:
                entry.state = AccelerationState.UNBUILT
                entry.build_error = error
            else:
                entry.state = AccelerationState.READY
                entry.structure = structure
            entry.worker = None
            self._cond.notify_all()
            return True

    def _build(self, snapshot: MeshSnapshot):
        start = time.perf_counter()
        structure = MeshAccelerationStructure(snapshot, leaf_size=self.tolerances.leaf_size)
        elapsed = (time.perf_counter() - start) * 1000
        self.logger.info(
            f"BVH built for mesh {snapshot.object_id}: {len(structure.triangles)} triangles, "
            f"{structure.bvh.node_count} nodes in {elapsed:.1f} ms"
        )
        return structure

    def _build_worker(self, object_id: str, generation: int, snapshot: MeshSnapshot):
        try:
            structure = self._build(snapshot)
        except Exception as e:
            self.logger.error(f"Background BVH build failed for mesh {object_id}: {e}")
            self._finish_build(object_id, generation, error=e)
            return
        self._finish_build(object_id, generation, structure=structure)

    def _start_background_build(self, entry: _MeshEntry):
        generation = self._begin_build(entry)
        entry.worker = threading.Thread(
            target=self._build_worker,
            args=(entry.snapshot.object_id, generation, entry.snapshot),
            name=f"bvh-{entry.snapshot.object_id}",
            daemon=True,
        )
        entry.worker.start()

    @staticmethod
    def _build_failure(object_id: str, entry: _MeshEntry) -> DegenerateGeometryError:
        """Failed builds stay failed until a new snapshot version arrives."""
        return DegenerateGeometryError(f"Mesh {object_id} cannot be indexed: {entry.build_error}")

    def _wait_ready(self, object_id: str, timeout: Optional[float] = None) -> MeshAccelerationStructure:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._cond:
                entry = self._entries.get(object_id)
                if entry is None:
                    raise InvalidInputError(f"Mesh {object_id} is not registered")
                if entry.state is AccelerationState.READY:
                    return entry.structure
                if entry.state is AccelerationState.UNBUILT:
                    if entry.build_error is not None:
                        raise self._build_failure(object_id, entry)
                    generation = self._begin_build(entry)
                    snapshot = entry.snapshot
                else:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        raise AccelerationStructureUnavailable(
                            f"Timed out waiting for mesh {object_id} acceleration structure"
                        )
                    self._cond.wait(remaining)
                    continue

            try:
                structure = self._build(snapshot)
            except Exception as e:
                self._finish_build(object_id, generation, error=e)
                raise DegenerateGeometryError(f"Mesh {object_id} cannot be indexed: {e}") from e
            self._finish_build(object_id, generation, structure=structure)

    def ensure_acceleration_structure(self, mesh: MeshSnapshot, background: bool = False) -> AccelerationState:
        """Build the BVH for ``mesh`` unless it is already READY.

        With ``background`` the build is handed to a worker thread and the
        current state is returned immediately; otherwise this blocks until READY.
        """
        self.register_mesh(mesh)
        if background:
            with self._cond:
                entry = self._entries[mesh.object_id]
                if entry.state is AccelerationState.UNBUILT and entry.build_error is None:
                    self._start_background_build(entry)
                return entry.state
        self._wait_ready(mesh.object_id)
        return AccelerationState.READY

    def wait_until_ready(self, object_ids: Iterable[str], timeout: Optional[float] = None) -> bool:
        """Block until every listed mesh is READY; False on timeout or a failed build."""
        object_ids = list(object_ids)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                entries = [self._entries[oid] for oid in object_ids if oid in self._entries]
                if any(entry.build_error is not None for entry in entries):
                    return False
                if all(entry.state is AccelerationState.READY for entry in entries):
                    return True
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)

    # Queries

    def _collect_structures(self, meshes: List[MeshSnapshot], wait: bool, timeout: Optional[float]):
        for mesh in meshes:
            self.register_mesh(mesh)

        if wait:
            return [self._wait_ready(mesh.object_id, timeout) for mesh in meshes]

        with self._cond:
            pending = []
            for mesh in meshes:
                entry = self._entries[mesh.object_id]
                if entry.build_error is not None:
                    raise self._build_failure(mesh.object_id, entry)
                if entry.state is AccelerationState.UNBUILT:
                    self._start_background_build(entry)
                if entry.state is not AccelerationState.READY:
                    pending.append(f"{mesh.object_id} ({entry.state.value})")
            if pending:
                raise AccelerationStructureUnavailable(
                    f"Acceleration structure not ready for: {', '.join(pending)}"
                )
            return [self._entries[mesh.object_id].structure for mesh in meshes]

    def query_face(self, ray: Ray, candidate_meshes: List[MeshSnapshot],
                   wait: bool = False, timeout: Optional[float] = None) -> Optional[FaceSelection]:
        """Face under ``ray`` across ``candidate_meshes``, or None on a miss.

        Raises AccelerationStructureUnavailable when a candidate is not READY
        and ``wait`` is false.
        """
        if not candidate_meshes:
            return None
        structures = self._collect_structures(list(candidate_meshes), wait, timeout)

        best: Optional[Tuple[RayHit, MeshAccelerationStructure]] = None
        for structure in structures:
            hit = structure.bvh.intersect(ray.origin, ray.direction, self.tolerances.tie_distance)
            if hit is None:
                continue
            # Equal distances keep the earlier mesh.
            if best is None or hit.distance < best[0].distance - self.tolerances.tie_distance:
                best = (hit, structure)

        if best is None:
            self.logger.debug("Face query missed every candidate mesh")
            return None

        hit, structure = best
        selection = self._reconstruct_face(structure, hit, ray)
        self.logger.debug(
            f"Face {selection.face_id} selected on {selection.object_id} "
            f"({selection.strategy.value}, area {selection.area:.3f} m^2)"
        )
        return selection

    # Face reconstruction

    def _averaged_normal(self, structure: MeshAccelerationStructure, point, raw_unit) -> np.ndarray:
        tol = self.tolerances
        nearby = structure.bvh.triangles_near(point, tol.normal_average_radius)
        if len(nearby):
            nearby = nearby[structure.valid_normals[nearby]]
        if not len(nearby):
            return raw_unit

        distances = np.linalg.norm(structure.bvh.centroids[nearby] - point, axis=1)
        weights = 1.0 / (1.0 + distances)
        averaged = (structure.unit_normals[nearby] * weights[:, None]).sum(axis=0) / weights.sum()
        # Opposing neighbours (thin plates) can cancel out; keep the hit triangle's own normal then.
        length = float(np.linalg.norm(averaged))
        if math.isfinite(length) and length >= tol.normal_length:
            return averaged
        return raw_unit

    def _classify(self, structure: MeshAccelerationStructure, normal) -> Tuple[FaceStrategy, int, float]:
        local_normal = structure.linear.T @ normal
        local_normal = local_normal / np.linalg.norm(local_normal)
        for axis in range(3):
            if abs(local_normal[axis]) > self.tolerances.axis_alignment:
                return FaceStrategy.AXIS_ALIGNED_BOX, axis, float(np.sign(local_normal[axis]))
        return FaceStrategy.GENERAL_MESH, -1, 0.0

    def _box_face(self, structure: MeshAccelerationStructure, axis: int, sign: float):
        lo, hi = structure.local_min, structure.local_max
        u_axis, v_axis = [a for a in range(3) if a != axis]
        plane = hi[axis] if sign > 0 else lo[axis]

        corners = []
        for u, v in ((lo[u_axis], lo[v_axis]), (hi[u_axis], lo[v_axis]),
                     (hi[u_axis], hi[v_axis]), (lo[u_axis], hi[v_axis])):
            corner = np.zeros(3)
            corner[axis] = plane
            corner[u_axis] = u
            corner[v_axis] = v
            corners.append(corner)
        quad = structure.to_world(np.array(corners))

        local_axis = np.zeros(3)
        local_axis[axis] = sign
        normal = structure.normal_matrix @ local_axis
        normal = normal / np.linalg.norm(normal)

        # Keep the quad counter-clockwise about its outward normal.
        if np.dot(np.cross(quad[1] - quad[0], quad[3] - quad[0]), normal) < 0:
            quad = quad[[0, 3, 2, 1]]

        area = float(np.linalg.norm(quad[1] - quad[0]) * np.linalg.norm(quad[3] - quad[0]))
        return quad, normal, area

    @staticmethod
    def _heron_area(a, b, c) -> float:
        ab = np.linalg.norm(b - a)
        bc = np.linalg.norm(c - b)
        ca = np.linalg.norm(a - c)
        s = (ab + bc + ca) / 2
        return float(math.sqrt(max(0.0, s * (s - ab) * (s - bc) * (s - ca))))

    def _reconstruct_face(self, structure: MeshAccelerationStructure, hit: RayHit, ray: Ray) -> FaceSelection:
        index = hit.triangle_index
        if not structure.valid_normals[index]:
            length = float(np.linalg.norm(structure.raw_normals[index]))
            raise DegenerateGeometryError(
                f"Triangle {index} of mesh {structure.object_id} has a degenerate normal (length {length})"
            )

        normal = self._averaged_normal(structure, hit.point, structure.unit_normals[index])
        length = float(np.linalg.norm(normal))
        if not math.isfinite(length) or length < self.tolerances.normal_length:
            raise DegenerateGeometryError(
                f"Face normal at triangle {index} of mesh {structure.object_id} is unusable (length {length})"
            )
        normal = normal / length
        strategy, axis, sign = self._classify(structure, normal)

        if strategy is FaceStrategy.AXIS_ALIGNED_BOX:
            vertices, normal, area = self._box_face(structure, axis, sign)
            face_id = f"{structure.object_id}:{'+' if sign > 0 else '-'}{'xyz'[axis]}"
        else:
            vertices = structure.triangles[index]
            area = self._heron_area(*vertices)
            face_id = f"{structure.object_id}:tri{index}"

        return FaceSelection(
            object_id=structure.object_id,
            face_id=face_id,
            face_index=index,
            strategy=strategy,
            ray_origin=ray.origin,
            ray_direction=ray.direction,
            hit_point=scene_to_local(hit.point),
            distance=hit.distance,
            normal=tuple(float(c) for c in scene_vector_to_local(normal)),
            vertices=tuple(scene_to_local(v) for v in vertices),
            area=area,
        )
