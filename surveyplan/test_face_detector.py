#!/usr/bin/env python3
"""Tests for BVH face picking and the per-mesh acceleration state machine."""

import math

import numpy as np
import pytest

from surveyplan.core.bvh import BoundingVolumeHierarchy, RayHit
from surveyplan.core.errors import (
    AccelerationStructureUnavailable,
    DegenerateGeometryError,
    InvalidInputError,
)
from surveyplan.core.face_detector import (
    AccelerationState,
    FaceDetectionTolerances,
    FaceStrategy,
    MeshAccelerationStructure,
    MeshSnapshot,
    Ray,
    SurfaceFaceDetector,
)
from surveyplan.core.mission import LocalPoint

# Outward-wound box faces; corner i has +x if bit 0, +y if bit 1, +z if bit 2.
BOX_TRIANGLES = [
    (1, 3, 7), (1, 7, 5),   # +x
    (0, 4, 6), (0, 6, 2),   # -x
    (2, 6, 7), (2, 7, 3),   # +y
    (0, 1, 5), (0, 5, 4),   # -y
    (4, 5, 7), (4, 7, 6),   # +z
    (0, 2, 3), (0, 3, 1),   # -z
]


def box_mesh(object_id="box-1", size=(10.0, 4.0, 6.0), transform=None, version=0):
    """Scene-space box (x east, y up, z south) resting on y = 0 unless transformed."""
    hx, hy, hz = (s / 2 for s in size)
    corners = [((hx if i & 1 else -hx), (hy if i & 2 else -hy), (hz if i & 4 else -hz)) for i in range(8)]
    if transform is None:
        transform = np.eye(4)
        transform[1, 3] = hy
    return MeshSnapshot.create(object_id, corners, BOX_TRIANGLES, transform, version)


def tilted_triangle(object_id="slope"):
    return MeshSnapshot.create(object_id, [(0, 0, 0), (10, 0, 0), (0, 10, 10)])


def ready_detector(*meshes):
    detector = SurfaceFaceDetector({})
    for mesh in meshes:
        detector.ensure_acceleration_structure(mesh)
    return detector


def test_bvh_matches_brute_force():
    rng = np.random.default_rng(7)
    triangles = rng.uniform(-10, 10, size=(200, 3, 3))
    bvh = BoundingVolumeHierarchy(triangles, leaf_size=4)
    assert bvh.node_count > 1

    origin = np.array([0.0, 0.0, -50.0])
    for _ in range(20):
        direction = np.array([*rng.uniform(-0.2, 0.2, 2), 1.0])
        direction /= np.linalg.norm(direction)
        best = None
        for index, (v0, v1, v2) in enumerate(triangles):
            e1, e2 = v1 - v0, v2 - v0
            p = np.cross(direction, e2)
            det = e1 @ p
            if abs(det) < 1e-12:
                continue
            s = origin - v0
            u = (s @ p) / det
            q = np.cross(s, e1)
            v = (direction @ q) / det
            t = (e2 @ q) / det
            if u >= 0 and v >= 0 and u + v <= 1 and t > 1e-9 and (best is None or t < best[0]):
                best = (t, index)
        hit = bvh.intersect(origin, direction)
        if best is None:
            assert hit is None
        else:
            assert hit.triangle_index == best[1]
            assert hit.distance == pytest.approx(best[0])


def test_triangles_near():
    triangles = np.array([[[0, 0, 0], [1, 0, 0], [0, 1, 0]],
                          [[5, 5, 5], [6, 5, 5], [5, 6, 5]]], dtype=float)
    bvh = BoundingVolumeHierarchy(triangles, leaf_size=1)
    assert list(bvh.triangles_near([0.3, 0.3, 0.0], 0.1)) == [0]
    assert list(bvh.triangles_near([0.3, 0.3, 0.0], 100.0)) == [0, 1]


def test_box_top_face_returns_whole_quad():
    detector = ready_detector(box_mesh())
    ray = Ray.create((1.0, 10.0, 1.0), (0.0, -1.0, 0.0))
    selection = detector.query_face(ray, [box_mesh()])

    assert selection.strategy is FaceStrategy.AXIS_ALIGNED_BOX
    assert selection.face_id == "box-1:+y"
    assert selection.area == pytest.approx(60.0)
    assert selection.normal == pytest.approx((0.0, 0.0, 1.0))
    assert len(selection.vertices) == 4
    assert all(v.z == pytest.approx(4.0) for v in selection.vertices)
    assert selection.hit_point.x == pytest.approx(1.0)
    assert selection.hit_point.y == pytest.approx(-1.0)
    assert selection.hit_point.z == pytest.approx(4.0)
    assert selection.distance == pytest.approx(6.0)


def test_box_quad_winds_around_its_normal():
    detector = ready_detector(box_mesh())
    selection = detector.query_face(Ray.create((20.0, 2.0, 0.5), (-1.0, 0.0, 0.0)), [box_mesh()])
    assert selection.face_id == "box-1:+x"
    pts = np.array([v.as_array() for v in selection.vertices])
    winding = np.cross(pts[1] - pts[0], pts[3] - pts[0])
    assert np.dot(winding, selection.normal) > 0
    assert selection.area == pytest.approx(4.0 * 6.0)


def test_rotated_box_still_resolves_quad():
    angle = math.radians(30)
    transform = np.eye(4)
    transform[:3, :3] = [[math.cos(angle), 0, math.sin(angle)],
                         [0, 1, 0],
                         [-math.sin(angle), 0, math.cos(angle)]]
    transform[1, 3] = 2.0
    mesh = box_mesh(transform=transform)
    detector = ready_detector(mesh)
    selection = detector.query_face(Ray.create((0.5, 10.0, 0.5), (0.0, -1.0, 0.0)), [mesh])
    assert selection.strategy is FaceStrategy.AXIS_ALIGNED_BOX
    assert selection.area == pytest.approx(60.0)
    assert selection.normal == pytest.approx((0.0, 0.0, 1.0))


def test_general_mesh_face_returns_triangle():
    mesh = tilted_triangle()
    detector = ready_detector(mesh)
    normal = np.array([0.0, -1.0, 1.0]) / math.sqrt(2)
    origin = np.array([2.0, 3.0, 3.0]) + 5.0 * normal
    selection = detector.query_face(Ray.create(origin, -normal), [mesh])

    assert selection.strategy is FaceStrategy.GENERAL_MESH
    assert selection.face_id == "slope:tri0"
    assert len(selection.vertices) == 3
    assert selection.area == pytest.approx(0.5 * math.sqrt(2) * 100.0)
    assert selection.distance == pytest.approx(5.0)
    # scene (0, -a, a) -> ENU (0, -a, -a)
    assert selection.normal == pytest.approx((0.0, -1 / math.sqrt(2), -1 / math.sqrt(2)))
    assert selection.vertices[2] == LocalPoint(0.0, -10.0, 10.0)


def test_query_is_deterministic():
    mesh = box_mesh()
    detector = ready_detector(mesh)
    ray = Ray.create((2.0, 10.0, -1.0), (0.1, -1.0, 0.05))
    assert detector.query_face(ray, [mesh]) == detector.query_face(ray, [mesh])


def test_miss_returns_none():
    mesh = box_mesh()
    detector = ready_detector(mesh)
    assert detector.query_face(Ray.create((0.0, 10.0, 0.0), (0.0, 1.0, 0.0)), [mesh]) is None
    assert detector.query_face(Ray.create((0.0, 10.0, 0.0), (0.0, -1.0, 0.0)), []) is None


def test_nearest_mesh_wins_and_ties_keep_candidate_order():
    low = box_mesh("low")
    high_transform = np.eye(4)
    high_transform[1, 3] = 10.0
    high = box_mesh("high", transform=high_transform)
    twin = box_mesh("twin")
    detector = ready_detector(low, high, twin)
    ray = Ray.create((1.0, 50.0, 1.0), (0.0, -1.0, 0.0))

    assert detector.query_face(ray, [low, high]).object_id == "high"
    assert detector.query_face(ray, [low, twin]).object_id == "low"
    assert detector.query_face(ray, [twin, low]).object_id == "twin"


def fine_deck(cell=0.01, cells=20):
    """Flat 20 cm square deck at scene y = 0 meshed as 1 cm upward-facing triangles."""
    vertices = []
    for i in range(cells):
        for k in range(cells):
            x0, z0, x1, z1 = i * cell, k * cell, (i + 1) * cell, (k + 1) * cell
            vertices += [(x0, 0.0, z0), (x0, 0.0, z1), (x1, 0.0, z0),
                         (x1, 0.0, z0), (x0, 0.0, z1), (x1, 0.0, z1)]
    return MeshSnapshot.create("fine-deck", vertices)


def test_fine_mesh_face_is_selectable():
    mesh = fine_deck()
    detector = ready_detector(mesh)
    selection = detector.query_face(Ray.create((0.105, 1.0, 0.093), (0.0, -1.0, 0.0)), [mesh])
    assert selection.face_id == "fine-deck:+y"
    assert selection.normal == pytest.approx((0.0, 0.0, 1.0))
    assert selection.area == pytest.approx(0.04)


def test_small_triangle_is_not_degenerate():
    mesh = MeshSnapshot.create("speck", [(0, 0, 0), (0.01, 0, 0), (0, 0.01, 0.01)])
    detector = ready_detector(mesh)
    selection = detector.query_face(Ray.create((0.002, 1.0, 0.002), (0.0, -1.0, 0.0)), [mesh])
    assert selection.strategy is FaceStrategy.GENERAL_MESH
    assert selection.area == pytest.approx(0.5 * 0.01 * 0.01 * math.sqrt(2))


def test_collinear_hit_triangle_rejected():
    mesh = MeshSnapshot.create("sliver", [(0, 0, 0), (1, 0, 0), (0, 0, 1),
                                          (0, 0, 0), (1, 0, 0), (2, 0, 0)])
    structure = MeshAccelerationStructure(mesh)
    assert list(structure.valid_normals) == [True, False]

    detector = SurfaceFaceDetector({})
    ray = Ray.create((0.5, 1.0, 0.0), (0.0, -1.0, 0.0))
    hit = RayHit(distance=1.0, triangle_index=1, point=np.array([0.5, 0.0, 0.0]))
    with pytest.raises(DegenerateGeometryError):
        detector._reconstruct_face(structure, hit, ray)


def test_query_before_build_is_retryable():
    mesh = box_mesh()
    detector = SurfaceFaceDetector({})
    ray = Ray.create((1.0, 10.0, 1.0), (0.0, -1.0, 0.0))
    with pytest.raises(AccelerationStructureUnavailable) as info:
        detector.query_face(ray, [mesh])
    assert info.value.retryable

    assert detector.wait_until_ready([mesh.object_id], timeout=30)
    assert detector.state(mesh.object_id) is AccelerationState.READY
    assert detector.query_face(ray, [mesh]).face_id == "box-1:+y"


def test_query_with_wait_builds_first():
    mesh = box_mesh()
    detector = SurfaceFaceDetector({})
    selection = detector.query_face(Ray.create((1.0, 10.0, 1.0), (0.0, -1.0, 0.0)), [mesh], wait=True)
    assert selection.face_id == "box-1:+y"


def test_state_machine_transitions():
    detector = SurfaceFaceDetector({})
    mesh = box_mesh(version=1)
    assert detector.state(mesh.object_id) is None
    assert detector.register_mesh(mesh) is AccelerationState.UNBUILT
    assert detector.ensure_acceleration_structure(mesh) is AccelerationState.READY
    # idempotent
    assert detector.ensure_acceleration_structure(mesh) is AccelerationState.READY
    assert detector.register_mesh(mesh) is AccelerationState.READY

    moved = box_mesh(size=(20.0, 4.0, 6.0), version=2)
    assert detector.update_mesh(moved) is AccelerationState.UNBUILT
    assert detector.ensure_acceleration_structure(moved) is AccelerationState.READY
    selection = detector.query_face(Ray.create((1.0, 10.0, 1.0), (0.0, -1.0, 0.0)), [moved])
    assert selection.area == pytest.approx(120.0)

    assert detector.remove_mesh(mesh.object_id)
    assert detector.state(mesh.object_id) is None
    assert not detector.remove_mesh(mesh.object_id)


def test_stale_build_result_is_discarded():
    detector = SurfaceFaceDetector({})
    old = box_mesh(version=1)
    detector.register_mesh(old)
    structure = MeshAccelerationStructure(old)
    detector.register_mesh(box_mesh(version=2))

    assert not detector._finish_build(old.object_id, 0, structure=structure)
    assert detector.state(old.object_id) is AccelerationState.UNBUILT


def test_failed_build_is_reported_until_mesh_changes():
    detector = SurfaceFaceDetector({})
    mesh = box_mesh(version=1)
    ray = Ray.create((1.0, 10.0, 1.0), (0.0, -1.0, 0.0))
    build = detector._build

    def broken_build(snapshot):
        raise DegenerateGeometryError("no usable triangles")

    detector._build = broken_build
    with pytest.raises(DegenerateGeometryError):
        detector.query_face(ray, [mesh], wait=True)
    assert detector.state(mesh.object_id) is AccelerationState.UNBUILT

    with pytest.raises(DegenerateGeometryError) as info:
        detector.query_face(ray, [mesh])
    assert not info.value.retryable
    assert detector.state(mesh.object_id) is AccelerationState.UNBUILT
    assert detector.ensure_acceleration_structure(mesh, background=True) is AccelerationState.UNBUILT
    assert not detector.wait_until_ready([mesh.object_id], timeout=1)

    detector._build = build
    fixed = box_mesh(version=2)
    assert detector.query_face(ray, [fixed], wait=True).face_id == "box-1:+y"


def test_axis_alignment_threshold():
    detector = SurfaceFaceDetector({})
    structure = MeshAccelerationStructure(box_mesh())
    aligned = np.array([0.76, math.sqrt(1 - 0.76 ** 2), 0.0])
    oblique = np.array([0.74, math.sqrt(1 - 0.74 ** 2), 0.0])
    assert detector._classify(structure, aligned)[0] is FaceStrategy.AXIS_ALIGNED_BOX
    assert detector._classify(structure, oblique)[0] is FaceStrategy.GENERAL_MESH


def test_tolerances_from_config():
    defaults = FaceDetectionTolerances()
    assert defaults.normal_length == 0.0005
    assert defaults.axis_alignment == 0.75
    assert defaults.normal_average_radius == 0.1
    assert defaults.coplanar_point == 0.02
    assert defaults.leaf_size == 8

    custom = FaceDetectionTolerances.from_config(
        {"face_detection": {"axis_alignment_tolerance": 0.9, "bvh_leaf_size": 2}})
    assert custom.axis_alignment == 0.9
    assert custom.leaf_size == 2
    assert custom.normal_length == defaults.normal_length
    assert FaceDetectionTolerances.from_config({}) == defaults


def test_snapshot_validation():
    with pytest.raises(InvalidInputError):
        MeshSnapshot.create("bad", [(0, 0, 0), (1, 0, 0), (0, 1, 0)], [0, 1, 5])
    with pytest.raises(InvalidInputError):
        MeshSnapshot.create("bad", [(0, 0, 0), (1, 0, 0), (0, 1, 0)], [0, 1])
    with pytest.raises(InvalidInputError):
        MeshSnapshot.create("bad", [(0, 0, 0), (1, 0, 0), (0, 1, 0)], world_transform=np.zeros((4, 4)))
    with pytest.raises(InvalidInputError):
        MeshSnapshot.create("bad", [(0, 0, 0), (1, 0, float("nan")), (0, 1, 0)])

    mesh = box_mesh()
    assert not mesh.vertices.flags.writeable
    assert not mesh.world_transform.flags.writeable


def test_ray_requires_direction():
    with pytest.raises(InvalidInputError):
        Ray.create((0, 0, 0), (0, 0, 0))
    ray = Ray.create((0, 0, 0), (0, 3, 4))
    assert ray.direction == pytest.approx((0.0, 0.6, 0.8))
