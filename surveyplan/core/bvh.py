# core/bvh.py

"""Bounding volume hierarchy over a triangle soup.

Nodes are stored in flat numpy arrays. Interior nodes split the centroid set
at the median of its longest axis; leaves hold at most ``leaf_size``
triangles. Traversal uses an explicit stack so deep trees never hit the
recursion limit.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

_PARALLEL_EPS = 1e-12
_MIN_DISTANCE = 1e-9


@dataclass(frozen=True)
class RayHit:
    distance: float
    triangle_index: int
    point: np.ndarray


class BoundingVolumeHierarchy:
    def __init__(self, triangles: np.ndarray, leaf_size: int = 8):
        triangles = np.asarray(triangles, dtype=float)
        if triangles.ndim != 3 or triangles.shape[1:] != (3, 3):
            raise ValueError(f"Expected (N, 3, 3) triangles, got {triangles.shape}")
        if len(triangles) == 0:
            raise ValueError("Cannot build a hierarchy over zero triangles")

        self.triangles = triangles
        self.leaf_size = max(1, int(leaf_size))
        self.centroids = triangles.mean(axis=1)
        self._build()

    @property
    def node_count(self) -> int:
        return len(self.node_left)

    def _build(self):
        tri_min = self.triangles.min(axis=1)
        tri_max = self.triangles.max(axis=1)
        order = np.arange(len(self.triangles))

        mins, maxs, left, right, start, count = [], [], [], [], [], []

        def new_node():
            mins.append(None)
            maxs.append(None)
            left.append(-1)
            right.append(-1)
            start.append(0)
            count.append(0)
            return len(left) - 1

        root = new_node()
        stack = [(root, 0, len(order))]
        while stack:
            node, lo, hi = stack.pop()
            members = order[lo:hi]
            mins[node] = tri_min[members].min(axis=0)
            maxs[node] = tri_max[members].max(axis=0)

            n = hi - lo
            centroids = self.centroids[members]
            extent = centroids.max(axis=0) - centroids.min(axis=0)
            axis = int(np.argmax(extent))
            if n <= self.leaf_size or extent[axis] <= 0.0:
                start[node] = lo
                count[node] = n
                continue

            mid = n // 2
            # Stable tie-break on triangle index keeps the build deterministic.
            keys = np.lexsort((members, centroids[:, axis]))
            order[lo:hi] = members[keys]

            l_node = new_node()
            r_node = new_node()
            left[node] = l_node
            right[node] = r_node
            stack.append((r_node, lo + mid, hi))
            stack.append((l_node, lo, lo + mid))

        self.order = order
        self.node_min = np.array(mins, dtype=float)
        self.node_max = np.array(maxs, dtype=float)
        self.node_left = np.array(left, dtype=int)
        self.node_right = np.array(right, dtype=int)
        self.node_start = np.array(start, dtype=int)
        self.node_size = np.array(count, dtype=int)

    def _ray_hits_box(self, node, origin, inv_dir, best):
        t1 = (self.node_min[node] - origin) * inv_dir
        t2 = (self.node_max[node] - origin) * inv_dir
        t_near = np.minimum(t1, t2).max()
        t_far = np.maximum(t1, t2).min()
        return t_far >= max(t_near, 0.0) and t_near <= best

    def _intersect_leaf(self, members, origin, direction):
        tris = self.triangles[members]
        v0, v1, v2 = tris[:, 0], tris[:, 1], tris[:, 2]
        e1 = v1 - v0
        e2 = v2 - v0
        p = np.cross(direction, e2)
        det = np.einsum('ij,ij->i', e1, p)
        ok = np.abs(det) > _PARALLEL_EPS
        inv_det = np.zeros_like(det)
        inv_det[ok] = 1.0 / det[ok]

        s = origin - v0
        u = np.einsum('ij,ij->i', s, p) * inv_det
        q = np.cross(s, e1)
        v = (q @ direction) * inv_det
        t = np.einsum('ij,ij->i', e2, q) * inv_det

        valid = ok & (u >= 0.0) & (v >= 0.0) & (u + v <= 1.0) & (t > _MIN_DISTANCE)
        return t, valid

    def intersect(self, origin, direction, tie_tolerance: float = 1e-9) -> Optional[RayHit]:
        """Nearest triangle hit along the ray, or None.

        Hits within ``tie_tolerance`` of each other resolve to the lowest
        triangle index.
        """
        origin = np.asarray(origin, dtype=float)
        direction = np.asarray(direction, dtype=float)
        safe = np.where(np.abs(direction) < 1e-30, np.copysign(1e-30, direction), direction)
        inv_dir = 1.0 / safe

        best_t = np.inf
        best_tri = -1
        stack = [0]
        while stack:
            node = stack.pop()
            if not self._ray_hits_box(node, origin, inv_dir, best_t + tie_tolerance):
                continue
            if self.node_left[node] >= 0:
                stack.append(self.node_right[node])
                stack.append(self.node_left[node])
                continue

            lo = self.node_start[node]
            members = self.order[lo:lo + self.node_size[node]]
            t, valid = self._intersect_leaf(members, origin, direction)
            for tri, dist in zip(members[valid], t[valid]):
                if dist < best_t - tie_tolerance:
                    best_t, best_tri = float(dist), int(tri)
                elif abs(dist - best_t) <= tie_tolerance and tri < best_tri:
                    best_t, best_tri = min(best_t, float(dist)), int(tri)

        if best_tri < 0:
            return None
        return RayHit(distance=best_t, triangle_index=best_tri, point=origin + direction * best_t)

    def triangles_near(self, point, radius: float) -> np.ndarray:
        """Indices of triangles whose centroid lies strictly within ``radius`` of ``point``."""
        point = np.asarray(point, dtype=float)
        found = []
        stack = [0]
        while stack:
            node = stack.pop()
            if np.any(point < self.node_min[node] - radius) or np.any(point > self.node_max[node] + radius):
                continue
            if self.node_left[node] >= 0:
                stack.append(self.node_right[node])
                stack.append(self.node_left[node])
                continue
            lo = self.node_start[node]
            members = self.order[lo:lo + self.node_size[node]]
            dist = np.linalg.norm(self.centroids[members] - point, axis=1)
            found.extend(members[dist < radius].tolist())
        return np.array(sorted(found), dtype=int)
