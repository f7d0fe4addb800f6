"""
Raster path preview

Renders a mission area and a generated raster path, flattened onto the area
plane, to an image file. Uses the non-interactive Agg backend so it runs
headless (CI, the command line planner).

Usage:
    from surveyplan.utils.path_preview import plot_raster_path
    plot_raster_path(segment, area, "preview.png")
"""

import logging

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.collections import LineCollection
from matplotlib.patches import Polygon as MplPolygon
import numpy as np

from surveyplan.core.mission import CameraAction, MissionArea, PathSegment
from surveyplan.core.raster_path import path_statistics, reference_axes

logger = logging.getLogger("SURVEYPLAN.PathPreview")


def _flatten(points, base, u, v):
    rel = np.asarray(points, dtype=float) - base
    return np.column_stack((rel @ u, rel @ v))


def plot_raster_path(segment: PathSegment, area: MissionArea, output_path: str,
                     title: str = None, dpi: int = 120) -> str:
    """Draw ``segment`` over ``area`` and save the figure to ``output_path``."""
    normal = np.asarray(area.normal, dtype=float)
    u, v = reference_axes(normal)
    base = area.vertices[0].as_array()

    face = _flatten([p.as_array() for p in area.vertices], base, u, v)
    offset = _flatten([p.as_array() for p in area.offset_vertices], base, u, v)
    path = _flatten([wp.position.as_array() for wp in segment.waypoints], base, u, v)
    photos = np.array([wp.camera_action is CameraAction.TAKE_PHOTO for wp in segment.waypoints], dtype=bool)

    fig, ax = plt.subplots(figsize=(10, 8))
    ax.add_patch(MplPolygon(face, closed=True, fill=True, alpha=0.2, facecolor='tab:blue',
                            edgecolor='tab:blue', label='Face'))
    ax.add_patch(MplPolygon(offset, closed=True, fill=False, linestyle='--',
                            edgecolor='tab:green', label='Coverage area'))

    if len(path) > 1:
        lines = LineCollection(np.stack((path[:-1], path[1:]), axis=1), colors='r',
                               linewidths=1.2, alpha=0.7, label='Flight Path')
        ax.add_collection(lines)
    if photos.any():
        ax.plot(path[photos, 0], path[photos, 1], 'ro', markersize=3, label='Photo')
    if (~photos).any():
        ax.plot(path[~photos, 0], path[~photos, 1], 'kx', markersize=5, label='Transit')
    if len(path):
        ax.annotate('start', path[0], fontsize=8, ha='right')

    stats = path_statistics(segment)
    metadata = segment.metadata or {}
    ax.set_title(title or f"{area.name}: {metadata.get('rows', '?')} rows, "
                          f"{stats['photo_count']} photos, {stats['length_m']:.0f} m",
                 fontsize=12, fontweight='bold')
    ax.set_xlabel('In-plane U (m)')
    ax.set_ylabel('In-plane V (m)')
    ax.set_aspect('equal')
    ax.grid(True, alpha=0.3)
    ax.autoscale_view()
    ax.legend(loc='upper right', fontsize=8)

    fig.tight_layout()
    fig.savefig(output_path, dpi=dpi)
    plt.close(fig)
    logger.info(f"Path preview saved to {output_path}")
    return output_path
