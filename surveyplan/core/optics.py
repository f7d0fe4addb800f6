# core/optics.py

"""Camera / lens optical model.

Units: sensor dimensions and focal lengths in millimetres, distances and
footprints in meters, GSD in meters per pixel, angles in degrees.
Every function is pure; nothing here is cached.
"""

import math
from dataclasses import dataclass
from typing import Optional

from surveyplan.core.errors import InvalidInputError
from surveyplan.core.hardware import CameraProfile, LensProfile

MM_PER_M = 1000.0
DEFAULT_COC_FULL_FRAME_MM = 0.030
FULL_FRAME_WIDTH_MM = 36.0

_COC_BY_SENSOR_TYPE = {
    "Full Frame": 0.030,
    "APS-C": 0.020,
    "1-inch": 0.011,
    "1/2-inch": 0.006,
}


@dataclass(frozen=True)
class Footprint:
    width: float   # m, along the sensor width
    height: float  # m, along the sensor height


@dataclass(frozen=True)
class DepthOfField:
    hyperfocal: float   # m
    near_limit: float   # m
    far_limit: float    # m, inf beyond the hyperfocal distance

    @property
    def total(self) -> float:
        return self.far_limit - self.near_limit


@dataclass(frozen=True)
class OpticalSolution:
    horizontal_fov: float
    vertical_fov: float
    footprint_width: float
    footprint_height: float
    gsd: float
    hyperfocal_distance: float
    near_limit: float
    far_limit: float
    focal_length: float
    circle_of_confusion: float


def _require_positive(**values):
    for name, value in values.items():
        if value is None or not math.isfinite(value) or value <= 0:
            raise InvalidInputError(f"{name} must be a positive finite number, got {value}")


def effective_focal_length(lens: LensProfile, zoom_position: float = 0.5) -> float:
    """Focal length used for calculations.

    Zoom lenses are evaluated at a representative point of their range
    (``zoom_position`` 0..1, midpoint by default).
    """
    if lens.is_zoom:
        if not 0.0 <= zoom_position <= 1.0:
            raise InvalidInputError(f"zoom_position must be within [0, 1], got {zoom_position}")
        low, high = lens.focal_length
        focal = low + (high - low) * zoom_position
    else:
        focal = float(lens.focal_length)
    _require_positive(focal_length=focal)
    return focal


def circle_of_confusion(sensor_type: Optional[str] = None, sensor_width: Optional[float] = None) -> float:
    """Default circle of confusion (mm) for a sensor format."""
    if sensor_type in _COC_BY_SENSOR_TYPE:
        return _COC_BY_SENSOR_TYPE[sensor_type]
    if not sensor_width or sensor_width <= 0:
        return DEFAULT_COC_FULL_FRAME_MM
    if sensor_type == "Medium Format":
        return sensor_width / 1500.0
    return min(DEFAULT_COC_FULL_FRAME_MM, DEFAULT_COC_FULL_FRAME_MM * sensor_width / FULL_FRAME_WIDTH_MM)


def field_of_view(focal_length: float, sensor_dimension: float) -> float:
    _require_positive(focal_length=focal_length, sensor_dimension=sensor_dimension)
    return math.degrees(2 * math.atan(sensor_dimension / (2 * focal_length)))


def footprint(focal_length: float, sensor_width: float, sensor_height: float,
              image_width: int, image_height: int, standoff_distance: float) -> Footprint:
    """Ground footprint at ``standoff_distance`` by similar triangles.

    Pixels are treated as square, so the height follows from the width GSD
    and the pixel aspect ratio.
    """
    _require_positive(focal_length=focal_length, sensor_width=sensor_width,
                      sensor_height=sensor_height, image_width=image_width,
                      image_height=image_height, standoff_distance=standoff_distance)
    width = sensor_width * standoff_distance / focal_length
    height = width / image_width * image_height
    return Footprint(width=width, height=height)


def gsd(footprint_dimension: float, pixel_dimension: int) -> float:
    _require_positive(footprint_dimension=footprint_dimension, pixel_dimension=pixel_dimension)
    return footprint_dimension / pixel_dimension


def distance_for_target_gsd(target_gsd: float, focal_length: float,
                            sensor_width: float, image_width: int) -> float:
    """Standoff distance at which one pixel covers ``target_gsd`` meters."""
    _require_positive(target_gsd=target_gsd, focal_length=focal_length,
                      sensor_width=sensor_width, image_width=image_width)
    return target_gsd * focal_length * image_width / sensor_width


def hyperfocal_distance(focal_length: float, aperture: float, coc: float) -> float:
    _require_positive(focal_length=focal_length, aperture=aperture, circle_of_confusion=coc)
    return (focal_length * focal_length) / (aperture * coc) / MM_PER_M


def depth_of_field(focal_length: float, aperture: float, focus_distance: float,
                   circle_of_confusion_mm: Optional[float] = None,
                   sensor_type: Optional[str] = None,
                   sensor_width: Optional[float] = None) -> DepthOfField:
    """Thin-lens hyperfocal, near and far limits of acceptable sharpness."""
    _require_positive(focal_length=focal_length, aperture=aperture, focus_distance=focus_distance)
    if circle_of_confusion_mm is None:
        circle_of_confusion_mm = circle_of_confusion(sensor_type, sensor_width)

    hyperfocal = hyperfocal_distance(focal_length, aperture, circle_of_confusion_mm)
    focal_m = focal_length / MM_PER_M

    near = focus_distance * (hyperfocal - focal_m) / (hyperfocal + focus_distance - 2 * focal_m)
    if focus_distance >= hyperfocal:
        far = math.inf
    else:
        far = focus_distance * (hyperfocal - focal_m) / (hyperfocal - focus_distance)
    return DepthOfField(hyperfocal=hyperfocal, near_limit=near, far_limit=far)


def overlap_spacing(fp: Footprint, along_track_overlap: float, cross_track_overlap: float):
    """(capture_interval, row_spacing) in meters for the given overlap fractions."""
    for name, value in (("along_track_overlap", along_track_overlap),
                        ("cross_track_overlap", cross_track_overlap)):
        if value is None or not math.isfinite(value) or not 0.0 <= value < 1.0:
            raise InvalidInputError(f"{name} must be within [0, 1), got {value}")
    return fp.width * (1.0 - along_track_overlap), fp.height * (1.0 - cross_track_overlap)


def solve(camera: CameraProfile, lens: LensProfile, aperture: float, focus_distance: float,
          focal_length: Optional[float] = None, zoom_position: float = 0.5,
          circle_of_confusion_mm: Optional[float] = None) -> OpticalSolution:
    """Full optical solution for a camera/lens pair focused at ``focus_distance``."""
    if focal_length is None:
        focal_length = effective_focal_length(lens, zoom_position)
    if circle_of_confusion_mm is None:
        circle_of_confusion_mm = circle_of_confusion(camera.sensor_type, camera.sensor_width)

    fp = footprint(focal_length, camera.sensor_width, camera.sensor_height,
                   camera.image_width, camera.image_height, focus_distance)
    dof = depth_of_field(focal_length, aperture, focus_distance, circle_of_confusion_mm)
    return OpticalSolution(
        horizontal_fov=field_of_view(focal_length, camera.sensor_width),
        vertical_fov=field_of_view(focal_length, camera.sensor_height),
        footprint_width=fp.width,
        footprint_height=fp.height,
        gsd=gsd(fp.width, camera.image_width),
        hyperfocal_distance=dof.hyperfocal,
        near_limit=dof.near_limit,
        far_limit=dof.far_limit,
        focal_length=focal_length,
        circle_of_confusion=circle_of_confusion_mm,
    )
