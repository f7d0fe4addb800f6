# core/hardware.py

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class CameraProfile:
    """Camera body / sensor reference data."""
    id: str
    brand: str
    model: str
    sensor_type: str
    sensor_width: float   # mm
    sensor_height: float  # mm
    image_width: int      # px
    image_height: int     # px
    lens_mounts: Tuple[str, ...] = ()

    @property
    def megapixels(self) -> float:
        return self.image_width * self.image_height / 1_000_000


@dataclass(frozen=True)
class LensProfile:
    """Lens reference data. Zoom lenses carry a (min, max) focal length."""
    id: str
    brand: str
    model: str
    focal_length: Union[float, Tuple[float, float]]  # mm
    max_aperture: float   # widest, smallest f-number
    min_aperture: float   # narrowest, largest f-number
    lens_mount: str = ""

    @property
    def is_zoom(self) -> bool:
        return isinstance(self.focal_length, tuple)


CAMERAS: Dict[str, CameraProfile] = {
    camera.id: camera for camera in (
        CameraProfile("phase-one-ixm-100", "Phase One", "iXM-100", "Medium Format",
                      53.4, 40.0, 11664, 8750, ("PhaseOne-RSM",)),
        CameraProfile("phase-one-ixm-rs150", "Phase One", "iXM-RS150", "Medium Format",
                      53.4, 40.0, 14204, 10652, ("PhaseOne-RSM",)),
        CameraProfile("phase-one-ixm-50", "Phase One", "iXM-50", "Medium Format",
                      44.0, 33.0, 8280, 6208, ("PhaseOne-RSM",)),
        CameraProfile("sony-a7r-iv", "Sony", "Alpha A7R IV", "Full Frame",
                      35.7, 23.8, 9504, 6336, ("Sony-E",)),
        CameraProfile("sony-a7-iv", "Sony", "Alpha A7 IV", "Full Frame",
                      36.0, 24.0, 7008, 4672, ("Sony-E",)),
        CameraProfile("dji-mavic-2-pro", "DJI", "Mavic 2 Pro", "1-inch",
                      13.2, 8.8, 5472, 3648),
        CameraProfile("dji-mavic-air-2", "DJI", "Mavic Air 2", "1/2-inch",
                      6.4, 4.8, 8000, 6000),
    )
}

LENSES: Dict[str, LensProfile] = {
    lens.id: lens for lens in (
        LensProfile("phaseone-rsm-80mm", "Phase One", "RSM 80mm f/5.6", 80.0, 5.6, 32.0, "PhaseOne-RSM"),
        LensProfile("phaseone-rsm-35mm", "Phase One", "RSM 35mm f/5.6", 35.0, 5.6, 32.0, "PhaseOne-RSM"),
        LensProfile("sony-e-50mm-f1.8", "Sony", "FE 50mm f/1.8", 50.0, 1.8, 22.0, "Sony-E"),
        LensProfile("sony-e-24-70mm-f2.8-gm", "Sony", "FE 24-70mm f/2.8 GM", (24.0, 70.0), 2.8, 22.0, "Sony-E"),
        LensProfile("sony-e-16-35mm-f4", "Sony", "FE 16-35mm f/4 G", (16.0, 35.0), 4.0, 22.0, "Sony-E"),
        LensProfile("fujifilm-g-gf-110mm-f2", "Fujifilm", "GF 110mm f/2 R LM WR", 110.0, 2.0, 22.0, "Fujifilm-G"),
    )
}


def get_camera(camera_id: str) -> Optional[CameraProfile]:
    return CAMERAS.get(camera_id)


def get_lens(lens_id: str) -> Optional[LensProfile]:
    return LENSES.get(lens_id)


def compatible_lenses(camera: CameraProfile):
    """Lenses whose mount the camera accepts, in catalogue order."""
    return [lens for lens in LENSES.values() if lens.lens_mount in camera.lens_mounts]
