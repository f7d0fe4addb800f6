# core/mission.py

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np


class AltitudeReference(Enum):
    TERRAIN = "terrain"
    SEA_LEVEL = "sea_level"
    RELATIVE = "relative"


class CameraAction(Enum):
    NONE = "none"
    TAKE_PHOTO = "take_photo"


class PathType(Enum):
    STRAIGHT = "straight"
    RASTER = "raster"
    POLYGON = "polygon"


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GeoPoint:
    """WGS84 position used at mission-frame boundaries."""
    latitude: float    # decimal degrees
    longitude: float   # decimal degrees
    altitude: float = 0.0  # meters


@dataclass(frozen=True)
class LocalPoint:
    """East-North-Up position in meters relative to the active SceneOrigin."""
    x: float
    y: float
    z: float = 0.0

    def translated(self, dx: float, dy: float, dz: float) -> "LocalPoint":
        return LocalPoint(self.x + dx, self.y + dy, self.z + dz)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y) and math.isfinite(self.z)

    @classmethod
    def from_array(cls, values) -> "LocalPoint":
        return cls(float(values[0]), float(values[1]), float(values[2]))


@dataclass(frozen=True)
class SceneOrigin:
    """Geodetic anchor of a mission's local frame.

    A new ``id`` is issued on every re-base so that points stamped with an
    older id can be recognised as stale.
    """
    geo: GeoPoint
    takeoff_anchored: bool = False
    id: str = field(default_factory=new_id)


def _shift(point: LocalPoint, offset: Tuple[float, float, float]) -> LocalPoint:
    return point.translated(*offset)


@dataclass(frozen=True)
class ReferencePoint:
    """Ground control point."""
    name: str
    position: LocalPoint
    origin_id: str
    id: str = field(default_factory=new_id)

    def translated(self, offset, origin_id: str) -> "ReferencePoint":
        return replace(self, position=_shift(self.position, offset), origin_id=origin_id)

    def local_points(self):
        return [self.position]


@dataclass(frozen=True)
class SceneObject:
    """Physical object placed in the scene (box, ship, dock, imported model)."""
    object_type: str
    position: LocalPoint
    origin_id: str
    width: float = 0.0
    length: float = 0.0
    height: float = 0.0
    name: str = ""
    id: str = field(default_factory=new_id)

    def translated(self, offset, origin_id: str) -> "SceneObject":
        return replace(self, position=_shift(self.position, offset), origin_id=origin_id)

    def local_points(self):
        return [self.position]


@dataclass(frozen=True)
class MissionArea:
    """Surface region promoted from a face selection."""
    name: str
    object_id: str
    source_face_id: str
    normal: Tuple[float, float, float]
    vertices: Tuple[LocalPoint, ...]
    offset_vertices: Tuple[LocalPoint, ...]
    area: float
    origin_id: str
    offset_distance: float = 0.0
    created_at: str = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    def translated(self, offset, origin_id: str) -> "MissionArea":
        return replace(
            self,
            vertices=tuple(_shift(v, offset) for v in self.vertices),
            offset_vertices=tuple(_shift(v, offset) for v in self.offset_vertices),
            origin_id=origin_id,
        )

    def local_points(self):
        return list(self.vertices) + list(self.offset_vertices)


@dataclass(frozen=True)
class Waypoint:
    position: LocalPoint
    altitude_reference: AltitudeReference = AltitudeReference.RELATIVE
    camera_action: CameraAction = CameraAction.NONE
    speed: float = 5.0
    hold_time: float = 0.0
    id: str = field(default_factory=new_id)

    def translated(self, offset) -> "Waypoint":
        return replace(self, position=_shift(self.position, offset))


@dataclass(frozen=True)
class PathSegment:
    path_type: PathType
    waypoints: Tuple[Waypoint, ...]
    origin_id: str
    metadata: Dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def translated(self, offset, origin_id: str) -> "PathSegment":
        return replace(
            self,
            waypoints=tuple(wp.translated(offset) for wp in self.waypoints),
            origin_id=origin_id,
        )

    def local_points(self):
        return [wp.position for wp in self.waypoints]


@dataclass(frozen=True)
class Mission:
    """Complete mission document. Every LocalPoint is relative to ``origin``."""
    name: str
    origin: SceneOrigin
    takeoff_point: Optional[LocalPoint] = None
    reference_points: Tuple[ReferencePoint, ...] = ()
    scene_objects: Tuple[SceneObject, ...] = ()
    mission_areas: Tuple[MissionArea, ...] = ()
    path_segments: Tuple[PathSegment, ...] = ()
    default_speed: float = 5.0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    mission_id: str = field(default_factory=new_id)

    def owned_entities(self):
        """All LocalPoint-bearing entities that carry an origin stamp."""
        return (list(self.reference_points) + list(self.scene_objects)
                + list(self.mission_areas) + list(self.path_segments))

    def find_area(self, area_id: str) -> Optional[MissionArea]:
        for area in self.mission_areas:
            if area.id == area_id:
                return area
        return None

    def find_segment(self, segment_id: str) -> Optional[PathSegment]:
        for segment in self.path_segments:
            if segment.id == segment_id:
                return segment
        return None

    def with_area(self, area: MissionArea) -> "Mission":
        return replace(self, mission_areas=self.mission_areas + (area,), updated_at=utc_now())

    def without_area(self, area_id: str) -> "Mission":
        areas = tuple(a for a in self.mission_areas if a.id != area_id)
        return replace(self, mission_areas=areas, updated_at=utc_now())

    def with_segment(self, segment: PathSegment) -> "Mission":
        return replace(self, path_segments=self.path_segments + (segment,), updated_at=utc_now())

    def without_segment(self, segment_id: str) -> "Mission":
        segments = tuple(s for s in self.path_segments if s.id != segment_id)
        return replace(self, path_segments=segments, updated_at=utc_now())


# Serialization

def _point_to_list(point: Optional[LocalPoint]):
    return None if point is None else [point.x, point.y, point.z]


def _point_from_list(values) -> Optional[LocalPoint]:
    return None if values is None else LocalPoint(*[float(v) for v in values])


def _geo_to_dict(geo: GeoPoint) -> dict:
    return {'latitude': geo.latitude, 'longitude': geo.longitude, 'altitude': geo.altitude}


def mission_to_dict(mission: Mission) -> dict:
    """Convert Mission to a JSON-compatible dictionary."""
    return {
        'mission_id': mission.mission_id,
        'name': mission.name,
        'origin': {
            'id': mission.origin.id,
            'geo': _geo_to_dict(mission.origin.geo),
            'takeoff_anchored': mission.origin.takeoff_anchored,
        },
        'takeoff_point': _point_to_list(mission.takeoff_point),
        'reference_points': [
            {
                'id': rp.id,
                'name': rp.name,
                'position': _point_to_list(rp.position),
                'origin_id': rp.origin_id,
            } for rp in mission.reference_points
        ],
        'scene_objects': [
            {
                'id': obj.id,
                'object_type': obj.object_type,
                'name': obj.name,
                'position': _point_to_list(obj.position),
                'width': obj.width,
                'length': obj.length,
                'height': obj.height,
                'origin_id': obj.origin_id,
            } for obj in mission.scene_objects
        ],
        'mission_areas': [
            {
                'id': area.id,
                'name': area.name,
                'object_id': area.object_id,
                'source_face_id': area.source_face_id,
                'normal': list(area.normal),
                'vertices': [_point_to_list(v) for v in area.vertices],
                'offset_vertices': [_point_to_list(v) for v in area.offset_vertices],
                'area': area.area,
                'offset_distance': area.offset_distance,
                'created_at': area.created_at,
                'origin_id': area.origin_id,
            } for area in mission.mission_areas
        ],
        'path_segments': [
            {
                'id': seg.id,
                'path_type': seg.path_type.value,
                'origin_id': seg.origin_id,
                'metadata': seg.metadata,
                'waypoints': [
                    {
                        'id': wp.id,
                        'position': _point_to_list(wp.position),
                        'altitude_reference': wp.altitude_reference.value,
                        'camera_action': wp.camera_action.value,
                        'speed': wp.speed,
                        'hold_time': wp.hold_time,
                    } for wp in seg.waypoints
                ],
            } for seg in mission.path_segments
        ],
        'default_speed': mission.default_speed,
        'created_at': mission.created_at,
        'updated_at': mission.updated_at,
    }


def mission_from_dict(mission_dict: dict) -> Mission:
    """Convert a dictionary produced by mission_to_dict back to a Mission."""
    origin_dict = mission_dict['origin']
    geo = origin_dict['geo']
    origin = SceneOrigin(
        geo=GeoPoint(float(geo['latitude']), float(geo['longitude']), float(geo.get('altitude', 0.0))),
        takeoff_anchored=bool(origin_dict.get('takeoff_anchored', False)),
        id=origin_dict['id'],
    )

    reference_points = tuple(
        ReferencePoint(
            name=rp.get('name', ''),
            position=_point_from_list(rp['position']),
            origin_id=rp.get('origin_id', origin.id),
            id=rp['id'],
        ) for rp in mission_dict.get('reference_points', [])
    )
    scene_objects = tuple(
        SceneObject(
            object_type=obj.get('object_type', 'box'),
            position=_point_from_list(obj['position']),
            origin_id=obj.get('origin_id', origin.id),
            width=obj.get('width', 0.0),
            length=obj.get('length', 0.0),
            height=obj.get('height', 0.0),
            name=obj.get('name', ''),
            id=obj['id'],
        ) for obj in mission_dict.get('scene_objects', [])
    )
    mission_areas = tuple(
        MissionArea(
            name=area.get('name', ''),
            object_id=area.get('object_id', ''),
            source_face_id=area.get('source_face_id', ''),
            normal=tuple(float(c) for c in area['normal']),
            vertices=tuple(_point_from_list(v) for v in area['vertices']),
            offset_vertices=tuple(_point_from_list(v) for v in area['offset_vertices']),
            area=float(area['area']),
            origin_id=area.get('origin_id', origin.id),
            offset_distance=area.get('offset_distance', 0.0),
            created_at=area.get('created_at', utc_now()),
            id=area['id'],
        ) for area in mission_dict.get('mission_areas', [])
    )
    path_segments = tuple(
        PathSegment(
            path_type=PathType(seg['path_type']),
            origin_id=seg.get('origin_id', origin.id),
            metadata=seg.get('metadata', {}),
            id=seg['id'],
            waypoints=tuple(
                Waypoint(
                    position=_point_from_list(wp['position']),
                    altitude_reference=AltitudeReference(wp.get('altitude_reference', 'relative')),
                    camera_action=CameraAction(wp.get('camera_action', 'none')),
                    speed=wp.get('speed', 5.0),
                    hold_time=wp.get('hold_time', 0.0),
                    id=wp['id'],
                ) for wp in seg.get('waypoints', [])
            ),
        ) for seg in mission_dict.get('path_segments', [])
    )

    return Mission(
        name=mission_dict.get('name', ''),
        origin=origin,
        takeoff_point=_point_from_list(mission_dict.get('takeoff_point')),
        reference_points=reference_points,
        scene_objects=scene_objects,
        mission_areas=mission_areas,
        path_segments=path_segments,
        default_speed=mission_dict.get('default_speed', 5.0),
        created_at=mission_dict.get('created_at', utc_now()),
        updated_at=mission_dict.get('updated_at', utc_now()),
        mission_id=mission_dict['mission_id'],
    )
