from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Literal, TypeAlias, Union

from geo.aoi import BBox, bbox_of_points


GeometryKind = Literal["Polygon", "MultiPolygon", "MultiSurface", "CompositeSurface", "Solid"]
GEOMETRY_KINDS: tuple[GeometryKind, ...] = (
    "Polygon",
    "MultiPolygon",
    "MultiSurface",
    "CompositeSurface",
    "Solid",
)

# Closed value union for attributes; int and float are both "numbers".
AttributeValue: TypeAlias = Union[int, float, str, bool, None]

Vertex: TypeAlias = tuple[float, float, float]
Ring: TypeAlias = tuple[int, ...]  # vertex indices, open (no repeated closing vertex)
Surface: TypeAlias = tuple[Ring, ...]  # [outer_ring, *holes]


@dataclass(frozen=True)
class Geometry:
    """
    Boundary representation of a polygon / surface / solid.

    - vertices are local to the geometry (x, y, z); 2D inputs carry z=0.0
    - surfaces index into `vertices`
    - `shells` groups consecutive surfaces for Solids (exterior shell first);
      it is empty for every other kind
    """

    kind: GeometryKind
    vertices: tuple[Vertex, ...]
    surfaces: tuple[Surface, ...]
    shells: tuple[int, ...] = ()
    lod: str | None = None
    crs: str | None = None

    @property
    def bbox(self) -> BBox:
        b = bbox_of_points(self.vertices)
        if b is None:
            raise ValueError("Geometry has no vertices")
        return b

    def with_crs(self, crs: str | None) -> "Geometry":
        return replace(self, crs=crs)


@dataclass(frozen=True)
class Feature:
    """
    One stored feature.

    `store_offset` is the byte position of the record inside the snapshot; it is -1
    for features that have not been through a build yet.
    """

    id: str
    geometry: Geometry
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    object_type: str = "Building"
    store_offset: int = -1

    @property
    def bbox(self) -> BBox:
        return self.geometry.bbox


def attribute_value(v) -> AttributeValue:
    """
    Fold an arbitrary JSON value into the closed attribute union.

    Nested objects/arrays become compact JSON strings.
    """
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    return json.dumps(v, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
