"""
CityJSON 2.0 output.

The whole page is one document; vertices are shared across city objects and written
(quantized) after the `CityObjects` member, so features still stream out one by one.
"""
from __future__ import annotations

from typing import Any, Callable

from features.types import Feature, Geometry, Vertex
from formats.base import EncodeContext, dumps, json_safe, register
from geo.crs import crs_uri

CITYJSON_VERSION = "2.0"
DEFAULT_SCALE = 0.001


def transform_for(ctx: EncodeContext, scale: float = DEFAULT_SCALE) -> dict[str, list[float]]:
    if ctx.extent is not None:
        translate = [ctx.extent.min_x, ctx.extent.min_y, 0.0]
    else:
        translate = [0.0, 0.0, 0.0]
    return {"scale": [scale, scale, scale], "translate": translate}


def quantize(v: Vertex, transform: dict[str, list[float]]) -> list[int]:
    s = transform["scale"]
    t = transform["translate"]
    return [int(round((v[k] - t[k]) / s[k])) for k in range(3)]


def metadata(ctx: EncodeContext) -> dict[str, Any]:
    out: dict[str, Any] = {"identifier": ctx.collection_id}
    if ctx.title:
        out["title"] = ctx.title
    uri = crs_uri(ctx.crs)
    if uri:
        out["referenceSystem"] = uri
    if ctx.extent is not None:
        e = ctx.extent
        out["geographicalExtent"] = [e.min_x, e.min_y, 0.0, e.max_x, e.max_y, 0.0]
    return out


def geometry_object(g: Geometry, index: Callable[[int], int]) -> dict[str, Any]:
    """
    CityJSON geometry with boundaries re-indexed through `index`.

    Polygon and MultiPolygon have no CityJSON counterpart and go out as MultiSurface.
    """
    surfaces = [[[index(i) for i in ring] for ring in surface] for surface in g.surfaces]
    if g.kind == "Solid":
        shells = []
        pos = 0
        for n in g.shells or (len(surfaces),):
            shells.append(surfaces[pos : pos + n])
            pos += n
        kind, boundaries = "Solid", shells
    elif g.kind == "CompositeSurface":
        kind, boundaries = "CompositeSurface", surfaces
    else:
        kind, boundaries = "MultiSurface", surfaces
    out: dict[str, Any] = {"type": kind, "lod": g.lod or "1", "boundaries": boundaries}
    return out


def city_object(f: Feature, index: Callable[[int], int]) -> dict[str, Any]:
    obj: dict[str, Any] = {"type": f.object_type}
    if f.attributes:
        obj["attributes"] = json_safe(f.attributes)
    obj["geometry"] = [geometry_object(f.geometry, index)]
    return obj


@register("cityjson")
class CityJSONEncoder:
    tag = "cityjson"
    media_type = "application/city+json"

    def __init__(self):
        self.ctx: EncodeContext | None = None
        self.vertices: list[Vertex] = []
        self.count = 0

    def encode_header(self, ctx: EncodeContext) -> bytes:
        self.ctx = ctx
        return f'{{"type":"CityJSON","version":"{CITYJSON_VERSION}","CityObjects":{{'.encode("utf-8")

    def encode_feature(self, feature: Feature) -> bytes:
        base = len(self.vertices)
        self.vertices.extend(feature.geometry.vertices)
        obj = city_object(feature, lambda i: base + i)
        sep = "," if self.count else ""
        self.count += 1
        return f"{sep}{dumps(feature.id)}:{dumps(obj)}".encode("utf-8")

    def encode_footer(self) -> bytes:
        ctx = self.ctx or EncodeContext(collection_id="features")
        transform = transform_for(ctx)
        vertices = [quantize(v, transform) for v in self.vertices]
        tail = (
            f'}},"transform":{dumps(transform)},"metadata":{dumps(metadata(ctx))},'
            f'"vertices":{dumps(vertices)}}}'
        )
        return tail.encode("utf-8")
