from __future__ import annotations

from typing import Any

from features.types import Feature, Geometry
from formats.base import EncodeContext, dumps, json_safe, register


def _coords(g: Geometry, ring: tuple[int, ...], flat: bool) -> list[list[float]]:
    pts = [list(g.vertices[i][:2]) if flat else list(g.vertices[i]) for i in ring]
    if pts:
        pts.append(pts[0])
    return pts


def geometry_to_geojson(g: Geometry) -> dict[str, Any]:
    """
    Polygon stays a Polygon; every other kind (surfaces, solids) is flattened into a
    MultiPolygon of its faces. Rings are closed on output.
    """
    flat = all(v[2] == 0.0 for v in g.vertices)
    polys = [[_coords(g, ring, flat) for ring in surface] for surface in g.surfaces]
    if g.kind == "Polygon" and len(polys) == 1:
        return {"type": "Polygon", "coordinates": polys[0]}
    return {"type": "MultiPolygon", "coordinates": polys}


def feature_to_geojson(f: Feature) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": f.id,
        "geometry": geometry_to_geojson(f.geometry),
        "properties": json_safe(f.attributes),
    }


@register("json", "geojson")
class GeoJSONEncoder:
    tag = "json"
    media_type = "application/geo+json"

    def __init__(self):
        self.ctx: EncodeContext | None = None
        self.count = 0

    def encode_header(self, ctx: EncodeContext) -> bytes:
        self.ctx = ctx
        return b'{"type":"FeatureCollection","features":['

    def encode_feature(self, feature: Feature) -> bytes:
        sep = "," if self.count else ""
        self.count += 1
        return (sep + dumps(feature_to_geojson(feature))).encode("utf-8")

    def encode_footer(self) -> bytes:
        links = self.ctx.links(self.count) if self.ctx is not None else []
        return f'],"numberReturned":{self.count},"links":{dumps(links)}}}'.encode("utf-8")


def single_feature_document(feature: Feature, ctx: EncodeContext) -> dict[str, Any]:
    """Body of `/items/{featureId}` in json format."""
    links = []
    if ctx.self_href:
        links.append({"href": ctx.self_href, "rel": "self", "type": GeoJSONEncoder.media_type})
    return {"id": feature.id, "feature": feature_to_geojson(feature), "links": links}
