from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

from features.types import Feature, Geometry, Surface, Vertex, attribute_value
from store.errors import BuildFailed

logger = logging.getLogger(__name__)

SOURCE_TYPES = ("geojson", "cityjson", "cjseq")

_CITYJSON_KINDS = {"MultiSurface", "CompositeSurface", "Solid"}


class _VertexPool:
    """Collects vertices for one feature, re-indexing them from 0."""

    def __init__(self):
        self.vertices: list[Vertex] = []
        self._index: dict[Any, int] = {}

    def add(self, key: Any, v: Vertex) -> int:
        i = self._index.get(key)
        if i is None:
            i = len(self.vertices)
            self._index[key] = i
            self.vertices.append(v)
        return i


def _open_ring(ring: list[int]) -> tuple[int, ...]:
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    return tuple(ring)


def _xyz(p: Any) -> Vertex:
    if not p or len(p) < 2:
        raise ValueError(f"invalid position {p!r}")
    z = float(p[2]) if len(p) > 2 and p[2] is not None else 0.0
    return float(p[0]), float(p[1]), z


def _geojson_surface(rings: list, pool: _VertexPool) -> Surface:
    out = []
    for ring in rings or []:
        idx = []
        for p in ring or []:
            v = _xyz(p)
            idx.append(pool.add(v, v))
        r = _open_ring(idx)
        if len(r) >= 3:
            out.append(r)
    return tuple(out)


def geojson_feature(feature: dict[str, Any], i: int, *, crs: str | None = None) -> Feature | None:
    geom = (feature or {}).get("geometry") or {}
    props = (feature or {}).get("properties") or {}
    gtype = geom.get("type")
    coords = geom.get("coordinates")
    if not coords or gtype not in {"Polygon", "MultiPolygon"}:
        return None

    fid = str((feature or {}).get("id") or props.get("id") or f"feature-{i}")
    pool = _VertexPool()
    if gtype == "Polygon":
        surfaces = [_geojson_surface(coords, pool)]
    else:
        surfaces = [_geojson_surface(poly, pool) for poly in coords]
    surfaces = [s for s in surfaces if s]
    if not surfaces:
        return None

    return Feature(
        id=fid,
        geometry=Geometry(
            kind=gtype,
            vertices=tuple(pool.vertices),
            surfaces=tuple(surfaces),
            crs=crs,
        ),
        attributes={str(k): attribute_value(v) for k, v in props.items()},
    )


def load_geojson(path: Path, *, crs: str | None = None) -> list[Feature]:
    """Polygon / MultiPolygon features of a GeoJSON FeatureCollection; others are skipped."""
    data = json.loads(path.read_text(encoding="utf-8"))
    out: list[Feature] = []
    skipped = 0
    for i, feature in enumerate(data.get("features") or []):
        f = geojson_feature(feature, i, crs=crs)
        if f is None:
            skipped += 1
            continue
        out.append(f)
    if skipped:
        logger.info("Skipped %d non-polygon features in %s", skipped, path)
    return out


def _dequantize(vertices: list, transform: dict[str, Any] | None) -> list[Vertex]:
    if not transform:
        return [_xyz(v) for v in vertices]
    sx, sy, sz = transform.get("scale") or (1.0, 1.0, 1.0)
    tx, ty, tz = transform.get("translate") or (0.0, 0.0, 0.0)
    return [(v[0] * sx + tx, v[1] * sy + ty, v[2] * sz + tz) for v in vertices]


def _pick_geometry(geometries: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Highest LoD among the supported geometry types."""
    usable = [g for g in geometries or [] if g.get("type") in _CITYJSON_KINDS and g.get("boundaries")]
    if not usable:
        return None
    return max(usable, key=lambda g: str(g.get("lod", "")))


def _cityjson_geometry(
    g: dict[str, Any], vertices: list[Vertex], *, crs: str | None
) -> Geometry:
    pool = _VertexPool()

    def surface(raw: list) -> Surface:
        rings = []
        for ring in raw:
            r = _open_ring([pool.add(i, vertices[i]) for i in ring])
            if len(r) >= 3:
                rings.append(r)
        return tuple(rings)

    kind = g["type"]
    shells: tuple[int, ...] = ()
    if kind == "Solid":
        surfaces = []
        sizes = []
        for shell in g["boundaries"]:
            faces = [s for s in (surface(raw) for raw in shell) if s]
            surfaces.extend(faces)
            sizes.append(len(faces))
        shells = tuple(sizes)
    else:
        surfaces = [s for s in (surface(raw) for raw in g["boundaries"]) if s]

    lod = g.get("lod")
    return Geometry(
        kind=kind,
        vertices=tuple(pool.vertices),
        surfaces=tuple(surfaces),
        shells=shells,
        lod=str(lod) if lod is not None else None,
        crs=crs,
    )


def _city_features(
    objects: dict[str, Any], vertices: list[Vertex], *, crs: str | None, only: Iterable[str] | None = None
) -> Iterator[Feature]:
    """
    One feature per top-level city object. A parent without geometry of its own
    (e.g. a Building made of BuildingParts) takes the geometry of its first child.
    """
    ids = list(only) if only is not None else [k for k, o in objects.items() if not o.get("parents")]
    for oid in ids:
        obj = objects.get(oid) or {}
        geom = _pick_geometry(obj.get("geometry") or [])
        if geom is None:
            for child in obj.get("children") or []:
                geom = _pick_geometry((objects.get(child) or {}).get("geometry") or [])
                if geom is not None:
                    break
        if geom is None:
            continue
        yield Feature(
            id=str(oid),
            geometry=_cityjson_geometry(geom, vertices, crs=crs),
            attributes={str(k): attribute_value(v) for k, v in (obj.get("attributes") or {}).items()},
            object_type=str(obj.get("type") or "Building"),
        )


def load_cityjson(path: Path, *, crs: str | None = None) -> list[Feature]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if data.get("type") != "CityJSON":
        raise ValueError(f"{path} is not a CityJSON document")
    vertices = _dequantize(data.get("vertices") or [], data.get("transform"))
    return list(_city_features(data.get("CityObjects") or {}, vertices, crs=crs))


def load_cjseq(path: Path, *, crs: str | None = None) -> list[Feature]:
    """CityJSONSeq: a CityJSON header line, then one CityJSONFeature per line."""
    out: list[Feature] = []
    transform = None
    with open(path, encoding="utf-8") as fh:
        for n, line in enumerate(fh):
            line = line.strip()
            if not line:
                continue
            doc = json.loads(line)
            if doc.get("type") == "CityJSON":
                transform = doc.get("transform")
                continue
            if doc.get("type") != "CityJSONFeature":
                raise ValueError(f"{path}:{n + 1}: unexpected object type {doc.get('type')!r}")
            vertices = _dequantize(doc.get("vertices") or [], transform)
            objects = doc.get("CityObjects") or {}
            fid = doc.get("id")
            only = [fid] if fid in objects else None
            out.extend(_city_features(objects, vertices, crs=crs, only=only))
    return out


def load_features(source_type: str, path: Path | str, *, crs: str | None = None) -> list[Feature]:
    p = Path(path)
    loaders = {"geojson": load_geojson, "cityjson": load_cityjson, "cjseq": load_cjseq}
    loader = loaders.get(source_type)
    if loader is None:
        raise BuildFailed(f"Unknown source type '{source_type}' (expected one of {', '.join(SOURCE_TYPES)})")
    try:
        features = loader(p, crs=crs)
    except (OSError, ValueError, KeyError, IndexError, TypeError) as e:
        raise BuildFailed(f"Could not load {source_type} source {p}: {e}") from e
    logger.info("Loaded %d features from %s", len(features), p)
    return features
