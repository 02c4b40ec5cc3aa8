"""
Binary record codec for the feature store.

Record layout (little-endian):

    u32   record length (bytes after this prefix)
    u8    geometry kind tag
    u16   id length
    u16   object type length
    u8    lod length
    u32   vertex count
    u32   boundary word count
    u16   attribute count
    4xf64 bbox (min_x, min_y, max_x, max_y)
    ...   id, object type, lod (utf-8)
    ...   vertices (3 x f64 each)
    ...   boundary words (u32): n_shells, *shells, n_surfaces,
          per surface: n_rings, per ring: n_idx, *idx
    ...   attributes: u16 key length, key, u8 tag, value
"""
from __future__ import annotations

import struct
from dataclasses import replace
from functools import lru_cache
from typing import Any

from features.types import GEOMETRY_KINDS, AttributeValue, Feature, Geometry
from store.errors import CorruptRecord

RECORD_PREFIX = struct.Struct("<I")
RECORD_HEADER = struct.Struct("<BHHBIIH4d")

_U16 = struct.Struct("<H")
_U8 = struct.Struct("<B")
_I64 = struct.Struct("<q")
_F64 = struct.Struct("<d")
_U32 = struct.Struct("<I")

TAG_NULL = 0
TAG_FALSE = 1
TAG_TRUE = 2
TAG_INT = 3
TAG_FLOAT = 4
TAG_STR = 5

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


@lru_cache(maxsize=256)
def _doubles(n: int) -> struct.Struct:
    return struct.Struct(f"<{n}d")


@lru_cache(maxsize=256)
def _words(n: int) -> struct.Struct:
    return struct.Struct(f"<{n}I")


def boundary_words(g: Geometry) -> list[int]:
    words: list[int] = [len(g.shells), *g.shells, len(g.surfaces)]
    for surface in g.surfaces:
        words.append(len(surface))
        for ring in surface:
            words.append(len(ring))
            words.extend(ring)
    return words


def _encode_value(v: AttributeValue) -> bytes:
    if v is None:
        return _U8.pack(TAG_NULL)
    if v is True:
        return _U8.pack(TAG_TRUE)
    if v is False:
        return _U8.pack(TAG_FALSE)
    if isinstance(v, int) and _INT64_MIN <= v <= _INT64_MAX:
        return _U8.pack(TAG_INT) + _I64.pack(v)
    if isinstance(v, (int, float)):
        return _U8.pack(TAG_FLOAT) + _F64.pack(float(v))
    if isinstance(v, str):
        raw = v.encode("utf-8")
        return _U8.pack(TAG_STR) + _U32.pack(len(raw)) + raw
    raise TypeError(f"Unsupported attribute value type: {type(v).__name__}")


def encode_record(feature: Feature) -> bytes:
    g = feature.geometry
    if not g.vertices:
        raise ValueError(f"Feature '{feature.id}' has no vertices")
    n = len(g.vertices)
    words = boundary_words(g)
    for surface in g.surfaces:
        for ring in surface:
            for i in ring:
                if i < 0 or i >= n:
                    raise ValueError(f"Feature '{feature.id}' references missing vertex {i}")

    fid = feature.id.encode("utf-8")
    otype = feature.object_type.encode("utf-8")
    lod = (g.lod or "").encode("utf-8")
    b = g.bbox

    body = bytearray()
    body += RECORD_HEADER.pack(
        GEOMETRY_KINDS.index(g.kind),
        len(fid),
        len(otype),
        len(lod),
        n,
        len(words),
        len(feature.attributes),
        b.min_x,
        b.min_y,
        b.max_x,
        b.max_y,
    )
    body += fid
    body += otype
    body += lod
    body += _doubles(3 * n).pack(*[float(c) for v in g.vertices for c in v])
    body += _words(len(words)).pack(*words)
    for key, value in feature.attributes.items():
        k = key.encode("utf-8")
        body += _U16.pack(len(k))
        body += k
        body += _encode_value(value)

    return RECORD_PREFIX.pack(len(body)) + bytes(body)


def record_length(buf: Any, offset: int, limit: int) -> int:
    """Total size of the record at `offset`, prefix included."""
    if offset < 0 or offset + RECORD_PREFIX.size > limit:
        raise CorruptRecord(f"Record offset {offset} outside store bounds")
    (n,) = RECORD_PREFIX.unpack_from(buf, offset)
    end = offset + RECORD_PREFIX.size + n
    if n < RECORD_HEADER.size or end > limit:
        raise CorruptRecord(f"Record at {offset} declares invalid length {n}")
    return RECORD_PREFIX.size + n


def record_bbox(buf: Any, offset: int, limit: int) -> tuple[float, float, float, float]:
    """Header-only read of a record's bbox; nothing else is decoded."""
    record_length(buf, offset, limit)
    header = RECORD_HEADER.unpack_from(buf, offset + RECORD_PREFIX.size)
    return header[-4], header[-3], header[-2], header[-1]


def decode_record(buf: Any, offset: int, limit: int, *, crs: str | None = None) -> Feature:
    """
    Decode the record at `offset`; `limit` is the end of the record section.
    """
    size = record_length(buf, offset, limit)
    end = offset + size
    try:
        feature, consumed = _decode_body(buf, offset + RECORD_PREFIX.size, end, crs=crs)
    except CorruptRecord:
        raise
    except (struct.error, UnicodeDecodeError, IndexError, ValueError) as e:
        raise CorruptRecord(f"Record at {offset} is malformed: {e}") from e
    if consumed != end:
        raise CorruptRecord(f"Record at {offset} has {end - consumed} trailing bytes")
    return replace(feature, store_offset=offset)


def _text(buf: Any, pos: int, n: int, end: int) -> tuple[str, int]:
    if pos + n > end:
        raise CorruptRecord("string runs past end of record")
    return bytes(buf[pos : pos + n]).decode("utf-8"), pos + n


def _decode_body(buf: Any, pos: int, end: int, *, crs: str | None) -> tuple[Feature, int]:
    (kind_tag, id_len, type_len, lod_len, n_vertices, n_words, n_attrs, *_bbox) = (
        RECORD_HEADER.unpack_from(buf, pos)
    )
    pos += RECORD_HEADER.size
    if kind_tag >= len(GEOMETRY_KINDS):
        raise CorruptRecord(f"unknown geometry kind tag {kind_tag}")

    fid, pos = _text(buf, pos, id_len, end)
    otype, pos = _text(buf, pos, type_len, end)
    lod, pos = _text(buf, pos, lod_len, end)

    if pos + 24 * n_vertices + 4 * n_words > end:
        raise CorruptRecord("geometry runs past end of record")
    flat = _doubles(3 * n_vertices).unpack_from(buf, pos)
    pos += 24 * n_vertices
    vertices = tuple(
        (flat[i], flat[i + 1], flat[i + 2]) for i in range(0, 3 * n_vertices, 3)
    )
    words = _words(n_words).unpack_from(buf, pos)
    pos += 4 * n_words
    shells, surfaces = _decode_boundaries(words, n_vertices)

    attrs: dict[str, AttributeValue] = {}
    for _ in range(n_attrs):
        (klen,) = _U16.unpack_from(buf, pos)
        pos += _U16.size
        key, pos = _text(buf, pos, klen, end)
        value, pos = _decode_value(buf, pos, end)
        attrs[key] = value

    geometry = Geometry(
        kind=GEOMETRY_KINDS[kind_tag],
        vertices=vertices,
        surfaces=surfaces,
        shells=shells,
        lod=lod or None,
        crs=crs,
    )
    return Feature(id=fid, geometry=geometry, attributes=attrs, object_type=otype), pos


def _decode_boundaries(words: tuple[int, ...], n_vertices: int):
    i = 0

    def take() -> int:
        nonlocal i
        if i >= len(words):
            raise CorruptRecord("boundary structure truncated")
        v = words[i]
        i += 1
        return v

    n_shells = take()
    shells = tuple(take() for _ in range(n_shells))
    n_surfaces = take()
    surfaces = []
    for _ in range(n_surfaces):
        rings = []
        for _ in range(take()):
            n_idx = take()
            ring = tuple(take() for _ in range(n_idx))
            if any(v >= n_vertices for v in ring):
                raise CorruptRecord("ring references a missing vertex")
            rings.append(ring)
        surfaces.append(tuple(rings))
    if i != len(words):
        raise CorruptRecord("boundary structure has trailing words")
    if shells and sum(shells) != n_surfaces:
        raise CorruptRecord("shell sizes do not add up to the surface count")
    return shells, tuple(surfaces)


def _decode_value(buf: Any, pos: int, end: int) -> tuple[AttributeValue, int]:
    (tag,) = _U8.unpack_from(buf, pos)
    pos += 1
    if tag == TAG_NULL:
        return None, pos
    if tag == TAG_FALSE:
        return False, pos
    if tag == TAG_TRUE:
        return True, pos
    if tag == TAG_INT:
        return _I64.unpack_from(buf, pos)[0], pos + 8
    if tag == TAG_FLOAT:
        return _F64.unpack_from(buf, pos)[0], pos + 8
    if tag == TAG_STR:
        (n,) = _U32.unpack_from(buf, pos)
        return _text(buf, pos + 4, n, end)
    raise CorruptRecord(f"unknown attribute tag {tag}")
