from __future__ import annotations

import pytest

from factories import cube, square
from features.codec import RECORD_PREFIX, decode_record, encode_record, record_bbox, record_length
from features.types import Feature, Geometry
from store.errors import CorruptRecord


def test_record_keeps_solid_structure_and_attribute_types():
    f = cube(
        "NL.IMBAG.Pand.1",
        5.0,
        6.0,
        height=12.5,
        year=1925,
        roof=12.5,
        status="Pand in gebruik",
        monument=True,
        demolished=False,
        note=None,
    )
    raw = encode_record(f)
    out = decode_record(raw, 0, len(raw), crs="EPSG:7415")

    assert out.id == f.id
    assert out.object_type == "Building"
    assert out.store_offset == 0
    g = out.geometry
    assert g.kind == "Solid"
    assert g.shells == (6,)
    assert g.surfaces == f.geometry.surfaces
    assert g.vertices == f.geometry.vertices
    assert g.lod == "2.2"
    assert g.crs == "EPSG:7415"

    assert out.attributes == f.attributes
    assert isinstance(out.attributes["year"], int)
    assert out.attributes["monument"] is True
    assert out.attributes["demolished"] is False
    assert out.attributes["note"] is None


def test_record_length_and_header_bbox():
    raw = encode_record(square("a", 1.0, 2.0, size=3.0))
    assert record_length(raw, 0, len(raw)) == len(raw)
    assert record_bbox(raw, 0, len(raw)) == (1.0, 2.0, 4.0, 5.0)


def test_truncated_record_is_corrupt():
    raw = encode_record(square("a", 0.0, 0.0))
    with pytest.raises(CorruptRecord):
        decode_record(raw[:-1], 0, len(raw) - 1)


def test_unknown_geometry_tag_is_corrupt():
    raw = bytearray(encode_record(square("a", 0.0, 0.0)))
    raw[RECORD_PREFIX.size] = 99
    with pytest.raises(CorruptRecord):
        decode_record(bytes(raw), 0, len(raw))


def test_length_prefix_covering_extra_bytes_is_corrupt():
    raw = encode_record(square("a", 0.0, 0.0))
    (n,) = RECORD_PREFIX.unpack_from(raw, 0)
    padded = RECORD_PREFIX.pack(n + 4) + raw[RECORD_PREFIX.size :] + b"\x00" * 4
    with pytest.raises(CorruptRecord):
        decode_record(padded, 0, len(padded))


def test_record_rejects_dangling_vertex_reference():
    f = square("a", 0.0, 0.0)
    bad = Geometry(
        kind="Polygon",
        vertices=f.geometry.vertices,
        surfaces=(((0, 1, 2, 9),),),
    )
    with pytest.raises(ValueError):
        encode_record(Feature(id="a", geometry=bad))
