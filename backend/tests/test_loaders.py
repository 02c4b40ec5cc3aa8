from __future__ import annotations

import json

import pytest

from conftest import REPO_ROOT
from features.loaders import load_cityjson, load_cjseq, load_features, load_geojson
from store.errors import BuildFailed


def test_geojson_polygons_and_multipolygons(tmp_path):
    path = tmp_path / "pand.geojson"
    path.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "id": "p1",
                        "geometry": {
                            "type": "Polygon",
                            "coordinates": [[[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]]],
                        },
                        "properties": {"bouwjaar": 1930, "tags": {"a": 1}},
                    },
                    {
                        "type": "Feature",
                        "geometry": {
                            "type": "MultiPolygon",
                            "coordinates": [
                                [[[10, 0, 1], [11, 0, 1], [11, 1, 1], [10, 0, 1]]],
                                [[[20, 0, 2], [21, 0, 2], [21, 1, 2], [20, 0, 2]]],
                            ],
                        },
                        "properties": {"id": "p2"},
                    },
                    {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 1]}, "properties": {}},
                ],
            }
        ),
        encoding="utf-8",
    )
    feats = load_geojson(path, crs="EPSG:28992")
    assert [f.id for f in feats] == ["p1", "p2"]
    p1, p2 = feats
    assert p1.geometry.kind == "Polygon"
    # closing vertex dropped
    assert p1.geometry.surfaces == (((0, 1, 2, 3),),)
    assert p1.geometry.vertices[2] == (4.0, 4.0, 0.0)
    assert p1.geometry.crs == "EPSG:28992"
    assert p1.attributes == {"bouwjaar": 1930, "tags": '{"a":1}'}
    assert p2.geometry.kind == "MultiPolygon"
    assert len(p2.geometry.surfaces) == 2
    assert p2.bbox.as_tuple() == (10.0, 0.0, 21.0, 1.0)


def test_cityjson_parent_takes_geometry_of_first_part(tmp_path):
    doc = {
        "type": "CityJSON",
        "version": "2.0",
        "transform": {"scale": [0.01, 0.01, 0.01], "translate": [100.0, 200.0, 0.0]},
        "CityObjects": {
            "B1": {"type": "Building", "attributes": {"roof": 9.5}, "children": ["B1-0"]},
            "B1-0": {
                "type": "BuildingPart",
                "parents": ["B1"],
                "geometry": [
                    {"type": "MultiSurface", "lod": "0", "boundaries": [[[0, 1, 2]]]},
                    {"type": "MultiSurface", "lod": "1.2", "boundaries": [[[0, 1, 2, 3]]]},
                ],
            },
            "Tree": {"type": "SolitaryVegetationObject", "geometry": [{"type": "MultiPoint", "boundaries": [0]}]},
        },
        "vertices": [[0, 0, 0], [100, 0, 0], [100, 100, 0], [0, 100, 0]],
    }
    path = tmp_path / "city.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    feats = load_cityjson(path)
    assert [f.id for f in feats] == ["B1"]
    b1 = feats[0]
    assert b1.object_type == "Building"
    assert b1.attributes == {"roof": 9.5}
    assert b1.geometry.lod == "1.2"
    assert b1.geometry.kind == "MultiSurface"
    assert b1.geometry.vertices[1] == pytest.approx((101.0, 200.0, 0.0))


def test_sample_collection_loads_as_solids():
    feats = load_cjseq(REPO_ROOT / "collections" / "pand_sample" / "pand.city.jsonl")
    assert len(feats) == 4
    first = feats[0]
    assert first.id == "NL.IMBAG.Pand.0363100012061163"
    assert first.geometry.kind == "Solid"
    assert first.geometry.shells == (6,)
    assert first.geometry.vertices[0] == pytest.approx((85000.0, 446000.0, 0.0))
    assert first.attributes["oorspronkelijkbouwjaar"] == 1925


def test_load_features_wraps_failures(tmp_path):
    bad = tmp_path / "bad.geojson"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(BuildFailed):
        load_features("geojson", bad)
    with pytest.raises(BuildFailed):
        load_features("geojson", tmp_path / "missing.geojson")
    with pytest.raises(BuildFailed):
        load_features("shapefile", bad)
