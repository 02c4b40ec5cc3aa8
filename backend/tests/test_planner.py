from __future__ import annotations

import pytest

from factories import grid, square
from geo.aoi import BBox
from query.planner import QueryEvaluator
from query.types import Query, QueryLimits
from store.build import BuildOptions, build_snapshot_bytes
from store.errors import InvalidBoundingBox, InvalidFilter, InvalidQuery, NotFound, UnindexedField
from store.snapshot import Snapshot


def _snapshot(features, *, crs=None, fields=("height", "kind")):
    return Snapshot.from_bytes(
        build_snapshot_bytes(features, BuildOptions(indexed_fields=fields, crs=crs))
    )


@pytest.fixture
def snap():
    return _snapshot(grid(1000))


def _ids(result):
    return [f.id for f in result]


def _naive(snap, *, bbox=None, pred=lambda a: True):
    return [
        f.id
        for f in snap.store.scan()
        if (bbox is None or f.bbox.intersects(bbox)) and pred(f.attributes)
    ]


def test_combined_query_with_equality_is_driven_by_attribute_index(snap):
    q = BBox(0.0, 0.0, 30.0, 30.0)
    ev = QueryEvaluator(snap, QueryLimits(max_limit=10_000))
    result = ev.execute(Query(bbox=q, filter="height = 5", limit=1000))
    assert result.plan.name == "filter+bbox"
    assert _ids(result) == _naive(snap, bbox=q, pred=lambda a: a["height"] == 5)


def test_combined_range_query_is_driven_by_spatial_index(snap):
    q = BBox(0.0, 0.0, 30.0, 30.0)
    result = QueryEvaluator(snap).execute(Query(bbox=q, filter="height > 50 AND kind = 'b'", limit=1000))
    assert result.plan.name == "filter+bbox"
    result.close()

    result = QueryEvaluator(snap).execute(Query(bbox=q, filter="height > 50", limit=1000))
    assert result.plan.name == "bbox+filter"
    assert _ids(result) == _naive(snap, bbox=q, pred=lambda a: a["height"] > 50)


def test_every_plan_returns_storage_order(snap):
    q = BBox(0.0, 0.0, 40.0, 40.0)
    pred = lambda a: a["kind"] == "c" and 10 <= a["height"] < 60  # noqa: E731
    ev = QueryEvaluator(snap, QueryLimits(max_limit=10_000))
    expected = _naive(snap, bbox=q, pred=pred)
    assert expected
    for text in ("kind = 'c' AND height >= 10 AND height < 60", "height >= 10 AND height < 60 AND kind = 'c'"):
        assert _ids(ev.execute(Query(bbox=q, filter=text, limit=10_000))) == expected
    assert _ids(
        ev.execute(Query(filter="kind = 'c' AND height >= 10 AND height < 60", limit=10_000))
    ) == _naive(snap, pred=pred)


def test_limit_stops_decoding_early(snap, monkeypatch):
    decoded = []
    orig = snap.store.get

    def counting_get(offset):
        decoded.append(offset)
        return orig(offset)

    monkeypatch.setattr(snap.store, "get", counting_get)
    ev = QueryEvaluator(snap)

    for query in (
        Query(limit=10),
        Query(bbox=BBox(-1.0, -1.0, 1e6, 1e6), limit=10),
        Query(filter="kind = 'a'", limit=10),
        Query(limit=10, offset=900),
    ):
        decoded.clear()
        assert len(_ids(ev.execute(query))) == 10
        assert len(decoded) == 10


def test_limit_defaults_and_clamping(snap):
    ev = QueryEvaluator(snap, QueryLimits(default_limit=5, max_limit=20))
    assert len(_ids(ev.execute(Query()))) == 5
    assert len(_ids(ev.execute(Query(limit=500)))) == 20
    with pytest.raises(InvalidQuery):
        ev.execute(Query(limit=0))
    with pytest.raises(InvalidQuery):
        ev.execute(Query(offset=-1))


def test_pagination_walks_the_same_sequence(snap):
    q = BBox(0.0, 0.0, 25.0, 25.0)
    ev = QueryEvaluator(snap)
    full = _ids(ev.execute(Query(bbox=q, filter="kind = 'b'", limit=1000)))

    pages = []
    offset = 0
    while True:
        result = ev.execute(Query(bbox=q, filter="kind = 'b'", limit=7, offset=offset))
        pages.extend(_ids(result))
        if result.next_offset is None:
            break
        offset = result.next_offset
    assert pages == full


def test_identifier_query_still_checks_bbox_and_filter(snap):
    ev = QueryEvaluator(snap)
    hit = snap.store.get(snap.identifiers.lookup("f00003"))
    assert _ids(ev.execute(Query(feature_id="f00003"))) == ["f00003"]
    assert _ids(ev.execute(Query(feature_id="f00003", bbox=hit.bbox))) == ["f00003"]
    assert _ids(ev.execute(Query(feature_id="f00003", bbox=BBox(500.0, 500.0, 501.0, 501.0)))) == []
    assert _ids(ev.execute(Query(feature_id="f00003", filter="height = 4"))) == []
    assert _ids(ev.execute(Query(feature_id="nope"))) == []
    assert ev.execute(Query(feature_id="f00003")).plan.name == "id"


def test_get_feature(snap):
    ev = QueryEvaluator(snap)
    assert ev.get_feature("f00010").attributes["height"] == 10
    with pytest.raises(NotFound):
        ev.get_feature("Z")
    assert snap.refs == 0


def test_unindexed_filters_need_full_scan_opt_in():
    snap = _snapshot(grid(50), fields=("height",))
    with pytest.raises(UnindexedField):
        QueryEvaluator(snap).execute(Query(filter="kind = 'a'"))
    with pytest.raises(UnindexedField):
        QueryEvaluator(snap).execute(Query(filter="height = 1 OR height = 2"))

    ev = QueryEvaluator(snap, QueryLimits(allow_full_scan=True))
    result = ev.execute(Query(filter="kind = 'a'", limit=100))
    assert result.plan.name == "filter-scan"
    assert _ids(result) == _naive(snap, pred=lambda a: a["kind"] == "a")


def test_or_filter_with_bbox_is_a_residual_check(snap):
    q = BBox(0.0, 0.0, 20.0, 20.0)
    result = QueryEvaluator(snap).execute(Query(bbox=q, filter="height = 1 OR height = 2", limit=1000))
    assert result.plan.name == "bbox+filter"
    assert _ids(result) == _naive(snap, bbox=q, pred=lambda a: a["height"] in (1, 2))


def test_bad_inputs_raise_client_errors(snap):
    ev = QueryEvaluator(snap)
    with pytest.raises(InvalidFilter):
        ev.execute(Query(filter="height >"))
    with pytest.raises(InvalidBoundingBox):
        ev.execute(Query(bbox=BBox(5.0, 0.0, 1.0, 1.0)))
    assert snap.refs == 0


def test_bbox_crs_goes_through_the_injected_transform():
    snap = _snapshot(grid(20), crs="EPSG:7415")
    calls = []

    def shift(bbox, src, dst):
        calls.append((src, dst))
        return BBox(bbox.min_x - 100.0, bbox.min_y, bbox.max_x - 100.0, bbox.max_y)

    ev = QueryEvaluator(snap, transform=shift)
    result = ev.execute(
        Query(
            bbox=BBox(100.0, 0.0, 101.0, 1.0),
            bbox_crs="http://www.opengis.net/def/crs/EPSG/0/4326",
            limit=100,
        )
    )
    assert calls == [("EPSG:4326", "EPSG:7415")]
    assert _ids(result) == _naive(snap, bbox=BBox(0.0, 0.0, 1.0, 1.0))

    # same CRS, other spelling: no transform
    ev.execute(Query(bbox=BBox(0.0, 0.0, 1.0, 1.0), bbox_crs="epsg:7415")).close()
    assert len(calls) == 1

    with pytest.raises(InvalidBoundingBox):
        QueryEvaluator(snap).execute(Query(bbox=BBox(0.0, 0.0, 1.0, 1.0), bbox_crs="EPSG:4326"))


def test_result_holds_snapshot_until_closed(snap):
    closed = []
    result = QueryEvaluator(snap).execute(Query(limit=3))
    result.add_close_callback(closed.append)
    assert snap.refs == 1
    it = iter(result)
    next(it)
    result.close()
    result.close()
    assert snap.refs == 0
    assert closed == [result]
    assert result.number_returned == 1


def test_exhausted_result_reports_counts(snap):
    result = QueryEvaluator(snap).execute(Query(filter="height = 7", limit=100))
    assert len(_ids(result)) == 10
    assert result.number_returned == 10
    assert result.next_offset is None
    assert snap.refs == 0

    full = QueryEvaluator(snap).execute(Query(limit=10, offset=20))
    list(full)
    assert full.next_offset == 30


def test_query_types():
    assert Query(feature_id="a").query_type == "id"
    assert Query(bbox=BBox(0, 0, 1, 1), filter="a = 1").query_type == "combined"
    assert Query(bbox=BBox(0, 0, 1, 1)).query_type == "bbox"
    assert Query(filter="a = 1").query_type == "filter"
    assert Query().query_type == "scan"


def test_empty_snapshot_answers_every_shape():
    snap = _snapshot([])
    ev = QueryEvaluator(snap)
    assert _ids(ev.execute(Query())) == []
    assert _ids(ev.execute(Query(bbox=BBox(0, 0, 1, 1)))) == []
    assert _ids(ev.execute(Query(filter="height = 1"))) == []
    assert _ids(ev.execute(Query(feature_id="x"))) == []


def test_single_square_fixture_is_found_by_bbox():
    snap = _snapshot([square("only", 3.0, 4.0, height=1, kind="a")])
    assert _ids(QueryEvaluator(snap).execute(Query(bbox=BBox(3.5, 4.5, 3.6, 4.6)))) == ["only"]
