from __future__ import annotations

import random

import pytest

from factories import grid, square
from query.planner import QueryEvaluator
from query.types import Query
from store.build import BuildOptions, build_snapshot_bytes
from store.errors import UnindexedField
from store.snapshot import Snapshot


def _snapshot(features, *fields):
    return Snapshot.from_bytes(build_snapshot_bytes(features, BuildOptions(indexed_fields=fields)))


def _values(snap, offsets, field):
    return [snap.store.get(o).attributes.get(field) for o in offsets]


def test_half_open_range_on_heights():
    feats = [square(f"h{h}", float(i), 0.0, height=h) for i, h in enumerate([10, 20, 30, 40, 50])]
    snap = _snapshot(feats, "height")
    got = _values(snap, snap.attributes.range("height", 20, 40, True, False), "height")
    assert got == [20, 30]


def test_range_yields_in_value_order():
    snap = _snapshot(grid(300), "height")
    got = _values(snap, snap.attributes.range("height", 10, 60), "height")
    assert got == sorted(got)
    assert set(got) == set(range(10, 61))


def test_equals_strings_and_type_mismatch():
    snap = _snapshot(grid(30), "kind", "height")
    a = _values(snap, snap.attributes.equals("kind", "a"), "kind")
    assert a == ["a"] * 10
    # equal keys come back by ascending record offset
    offs = list(snap.attributes.equals("kind", "a"))
    assert offs == sorted(offs)
    # numbers never equal strings
    assert list(snap.attributes.equals("height", "5")) == []
    assert list(snap.attributes.equals("kind", "zzz")) == []


def test_integers_and_floats_compare_as_numbers():
    feats = [square("i", 0.0, 0.0, v=2), square("f", 2.0, 0.0, v=2.0), square("g", 4.0, 0.0, v=2.5)]
    snap = _snapshot(feats, "v")
    assert snap.attributes.count_equals("v", 2) == 2
    assert snap.attributes.count_range("v", 2, 3, False, True) == 1


def test_integers_beyond_f64_precision_match_exactly():
    big = 2**53
    feats = [square("a", 0.0, 0.0, code=big + 1), square("b", 2.0, 0.0, code=big), square("c", 4.0, 0.0, code=big + 2)]
    snap = _snapshot(feats, "code")
    ev = QueryEvaluator(snap)

    with ev.execute(Query(filter=f"code = {big + 1}")) as result:
        assert result.plan.needs_filter_check
        assert [f.id for f in result] == ["a"]
    with ev.execute(Query(filter=f"code = {big}")) as result:
        assert [f.id for f in result] == ["b"]
    with ev.execute(Query(filter=f"code > {big}")) as result:
        assert sorted(f.id for f in result) == ["a", "c"]
    with ev.execute(Query(filter=f"code < {big + 2}")) as result:
        assert sorted(f.id for f in result) == ["a", "b"]


def test_small_literals_stay_index_exact():
    snap = _snapshot(grid(30), "height")
    with QueryEvaluator(snap).execute(Query(filter="height > 20")) as result:
        assert result.plan.exact


def test_booleans_rank_below_numbers():
    feats = [square("t", 0.0, 0.0, flag=True), square("n", 2.0, 0.0, flag=1), square("f", 4.0, 0.0, flag=False)]
    snap = _snapshot(feats, "flag")
    assert [snap.store.get(o).id for o in snap.attributes.equals("flag", True)] == ["t"]
    assert [snap.store.get(o).id for o in snap.attributes.equals("flag", 1)] == ["n"]


def test_nulls_and_missing_values_are_not_indexed():
    feats = [square("a", 0.0, 0.0, height=None), square("b", 2.0, 0.0), square("c", 4.0, 0.0, height=3)]
    snap = _snapshot(feats, "height")
    assert snap.attributes.entry_count("height") == 1
    assert list(snap.attributes.equals("height", None)) == []


def test_unindexed_field_raises_before_iteration():
    snap = _snapshot(grid(10), "height")
    with pytest.raises(UnindexedField):
        snap.attributes.equals("kind", "a")
    with pytest.raises(UnindexedField):
        snap.attributes.range("kind", "a", "b")


def test_index_matches_naive_scan():
    rnd = random.Random(3)
    feats = grid(400)
    snap = _snapshot(feats, "height")
    all_features = list(snap.store.scan())
    for _ in range(40):
        lo, hi = sorted(rnd.sample(range(-5, 105), 2))
        inc_lo, inc_hi = rnd.choice([True, False]), rnd.choice([True, False])
        got = set(snap.attributes.range("height", lo, hi, inc_lo, inc_hi))
        expected = {
            f.store_offset
            for f in all_features
            if (lo <= f.attributes["height"] if inc_lo else lo < f.attributes["height"])
            and (f.attributes["height"] <= hi if inc_hi else f.attributes["height"] < hi)
        }
        assert got == expected


def test_open_ended_ranges():
    snap = _snapshot(grid(100), "height")
    assert snap.attributes.count_range("height", 90, None) == 10
    assert snap.attributes.count_range("height", None, 9, True, False) == 9
    assert snap.attributes.count_range("height", 50, 10) == 0
