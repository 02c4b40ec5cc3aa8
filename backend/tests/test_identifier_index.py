from __future__ import annotations

import pytest

from factories import square
from store.build import build_snapshot_bytes
from store.errors import BuildFailed, NotFound
from store.identifiers import IdentifierIndex, build_identifier_index
from store.snapshot import Snapshot


def test_lookup_finds_every_id_and_rejects_unknown():
    snap = Snapshot.from_bytes(
        build_snapshot_bytes([square("X", 0.0, 0.0), square("Y", 5.0, 5.0)])
    )
    ids = snap.identifiers
    assert snap.store.get(ids.lookup("X")).id == "X"
    assert snap.store.get(ids.lookup("Y")).id == "Y"
    assert "X" in ids
    assert "Z" not in ids
    assert ids.get("Z") is None
    with pytest.raises(NotFound):
        ids.lookup("Z")


def test_ids_are_sorted_for_binary_search():
    raw = build_identifier_index([("b", 10), ("c", 20), ("a", 30), ("é", 40)])
    idx = IdentifierIndex(raw, start=0, end=len(raw))
    assert [idx[i] for i in range(len(idx))] == ["a", "b", "c", "é"]
    assert idx.get("a") == 30
    assert idx.get("é") == 40


def test_duplicate_ids_fail_the_build():
    with pytest.raises(BuildFailed):
        build_identifier_index([("a", 1), ("a", 2)])
    with pytest.raises(BuildFailed):
        build_snapshot_bytes([square("a", 0.0, 0.0), square("a", 3.0, 3.0)])
