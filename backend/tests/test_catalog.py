from __future__ import annotations

import pytest
from pydantic import ValidationError

from catalog.registry import clear_registry_cache, get_collection, get_registry, list_collections
from catalog.service import get_service, is_stale
from store.errors import NotFound


def test_sample_collection_is_discovered(packstore_env):
    ids = {e.config.id for e in list_collections()}
    assert "pand_sample" in ids
    entry = get_collection("pand_sample")
    assert entry.config.crs == "EPSG:7415"
    assert entry.config.source.type == "cjseq"
    assert "oorspronkelijkbouwjaar" in entry.config.index.indexedFields
    assert entry.source_path.exists()
    assert entry.snapshot_path == packstore_env / "data" / "snapshots" / "pand_sample.pks"
    with pytest.raises(NotFound):
        get_collection("nope")


def test_snapshot_is_built_on_first_access(packstore_env):
    entry = get_collection("pand_sample")
    assert is_stale(entry)
    handle = get_service().handle("pand_sample")
    assert entry.snapshot_path.exists()
    assert not is_stale(entry)
    assert handle.current.feature_count == 4
    assert get_service().handle("pand_sample") is handle


def test_rebuild_publishes_and_retires(packstore_env):
    service = get_service()
    handle = service.handle("pand_sample")
    old = handle.current
    new = service.rebuild("pand_sample")
    assert handle.current is new
    assert old.closed
    assert new.feature_count == 4


def _write_collection(root, name, body):
    d = root / name
    d.mkdir(parents=True)
    (d / "collection.yaml").write_text(body, encoding="utf-8")


def test_invalid_paging_is_rejected(tmp_path, monkeypatch):
    root = tmp_path / "collections"
    _write_collection(
        root,
        "broken",
        "id: broken\ntitle: Broken\nsource: {type: geojson, path: x.geojson}\n"
        "paging: {defaultLimit: 50, maxLimit: 10}\n",
    )
    monkeypatch.setenv("PACKSTORE_COLLECTIONS_DIR", str(root))
    clear_registry_cache()
    try:
        with pytest.raises(ValidationError):
            get_registry()
    finally:
        clear_registry_cache()


def test_defaults_and_disabled_collections(tmp_path, monkeypatch):
    root = tmp_path / "collections"
    _write_collection(root, "a", "id: a\ntitle: A\nsource: {type: geojson, path: a.geojson}\n")
    _write_collection(root, "b", "id: b\ntitle: B\nenabled: false\nsource: {type: cityjson, path: b.json}\n")
    monkeypatch.setenv("PACKSTORE_COLLECTIONS_DIR", str(root))
    monkeypatch.setenv("PACKSTORE_DATA_DIR", str(tmp_path / "data"))
    clear_registry_cache()
    try:
        reg = get_registry()
        assert list(reg) == ["a"]
        cfg = reg["a"].config
        assert cfg.index.fanout == 16
        assert cfg.index.hilbertBitDepth == 16
        assert cfg.paging.defaultLimit == 10
        assert cfg.allowFullScan is False
        assert reg["a"].snapshot_path == tmp_path / "data" / "snapshots" / "a.pks"
    finally:
        clear_registry_cache()
