from __future__ import annotations

import logging
import threading
from functools import lru_cache
from pathlib import Path

from catalog.registry import CollectionEntry, get_collection
from features.loaders import load_features
from geo.crs import transform_bbox
from query.planner import QueryEvaluator
from query.types import QueryLimits
from store.build import BuildOptions, build_snapshot_file
from store.errors import CorruptRecord
from store.snapshot import Snapshot, SnapshotHandle

logger = logging.getLogger(__name__)


def build_options(entry: CollectionEntry) -> BuildOptions:
    cfg = entry.config
    return BuildOptions(
        collection_id=cfg.id,
        title=cfg.title,
        crs=cfg.crs,
        fanout=cfg.index.fanout,
        indexed_fields=tuple(cfg.index.indexedFields),
        hilbert_bit_depth=cfg.index.hilbertBitDepth,
    )


def query_limits(entry: CollectionEntry) -> QueryLimits:
    cfg = entry.config
    return QueryLimits(
        default_limit=cfg.paging.defaultLimit,
        max_limit=cfg.paging.maxLimit,
        allow_full_scan=cfg.allowFullScan,
    )


def build_collection(entry: CollectionEntry) -> Path:
    """Load the collection's source and write its snapshot file."""
    features = load_features(entry.config.source.type, entry.source_path, crs=entry.config.crs)
    return build_snapshot_file(features, entry.snapshot_path, build_options(entry))


def is_stale(entry: CollectionEntry) -> bool:
    snap = entry.snapshot_path
    if not snap.exists():
        return True
    src = entry.source_path
    return src.exists() and src.stat().st_mtime > snap.stat().st_mtime


class CollectionService:
    """
    Owns one `SnapshotHandle` per collection.

    Snapshots are opened on first use, building them first when the file is missing
    or older than its source.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: dict[str, SnapshotHandle] = {}

    def handle(self, collection_id: str) -> SnapshotHandle:
        entry = get_collection(collection_id)
        with self._lock:
            h = self._handles.get(entry.config.id)
            if h is None:
                h = SnapshotHandle(entry.config.id)
                h.publish(self._open(entry))
                self._handles[entry.config.id] = h
            return h

    def evaluator(self, collection_id: str, snapshot: Snapshot) -> QueryEvaluator:
        entry = get_collection(collection_id)
        return QueryEvaluator(snapshot, query_limits(entry), transform=transform_bbox)

    def rebuild(self, collection_id: str) -> Snapshot:
        """Rebuild from source and publish; readers of the old snapshot finish on it."""
        entry = get_collection(collection_id)
        build_collection(entry)
        snap = Snapshot.open(entry.snapshot_path)
        with self._lock:
            h = self._handles.setdefault(entry.config.id, SnapshotHandle(entry.config.id))
        h.publish(snap)
        return snap

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for h in handles:
            h.close()

    def _open(self, entry: CollectionEntry) -> Snapshot:
        if is_stale(entry):
            logger.info("Snapshot for '%s' missing or stale; building", entry.config.id)
            build_collection(entry)
        try:
            return Snapshot.open(entry.snapshot_path)
        except CorruptRecord:
            logger.warning("Snapshot for '%s' failed verification; rebuilding", entry.config.id)
            build_collection(entry)
            return Snapshot.open(entry.snapshot_path)


@lru_cache(maxsize=1)
def get_service() -> CollectionService:
    return CollectionService()
