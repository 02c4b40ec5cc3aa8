from __future__ import annotations

import logging
import mmap
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from geo.aoi import BBox
from store.arena import FeatureStore
from store.attributes import AttributeIndexSet
from store.errors import CorruptRecord, SnapshotRetired
from store.identifiers import IdentifierIndex
from store.layout import read_meta, read_trailer, verify_checksum
from store.spatial import PackedHilbertTree

logger = logging.getLogger(__name__)


class Snapshot:
    """
    One immutable, fully built unit: feature store + spatial, attribute and identifier
    indexes over a single buffer (an mmap of the snapshot file, or bytes).

    Readers `acquire()`/`release()` it; once `retire()`d, the buffer is closed as soon
    as the last reader lets go.
    """

    def __init__(
        self,
        buf: Any,
        size: int,
        *,
        closer: Callable[[], None] | None = None,
        path: Path | None = None,
        verify: bool = True,
    ):
        self.buf = buf
        self.size = int(size)
        self.path = path
        self._closer = closer
        self._lock = threading.Lock()
        self._refs = 0
        self._retired = False
        self._closed = False

        try:
            trailer = read_trailer(buf, self.size)
            if verify:
                verify_checksum(buf, trailer)
            self.meta = read_meta(buf, trailer)
            rs, re = trailer.section("records")
            self.store = FeatureStore(buf, start=rs, end=re, crs=self.meta.get("crs"))
            ts, te = trailer.section("tree")
            self.spatial = PackedHilbertTree(buf, start=ts, end=te, records_end=re)
            as_, ae = trailer.section("attributes")
            self.attributes = AttributeIndexSet(buf, start=as_, end=ae)
            is_, ie = trailer.section("identifiers")
            self.identifiers = IdentifierIndex(buf, start=is_, end=ie)
        except CorruptRecord:
            self._close()
            raise

        if not (len(self.spatial) == len(self.identifiers) == trailer.feature_count):
            self._close()
            raise CorruptRecord(
                "Snapshot sections disagree on feature count "
                f"(tree={len(self.spatial)}, ids={len(self.identifiers)}, "
                f"trailer={trailer.feature_count})"
            )
        self.feature_count = trailer.feature_count

    @classmethod
    def open(cls, path: Path | str, *, verify: bool = True) -> "Snapshot":
        p = Path(path)
        with open(p, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            if size == 0:
                raise CorruptRecord(f"Snapshot file is empty: {p}")
            mm = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
        snap = cls(mm, size, closer=mm.close, path=p, verify=verify)
        logger.info("Opened snapshot %s (%d features, %d bytes)", p, snap.feature_count, size)
        return snap

    @classmethod
    def from_bytes(cls, data: bytes, *, verify: bool = True) -> "Snapshot":
        return cls(data, len(data), verify=verify)

    @property
    def collection_id(self) -> str | None:
        return self.meta.get("collection")

    @property
    def crs(self) -> str | None:
        return self.meta.get("crs")

    @property
    def extent(self) -> BBox | None:
        raw = self.meta.get("extent")
        if not raw:
            return None
        return BBox(*[float(v) for v in raw])

    @property
    def indexed_fields(self) -> list[str]:
        return self.attributes.fields

    @property
    def refs(self) -> int:
        return self._refs

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> "Snapshot":
        with self._lock:
            if self._retired or self._closed:
                raise SnapshotRetired("Snapshot has been retired")
            self._refs += 1
        return self

    def release(self) -> None:
        with self._lock:
            if self._refs <= 0:
                raise RuntimeError("Snapshot released more often than acquired")
            self._refs -= 1
            close_now = self._retired and self._refs == 0
        if close_now:
            self._close()

    def retire(self) -> None:
        """No new readers; close once the in-flight ones are done."""
        with self._lock:
            self._retired = True
            close_now = self._refs == 0
        if close_now:
            self._close()

    @contextmanager
    def reading(self) -> Iterator["Snapshot"]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            self._closer()
            logger.info("Closed snapshot %s", self.path or "<memory>")


class SnapshotHandle:
    """
    Atomically swappable reference to a collection's current snapshot.

    `publish()` makes a fully built snapshot visible in one step and retires the
    previous one; readers that already hold the old snapshot finish on it.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.RLock()
        self._current: Snapshot | None = None

    @property
    def current(self) -> Snapshot | None:
        return self._current

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            old = self._current
            self._current = snapshot
        logger.info(
            "Published snapshot for '%s' (%d features)", self.name, snapshot.feature_count
        )
        if old is not None and old is not snapshot:
            old.retire()
            logger.info("Retired previous snapshot for '%s' (%d readers)", self.name, old.refs)

    def acquire(self) -> Snapshot:
        """Current snapshot with one reference taken; the caller must `release()` it."""
        with self._lock:
            snap = self._current
            if snap is None:
                raise SnapshotRetired(f"No snapshot published for '{self.name}'")
            return snap.acquire()

    @contextmanager
    def reader(self) -> Iterator[Snapshot]:
        snap = self.acquire()
        try:
            yield snap
        finally:
            snap.release()

    def close(self) -> None:
        with self._lock:
            old = self._current
            self._current = None
        if old is not None:
            old.retire()
