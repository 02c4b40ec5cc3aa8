from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from features.codec import decode_record, encode_record, record_bbox, record_length
from features.types import Feature
from geo.aoi import BBox
from store.errors import CorruptRecord


@dataclass(frozen=True)
class FeatureRange:
    """
    A lazy, restartable scan over `[start, end)` of the record section.

    Every `iter()` starts a fresh scan, so the same range can be consumed twice.
    """

    store: "FeatureStore"
    start: int
    end: int

    def __iter__(self) -> Iterator[Feature]:
        pos = self.start
        while pos < self.end:
            size = record_length(self.store.buf, pos, self.store.end)
            yield self.store.get(pos)
            pos += size
        if pos != self.end:
            raise CorruptRecord(f"Record scan overran range end {self.end} (stopped at {pos})")

    def offsets(self) -> Iterator[int]:
        pos = self.start
        while pos < self.end:
            yield pos
            pos += record_length(self.store.buf, pos, self.store.end)


class FeatureStore:
    """
    Read-only view over the packed record section of a snapshot.

    Offsets are absolute positions in `buf`; the section spans `[start, end)`.
    """

    def __init__(self, buf: Any, *, start: int, end: int, crs: str | None = None):
        self.buf = buf
        self.start = int(start)
        self.end = int(end)
        self.crs = crs

    def get(self, offset: int) -> Feature:
        if offset < self.start or offset >= self.end:
            raise CorruptRecord(
                f"Record offset {offset} outside record section [{self.start}, {self.end})"
            )
        return decode_record(self.buf, offset, self.end, crs=self.crs)

    def bbox(self, offset: int) -> BBox:
        if offset < self.start or offset >= self.end:
            raise CorruptRecord(
                f"Record offset {offset} outside record section [{self.start}, {self.end})"
            )
        return BBox(*record_bbox(self.buf, offset, self.end))

    def iter_range(self, offset_start: int, offset_end: int) -> FeatureRange:
        if offset_start < self.start or offset_end > self.end or offset_start > offset_end:
            raise CorruptRecord(
                f"Range [{offset_start}, {offset_end}) outside record section "
                f"[{self.start}, {self.end})"
            )
        return FeatureRange(store=self, start=offset_start, end=offset_end)

    def scan(self) -> FeatureRange:
        return FeatureRange(store=self, start=self.start, end=self.end)


def encode_records(features: Iterable[Feature], *, base: int = 0) -> tuple[bytes, list[int]]:
    """
    Pack features (already in storage order) into one record section.

    Returns the section bytes and the absolute offset of every record.
    """
    out = bytearray()
    offsets: list[int] = []
    for f in features:
        offsets.append(base + len(out))
        out += encode_record(f)
    return bytes(out), offsets
