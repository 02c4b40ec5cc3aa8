"""
Packed Hilbert R-tree.

The tree is static: it is built bottom-up once over items already sorted in Hilbert
order, then serialized root level first as fixed-width node entries:

    header: u32 fanout, u64 item count
    nodes:  4 x f64 bbox, u64 value

For items (bottom level) `value` is the record offset; for internal nodes it is the
index of the first child inside the level below.
"""
from __future__ import annotations

import struct
from typing import Any, Iterator, Sequence

from geo.aoi import BBox
from store.errors import CorruptRecord

TREE_HEADER = struct.Struct("<IQ")
NODE = struct.Struct("<4dQ")

DEFAULT_FANOUT = 16


def level_counts(item_count: int, fanout: int) -> list[int]:
    """Node counts per level, bottom (items) first."""
    counts = [int(item_count)]
    while counts[-1] > 1:
        counts.append((counts[-1] + fanout - 1) // fanout)
    return counts


def build_spatial_index(items: Sequence[tuple[BBox, int]], *, fanout: int = DEFAULT_FANOUT) -> bytes:
    """
    Serialize a packed tree over `(bbox, record_offset)` items in storage order.
    """
    if fanout < 2:
        raise ValueError(f"fanout must be >= 2, got {fanout}")

    levels: list[list[tuple[BBox, int]]] = [list(items)]
    while len(levels[-1]) > 1:
        below = levels[-1]
        parents: list[tuple[BBox, int]] = []
        for first in range(0, len(below), fanout):
            group = below[first : first + fanout]
            b = group[0][0]
            for child_bbox, _ in group[1:]:
                b = b.union(child_bbox)
            parents.append((b, first))
        levels.append(parents)

    out = bytearray(TREE_HEADER.pack(fanout, len(items)))
    for level in reversed(levels):
        for b, value in level:
            out += NODE.pack(b.min_x, b.min_y, b.max_x, b.max_y, value)
    return bytes(out)


class PackedHilbertTree:
    """
    Read-only view over a serialized tree section inside a snapshot buffer.

    `records_end` is the end of the record section; it closes the byte range of the
    last leaf.
    """

    def __init__(self, buf: Any, *, start: int, end: int, records_end: int):
        if end - start < TREE_HEADER.size:
            raise CorruptRecord("Spatial index section is truncated")
        self.buf = buf
        self.records_end = int(records_end)
        self.fanout, self.item_count = TREE_HEADER.unpack_from(buf, start)
        if self.fanout < 2:
            raise CorruptRecord(f"Spatial index has invalid fanout {self.fanout}")

        counts = level_counts(self.item_count, self.fanout)
        if self.item_count == 0:
            counts = []
        total = sum(counts)
        if TREE_HEADER.size + total * NODE.size != end - start:
            raise CorruptRecord("Spatial index section size does not match its node count")

        # Absolute byte position of each level, bottom level first.
        self._counts = counts
        self._level_pos: list[int] = [0] * len(counts)
        pos = start + TREE_HEADER.size
        for lvl in reversed(range(len(counts))):
            self._level_pos[lvl] = pos
            pos += counts[lvl] * NODE.size

    @property
    def height(self) -> int:
        """Number of internal levels above the items (0 for a single item)."""
        return max(0, len(self._counts) - 1)

    def __len__(self) -> int:
        return self.item_count

    def node(self, level: int, i: int) -> tuple[BBox, int]:
        x0, y0, x1, y1, value = NODE.unpack_from(self.buf, self._level_pos[level] + i * NODE.size)
        return BBox(min_x=x0, min_y=y0, max_x=x1, max_y=y1), value

    def extent(self) -> BBox | None:
        if not self._counts:
            return None
        return self.node(len(self._counts) - 1, 0)[0]

    def intersect(self, query: BBox) -> Iterator[int]:
        """
        Record offsets of items whose bbox intersects `query`, in Hilbert order.

        Internal bboxes only prune; every item is re-checked against `query`.
        """
        if not self._counts:
            return
        qx0, qy0, qx1, qy1 = query.min_x, query.min_y, query.max_x, query.max_y
        top = len(self._counts) - 1
        stack: list[tuple[int, int]] = [(top, 0)]
        while stack:
            level, i = stack.pop()
            x0, y0, x1, y1, value = NODE.unpack_from(
                self.buf, self._level_pos[level] + i * NODE.size
            )
            if x0 > qx1 or x1 < qx0 or y0 > qy1 or y1 < qy0:
                continue
            if level == 0:
                yield value
                continue
            below = self._counts[level - 1]
            last = min(value + self.fanout, below)
            for child in range(last - 1, value - 1, -1):
                stack.append((level - 1, child))

    def leaf_range(self, i: int) -> tuple[int, int]:
        """
        Record byte range `[start, end)` covered by bottom internal node `i`.

        Items are packed in the same order as records, so a leaf is one contiguous run.
        """
        if len(self._counts) < 2:
            if self.item_count == 1 and i == 0:
                return self.node(0, 0)[1], self.records_end
            raise IndexError("Tree has no internal levels")
        first = i * self.fanout
        if first >= self.item_count:
            raise IndexError(f"Leaf {i} out of range")
        last = first + self.fanout
        start = self.node(0, first)[1]
        end = self.node(0, last)[1] if last < self.item_count else self.records_end
        return start, end
