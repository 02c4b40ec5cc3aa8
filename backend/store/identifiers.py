"""
Identifier index: a sorted `(id, record offset)` table searched with `bisect`.

Section layout: u64 entry count, u64 heap length, entries (u32 id offset, u32 id length,
u64 record offset), then the id heap (utf-8).
"""
from __future__ import annotations

import bisect
import struct
from typing import Any, Iterable

from store.errors import BuildFailed, CorruptRecord, NotFound

ID_ENTRY = struct.Struct("<IIQ")
_ID_SIZES = struct.Struct("<QQ")


def build_identifier_index(pairs: Iterable[tuple[str, int]]) -> bytes:
    entries = sorted(pairs)
    for prev, cur in zip(entries, entries[1:]):
        if prev[0] == cur[0]:
            raise BuildFailed(f"Duplicate feature id '{cur[0]}'")

    heap = bytearray()
    packed = bytearray()
    for fid, offset in entries:
        raw = fid.encode("utf-8")
        packed += ID_ENTRY.pack(len(heap), len(raw), offset)
        heap += raw
    return _ID_SIZES.pack(len(entries), len(heap)) + bytes(packed) + bytes(heap)


class IdentifierIndex:
    def __init__(self, buf: Any, *, start: int, end: int):
        if end - start < _ID_SIZES.size:
            raise CorruptRecord("Identifier index section is truncated")
        self.buf = buf
        self.count, heap_len = _ID_SIZES.unpack_from(buf, start)
        self._entries_pos = start + _ID_SIZES.size
        self._heap_pos = self._entries_pos + self.count * ID_ENTRY.size
        self._heap_len = heap_len
        if self._heap_pos + heap_len != end:
            raise CorruptRecord("Identifier index section size does not match its entry count")

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, i: int) -> str:
        # Sequence protocol over the sorted ids, used by `bisect`.
        if i < 0 or i >= self.count:
            raise IndexError(i)
        s_off, s_len, _ = ID_ENTRY.unpack_from(self.buf, self._entries_pos + i * ID_ENTRY.size)
        if s_off + s_len > self._heap_len:
            raise CorruptRecord("Identifier index entry points outside its heap")
        p = self._heap_pos + s_off
        return bytes(self.buf[p : p + s_len]).decode("utf-8")

    def get(self, feature_id: str) -> int | None:
        i = bisect.bisect_left(self, feature_id)
        if i < self.count and self[i] == feature_id:
            return ID_ENTRY.unpack_from(self.buf, self._entries_pos + i * ID_ENTRY.size)[2]
        return None

    def lookup(self, feature_id: str) -> int:
        offset = self.get(feature_id)
        if offset is None:
            raise NotFound(f"Feature '{feature_id}' not found")
        return offset

    def __contains__(self, feature_id: object) -> bool:
        return isinstance(feature_id, str) and self.get(feature_id) is not None
