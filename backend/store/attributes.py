"""
Sorted per-field attribute indexes.

Section layout:

    u32 field count
    per field:
        u16 name length, name (utf-8)
        u64 entry count, u64 string heap length
        entries: u8 rank, f64 number, u32 string offset, u32 string length, u64 record offset
        string heap

Entries are ordered by (rank, value, record offset) with ranks boolean < number < string.
Nulls (and NaN) are never indexed, so they never match a predicate.
"""
from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from features.types import AttributeValue, Feature
from store.errors import CorruptRecord, UnindexedField

ATTR_ENTRY = struct.Struct("<BdIIQ")
_FIELD_COUNT = struct.Struct("<I")
_NAME_LEN = struct.Struct("<H")
_FIELD_SIZES = struct.Struct("<QQ")

RANK_BOOL = 0
RANK_NUMBER = 1
RANK_STRING = 2


def value_key(v: AttributeValue) -> tuple | None:
    """Total-order key of an attribute value, or None when the value is not indexable."""
    if v is None:
        return None
    if isinstance(v, bool):
        return (RANK_BOOL, 1.0 if v else 0.0)
    if isinstance(v, (int, float)):
        f = float(v)
        if f != f:
            return None
        return (RANK_NUMBER, f)
    if isinstance(v, str):
        return (RANK_STRING, v)
    return None


def build_attribute_indexes(features: Iterable[Feature], fields: Iterable[str]) -> bytes:
    field_names = list(dict.fromkeys(fields))
    per_field: dict[str, list[tuple[tuple, int]]] = {name: [] for name in field_names}
    for f in features:
        if f.store_offset < 0:
            raise ValueError(f"Feature '{f.id}' has no store offset")
        for name in field_names:
            key = value_key(f.attributes.get(name))
            if key is not None:
                per_field[name].append((key, f.store_offset))

    out = bytearray(_FIELD_COUNT.pack(len(field_names)))
    for name in field_names:
        entries = sorted(per_field[name])
        heap = bytearray()
        heap_pos: dict[str, tuple[int, int]] = {}
        packed = bytearray()
        for (rank, value), offset in entries:
            if rank == RANK_STRING:
                loc = heap_pos.get(value)
                if loc is None:
                    raw = value.encode("utf-8")
                    loc = (len(heap), len(raw))
                    heap += raw
                    heap_pos[value] = loc
                packed += ATTR_ENTRY.pack(rank, 0.0, loc[0], loc[1], offset)
            else:
                packed += ATTR_ENTRY.pack(rank, value, 0, 0, offset)
        raw_name = name.encode("utf-8")
        out += _NAME_LEN.pack(len(raw_name))
        out += raw_name
        out += _FIELD_SIZES.pack(len(entries), len(heap))
        out += packed
        out += heap
    return bytes(out)


@dataclass(frozen=True)
class FieldIndex:
    buf: Any
    name: str
    entries_pos: int
    count: int
    heap_pos: int
    heap_len: int

    def key(self, i: int) -> tuple:
        rank, num, s_off, s_len, _ = ATTR_ENTRY.unpack_from(self.buf, self.entries_pos + i * ATTR_ENTRY.size)
        if rank == RANK_STRING:
            return (rank, self._string(s_off, s_len))
        return (rank, num)

    def offset(self, i: int) -> int:
        return ATTR_ENTRY.unpack_from(self.buf, self.entries_pos + i * ATTR_ENTRY.size)[4]

    def _string(self, s_off: int, s_len: int) -> str:
        if s_off + s_len > self.heap_len:
            raise CorruptRecord(f"Attribute index '{self.name}' string outside heap")
        p = self.heap_pos + s_off
        return bytes(self.buf[p : p + s_len]).decode("utf-8")


class _Keys:
    """Sequence view so `bisect` can search the packed entry table in place."""

    def __init__(self, index: FieldIndex):
        self._index = index

    def __len__(self) -> int:
        return self._index.count

    def __getitem__(self, i: int) -> tuple:
        return self._index.key(i)


class AttributeIndexSet:
    """All attribute indexes of a snapshot, keyed by field name."""

    def __init__(self, buf: Any, *, start: int, end: int):
        self._fields: dict[str, FieldIndex] = {}
        try:
            pos = start
            (n_fields,) = _FIELD_COUNT.unpack_from(buf, pos)
            pos += _FIELD_COUNT.size
            for _ in range(n_fields):
                (name_len,) = _NAME_LEN.unpack_from(buf, pos)
                pos += _NAME_LEN.size
                name = bytes(buf[pos : pos + name_len]).decode("utf-8")
                pos += name_len
                count, heap_len = _FIELD_SIZES.unpack_from(buf, pos)
                pos += _FIELD_SIZES.size
                entries_pos = pos
                pos += count * ATTR_ENTRY.size
                heap_pos = pos
                pos += heap_len
                if pos > end:
                    raise CorruptRecord(f"Attribute index '{name}' runs past its section")
                self._fields[name] = FieldIndex(
                    buf=buf,
                    name=name,
                    entries_pos=entries_pos,
                    count=count,
                    heap_pos=heap_pos,
                    heap_len=heap_len,
                )
        except (struct.error, UnicodeDecodeError) as e:
            raise CorruptRecord(f"Attribute index section is malformed: {e}") from e
        if pos != end:
            raise CorruptRecord("Attribute index section has trailing bytes")

    @property
    def fields(self) -> list[str]:
        return list(self._fields.keys())

    def has(self, field: str) -> bool:
        return field in self._fields

    def _field(self, field: str) -> FieldIndex:
        idx = self._fields.get(field)
        if idx is None:
            raise UnindexedField(field)
        return idx

    def _equals_bounds(self, field: str, value: AttributeValue) -> tuple[FieldIndex, int, int]:
        idx = self._field(field)
        key = value_key(value)
        if key is None:
            return idx, 0, 0
        keys = _Keys(idx)
        return idx, bisect.bisect_left(keys, key), bisect.bisect_right(keys, key)

    def _range_bounds(
        self,
        field: str,
        lo: AttributeValue,
        hi: AttributeValue,
        inclusive_lo: bool,
        inclusive_hi: bool,
    ) -> tuple[FieldIndex, int, int]:
        idx = self._field(field)
        lo_key = value_key(lo)
        hi_key = value_key(hi)
        if (lo is not None and lo_key is None) or (hi is not None and hi_key is None):
            return idx, 0, 0
        if lo_key is not None and hi_key is not None:
            if lo_key[0] != hi_key[0] or lo_key > hi_key:
                return idx, 0, 0

        keys = _Keys(idx)
        if lo_key is not None:
            start = (bisect.bisect_left if inclusive_lo else bisect.bisect_right)(keys, lo_key)
        elif hi_key is not None:
            start = bisect.bisect_left(keys, (hi_key[0],))
        else:
            start = 0

        if hi_key is not None:
            end = (bisect.bisect_right if inclusive_hi else bisect.bisect_left)(keys, hi_key)
        elif lo_key is not None:
            end = bisect.bisect_left(keys, (lo_key[0] + 1,))
        else:
            end = idx.count
        return idx, start, max(start, end)

    def equals(self, field: str, value: AttributeValue) -> Iterator[int]:
        """Record offsets whose `field` equals `value`, ascending by offset."""
        idx, start, end = self._equals_bounds(field, value)
        return _offsets(idx, start, end)

    def range(
        self,
        field: str,
        lo: AttributeValue,
        hi: AttributeValue,
        inclusive_lo: bool = True,
        inclusive_hi: bool = True,
    ) -> Iterator[int]:
        """
        Record offsets with `lo <(=) field <(=) hi`, in value order.

        `None` for a bound means unbounded within the other bound's type.
        """
        idx, start, end = self._range_bounds(field, lo, hi, inclusive_lo, inclusive_hi)
        return _offsets(idx, start, end)

    def count_equals(self, field: str, value: AttributeValue) -> int:
        _, start, end = self._equals_bounds(field, value)
        return end - start

    def count_range(
        self,
        field: str,
        lo: AttributeValue,
        hi: AttributeValue,
        inclusive_lo: bool = True,
        inclusive_hi: bool = True,
    ) -> int:
        _, start, end = self._range_bounds(field, lo, hi, inclusive_lo, inclusive_hi)
        return end - start

    def entry_count(self, field: str) -> int:
        return self._field(field).count


def _offsets(idx: FieldIndex, start: int, end: int) -> Iterator[int]:
    for i in range(start, end):
        yield idx.offset(i)
