"""
Physical layout of a snapshot file.

    [records][spatial tree][attribute indexes][identifier index][metadata json][trailer]

The fixed-size trailer sits at the very end so a reader can locate every section
without scanning:

    [00-07]  magic "PKSTORE1"
    [08-11]  format version
    [12-91]  (offset, length) of the five sections, u64 each
    [92-99]  feature count
    [100-103] crc32 of every byte before the trailer
"""
from __future__ import annotations

import json
import struct
import zlib
from dataclasses import dataclass
from typing import Any

from store.errors import CorruptRecord

MAGIC = b"PKSTORE1"
FORMAT_VERSION = 1
SECTIONS = ("records", "tree", "attributes", "identifiers", "meta")
TRAILER = struct.Struct("<8sI10QQI")

_CRC_CHUNK = 1 << 20


@dataclass(frozen=True)
class Trailer:
    version: int
    sections: dict[str, tuple[int, int]]  # name -> (start, end)
    feature_count: int
    crc32: int

    def section(self, name: str) -> tuple[int, int]:
        return self.sections[name]


def assemble_snapshot(
    *,
    records: bytes,
    tree: bytes,
    attributes: bytes,
    identifiers: bytes,
    meta: dict[str, Any],
    feature_count: int,
) -> bytes:
    meta_raw = json.dumps(meta, ensure_ascii=False, sort_keys=True).encode("utf-8")
    parts = [records, tree, attributes, identifiers, meta_raw]

    body = bytearray()
    bounds: list[int] = []
    for part in parts:
        bounds.extend([len(body), len(part)])
        body += part

    crc = zlib.crc32(body) & 0xFFFFFFFF
    return bytes(body) + TRAILER.pack(MAGIC, FORMAT_VERSION, *bounds, feature_count, crc)


def read_trailer(buf: Any, size: int) -> Trailer:
    if size < TRAILER.size:
        raise CorruptRecord(f"Snapshot is too small ({size} bytes) to hold a trailer")
    magic, version, *rest = TRAILER.unpack_from(buf, size - TRAILER.size)
    if magic != MAGIC:
        raise CorruptRecord(f"Bad snapshot magic {magic!r}")
    if version != FORMAT_VERSION:
        raise CorruptRecord(f"Unsupported snapshot format version {version}")
    bounds, feature_count, crc = rest[:10], rest[10], rest[11]

    body_end = size - TRAILER.size
    sections: dict[str, tuple[int, int]] = {}
    expected_start = 0
    for i, name in enumerate(SECTIONS):
        start, length = bounds[2 * i], bounds[2 * i + 1]
        if start != expected_start or start + length > body_end:
            raise CorruptRecord(f"Snapshot section '{name}' has invalid bounds")
        sections[name] = (start, start + length)
        expected_start = start + length
    if expected_start != body_end:
        raise CorruptRecord("Snapshot sections do not cover the file body")

    return Trailer(version=version, sections=sections, feature_count=feature_count, crc32=crc)


def verify_checksum(buf: Any, trailer: Trailer) -> None:
    end = trailer.section("meta")[1]
    crc = 0
    for pos in range(0, end, _CRC_CHUNK):
        crc = zlib.crc32(buf[pos : min(end, pos + _CRC_CHUNK)], crc)
    if (crc & 0xFFFFFFFF) != trailer.crc32:
        raise CorruptRecord("Snapshot checksum mismatch")


def read_meta(buf: Any, trailer: Trailer) -> dict[str, Any]:
    start, end = trailer.section("meta")
    try:
        meta = json.loads(bytes(buf[start:end]).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptRecord(f"Snapshot metadata is not valid JSON: {e}") from e
    if not isinstance(meta, dict):
        raise CorruptRecord("Snapshot metadata must be a JSON object")
    return meta
