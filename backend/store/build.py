from __future__ import annotations

import logging
import os
import struct
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from features.types import Feature
from geo.aoi import union_all
from geo.hilbert import DEFAULT_BIT_DEPTH, hilbert_of_bbox
from store.arena import encode_records
from store.attributes import build_attribute_indexes
from store.errors import BuildFailed, CorruptRecord
from store.identifiers import build_identifier_index
from store.layout import assemble_snapshot
from store.snapshot import Snapshot
from store.spatial import DEFAULT_FANOUT, build_spatial_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildOptions:
    collection_id: str = "features"
    title: str | None = None
    crs: str | None = None
    fanout: int = DEFAULT_FANOUT
    indexed_fields: tuple[str, ...] = field(default_factory=tuple)
    hilbert_bit_depth: int = DEFAULT_BIT_DEPTH


def hilbert_sorted(features: list[Feature], *, bits: int) -> list[Feature]:
    extent = union_all(f.bbox for f in features)
    if extent is None:
        return []
    keyed = [(hilbert_of_bbox(f.bbox, extent, bits=bits), f.id, f) for f in features]
    keyed.sort(key=lambda t: (t[0], t[1]))
    return [f for _, _, f in keyed]


def build_snapshot_bytes(features: Iterable[Feature], options: BuildOptions | None = None) -> bytes:
    """
    One offline pass: order features along the Hilbert curve, pack their records,
    then derive the spatial, attribute and identifier indexes from the packed offsets.

    The result is re-opened and verified before it is returned.
    """
    opts = options or BuildOptions()
    if opts.fanout < 2:
        raise BuildFailed(f"fanout must be >= 2, got {opts.fanout}")
    if not 1 <= opts.hilbert_bit_depth <= 31:
        raise BuildFailed(f"hilbert_bit_depth must be in [1, 31], got {opts.hilbert_bit_depth}")

    started = time.perf_counter()
    try:
        items = _validated(list(features), crs=opts.crs)
        ordered = hilbert_sorted(items, bits=opts.hilbert_bit_depth)
        records, offsets = encode_records(ordered)
        placed = [replace(f, store_offset=o) for f, o in zip(ordered, offsets)]

        tree = build_spatial_index([(f.bbox, f.store_offset) for f in placed], fanout=opts.fanout)
        attributes = build_attribute_indexes(placed, opts.indexed_fields)
        identifiers = build_identifier_index((f.id, f.store_offset) for f in placed)

        extent = union_all(f.bbox for f in placed)
        meta = {
            "collection": opts.collection_id,
            "title": opts.title or opts.collection_id,
            "crs": opts.crs,
            "extent": extent.as_list() if extent is not None else None,
            "featureCount": len(placed),
            "fanout": opts.fanout,
            "hilbertBitDepth": opts.hilbert_bit_depth,
            "indexedFields": list(dict.fromkeys(opts.indexed_fields)),
            "builtAt": datetime.now(timezone.utc).isoformat(),
        }
        data = assemble_snapshot(
            records=records,
            tree=tree,
            attributes=attributes,
            identifiers=identifiers,
            meta=meta,
            feature_count=len(placed),
        )
    except BuildFailed:
        raise
    except (ValueError, TypeError, OverflowError, struct.error) as e:
        raise BuildFailed(f"Build of '{opts.collection_id}' failed: {e}") from e

    try:
        Snapshot.from_bytes(data).retire()
    except CorruptRecord as e:
        raise BuildFailed(f"Build of '{opts.collection_id}' produced an unreadable snapshot: {e}") from e

    logger.info(
        "Built snapshot '%s': %d features, %d bytes in %.1f ms",
        opts.collection_id,
        len(placed),
        len(data),
        (time.perf_counter() - started) * 1000.0,
    )
    return data


def build_snapshot_file(
    features: Iterable[Feature], path: Path | str, options: BuildOptions | None = None
) -> Path:
    """
    Build into a temporary file next to `path`, verify it, then atomically move it
    into place. A failed build leaves any previous file at `path` untouched.
    """
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
    try:
        data = build_snapshot_bytes(features, options)
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        Snapshot.open(tmp, verify=True).retire()
        os.replace(tmp, dest)
    except CorruptRecord as e:
        tmp.unlink(missing_ok=True)
        raise BuildFailed(f"Snapshot written to {tmp} failed verification: {e}") from e
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise BuildFailed(f"Could not write snapshot {dest}: {e}") from e
    except BuildFailed:
        tmp.unlink(missing_ok=True)
        raise
    return dest


def _validated(features: list[Feature], *, crs: str | None) -> list[Feature]:
    seen: set[str] = set()
    out: list[Feature] = []
    for f in features:
        if not f.id:
            raise BuildFailed("Feature with empty id")
        if f.id in seen:
            raise BuildFailed(f"Duplicate feature id '{f.id}'")
        seen.add(f.id)
        if not f.geometry.vertices:
            raise BuildFailed(f"Feature '{f.id}' has no vertices")
        g = f.geometry
        if g.crs is not None and crs is not None and g.crs != crs:
            raise BuildFailed(f"Feature '{f.id}' is in {g.crs}, collection is in {crs}")
        out.append(replace(f, geometry=g.with_crs(crs)))
    return out
