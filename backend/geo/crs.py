from __future__ import annotations

import re
from functools import lru_cache

from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError

from geo.aoi import BBox
from store.errors import InvalidBoundingBox

_OGC_EPSG_URI = re.compile(r"^https?://www\.opengis\.net/def/crs/EPSG/[^/]+/(\d+)$", re.IGNORECASE)
_OGC_CRS84_URI = re.compile(r"^https?://www\.opengis\.net/def/crs/OGC/[^/]+/CRS84h?$", re.IGNORECASE)


def parse_crs(raw: str | None) -> str | None:
    """
    Canonical `AUTH:CODE` spelling for the CRS identifiers clients send.

    Accepts `EPSG:n`, `epsg:n`, OGC CRS URIs and `CRS84`.
    """
    s = (raw or "").strip()
    if not s:
        return None
    m = _OGC_EPSG_URI.match(s)
    if m:
        return f"EPSG:{int(m.group(1))}"
    if _OGC_CRS84_URI.match(s) or s.upper() in {"CRS84", "OGC:CRS84"}:
        return "OGC:CRS84"
    if ":" in s:
        auth, code = s.split(":", 1)
        return f"{auth.strip().upper()}:{code.strip()}"
    if s.isdigit():
        return f"EPSG:{int(s)}"
    return s


def crs_uri(crs: str | None) -> str | None:
    """OGC URI for an `AUTH:CODE` CRS (used in CityJSON metadata)."""
    c = parse_crs(crs)
    if c is None:
        return None
    if c == "OGC:CRS84":
        return "http://www.opengis.net/def/crs/OGC/1.3/CRS84"
    auth, code = c.split(":", 1)
    return f"http://www.opengis.net/def/crs/{auth}/0/{code}"


@lru_cache(maxsize=32)
def _horizontal(crs: str) -> CRS:
    c = CRS.from_user_input(crs)
    # Compound CRSs (e.g. EPSG:7415 = RD New + NAP height): bboxes live in the horizontal part.
    if c.is_compound and c.sub_crs_list:
        return c.sub_crs_list[0]
    return c


@lru_cache(maxsize=32)
def transformer_for(src_crs: str, dst_crs: str) -> Transformer:
    return Transformer.from_crs(_horizontal(src_crs), _horizontal(dst_crs), always_xy=True)


def transform_bbox(bbox: BBox, src_crs: str, dst_crs: str) -> BBox:
    """
    Reproject a bbox with pyproj, densifying edges so curved boundaries stay covered.
    """
    try:
        t = transformer_for(src_crs, dst_crs)
        min_x, min_y, max_x, max_y = t.transform_bounds(
            bbox.min_x, bbox.min_y, bbox.max_x, bbox.max_y, densify_pts=21
        )
    except (CRSError, ProjError) as e:
        raise InvalidBoundingBox(f"Cannot transform bbox from {src_crs} to {dst_crs}: {e}") from e
    out = BBox(min_x=float(min_x), min_y=float(min_y), max_x=float(max_x), max_y=float(max_y))
    if any(v in (float("inf"), float("-inf")) for v in out.as_tuple()):
        raise InvalidBoundingBox(f"bbox is outside the area of use of {dst_crs}")
    return out.validated()
