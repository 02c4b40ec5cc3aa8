from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Protocol

from geo.aoi import BBox
from query.filters import Expr


@dataclass(frozen=True)
class Query:
    """
    One items request, after wire parsing.

    `filter` is the raw expression text; `offset` is the pagination cursor into the
    canonical (storage) result order.
    """

    bbox: BBox | None = None
    bbox_crs: str | None = None
    feature_id: str | None = None
    filter: str | None = None
    format: str = "json"
    limit: int | None = None
    offset: int = 0

    @property
    def query_type(self) -> str:
        """Query shape label used for telemetry."""
        if self.feature_id is not None:
            return "id"
        if self.bbox is not None and self.filter:
            return "combined"
        if self.bbox is not None:
            return "bbox"
        if self.filter:
            return "filter"
        return "scan"


@dataclass(frozen=True)
class QueryLimits:
    default_limit: int = 10
    max_limit: int = 10_000
    allow_full_scan: bool = False


class BBoxTransform(Protocol):
    """
    Reprojects a query bbox between two CRSs.

    Correctness and precision belong to the implementation; the evaluator only
    requires the result to be a valid bbox in `dst_crs`.
    """

    def __call__(self, bbox: BBox, src_crs: str, dst_crs: str) -> BBox: ...


@dataclass(frozen=True)
class Plan:
    """
    Access path chosen for a query.

    - name: "id", "bbox", "filter", "bbox+filter", "filter+bbox", "filter-scan", "scan"
    - driver: human-readable description of the candidate source
    """

    name: str
    driver: str
    bbox: BBox | None
    expr: Expr | None
    limit: int
    offset: int
    candidates: Callable[[], Iterator[int]] = field(repr=False, compare=False)
    needs_bbox_check: bool = False
    needs_filter_check: bool = False

    @property
    def exact(self) -> bool:
        """Every candidate is a result; pagination can skip without decoding."""
        return not (self.needs_bbox_check or self.needs_filter_check)
