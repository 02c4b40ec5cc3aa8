from __future__ import annotations

import logging
import time
from itertools import islice
from typing import Callable, Iterator

from features.types import Feature
from geo.aoi import BBox
from geo.crs import parse_crs
from query.filters import Comparison, Expr, conjuncts, evaluate, exact_in_index, fields, parse_filter
from query.types import BBoxTransform, Plan, Query, QueryLimits
from store.errors import InvalidBoundingBox, InvalidQuery, UnindexedField
from store.snapshot import Snapshot

logger = logging.getLogger(__name__)


class QueryResult:
    """
    Lazily evaluated query output.

    Iterating decodes features one at a time; nothing past `plan.limit` is touched.
    `close()` releases the snapshot reference and is idempotent; exhausting the
    iterator closes it too.
    """

    def __init__(
        self,
        plan: Plan,
        features: Iterator[Feature],
        *,
        on_close: list[Callable[["QueryResult"], None]] | None = None,
    ):
        self.plan = plan
        self.number_returned = 0
        self.started = time.perf_counter()
        self.elapsed_ms: float | None = None
        self._on_close = list(on_close or [])
        self._finished = False
        self._it = self._run(features)

    def __iter__(self) -> Iterator[Feature]:
        return self._it

    @property
    def features(self) -> Iterator[Feature]:
        return self._it

    @property
    def limit(self) -> int:
        return self.plan.limit

    @property
    def offset(self) -> int:
        return self.plan.offset

    def _run(self, features: Iterator[Feature]) -> Iterator[Feature]:
        try:
            for f in features:
                self.number_returned += 1
                yield f
        finally:
            self._finish()

    @property
    def next_offset(self) -> int | None:
        """Offset of the following page, when this page came back full."""
        if self.number_returned >= self.plan.limit:
            return self.plan.offset + self.number_returned
        return None

    def add_close_callback(self, cb: Callable[["QueryResult"], None]) -> None:
        self._on_close.append(cb)

    def close(self) -> None:
        self._it.close()
        self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.elapsed_ms = (time.perf_counter() - self.started) * 1000.0
        for cb in self._on_close:
            cb(self)

    def __enter__(self) -> "QueryResult":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class QueryEvaluator:
    """
    Picks an access path for a query and runs it against one snapshot.

    Results always come back in storage (Hilbert) order, so `offset` is a stable
    cursor no matter which index drove the query.
    """

    def __init__(
        self,
        snapshot: Snapshot,
        limits: QueryLimits | None = None,
        *,
        transform: BBoxTransform | None = None,
    ):
        self.snapshot = snapshot
        self.limits = limits or QueryLimits()
        self.transform = transform

    def effective_limit(self, limit: int | None) -> int:
        if limit is None:
            return min(self.limits.default_limit, self.limits.max_limit)
        if limit < 1:
            raise InvalidQuery(f"limit must be >= 1, got {limit}")
        return min(limit, self.limits.max_limit)

    def native_bbox(self, query: Query) -> BBox | None:
        if query.bbox is None:
            return None
        bbox = query.bbox.validated()
        src = parse_crs(query.bbox_crs)
        dst = parse_crs(self.snapshot.crs)
        if src is None or src == dst:
            return bbox
        if dst is None:
            raise InvalidBoundingBox(f"Collection has no CRS; cannot use bbox-crs {query.bbox_crs}")
        if self.transform is None:
            raise InvalidBoundingBox(f"bbox-crs {query.bbox_crs} is not supported for this collection")
        return self.transform(bbox, src, dst).validated()

    def plan(self, query: Query) -> Plan:
        limit = self.effective_limit(query.limit)
        if query.offset < 0:
            raise InvalidQuery(f"offset must be >= 0, got {query.offset}")
        bbox = self.native_bbox(query)
        expr = parse_filter(query.filter) if query.filter is not None else None
        indexed = self._indexed_conjuncts(expr)
        if expr is not None:
            self._check_filter(expr, indexed, driven=bbox is not None or query.feature_id is not None)

        base = dict(bbox=bbox, expr=expr, limit=limit, offset=query.offset)

        if query.feature_id is not None:
            return Plan(
                name="id",
                driver=f"identifier index ({query.feature_id})",
                candidates=self._id_candidates(query.feature_id),
                needs_bbox_check=bbox is not None,
                needs_filter_check=expr is not None,
                **base,
            )

        if bbox is not None and expr is not None:
            if indexed and any(c.op == "=" for c in indexed):
                driver = self._cheapest(indexed)
                return Plan(
                    name="filter+bbox",
                    driver=f"attribute index ({_describe(driver)})",
                    candidates=self._attribute_candidates(driver),
                    needs_bbox_check=True,
                    needs_filter_check=_needs_residual(indexed),
                    **base,
                )
            return Plan(
                name="bbox+filter",
                driver="spatial index",
                candidates=lambda: self.snapshot.spatial.intersect(bbox),
                needs_filter_check=True,
                **base,
            )

        if bbox is not None:
            return Plan(
                name="bbox",
                driver="spatial index",
                candidates=lambda: self.snapshot.spatial.intersect(bbox),
                **base,
            )

        if expr is not None:
            if indexed:
                driver = self._cheapest(indexed)
                return Plan(
                    name="filter",
                    driver=f"attribute index ({_describe(driver)})",
                    candidates=self._attribute_candidates(driver),
                    needs_filter_check=_needs_residual(indexed),
                    **base,
                )
            return Plan(
                name="filter-scan",
                driver="full scan",
                candidates=lambda: self.snapshot.store.scan().offsets(),
                needs_filter_check=True,
                **base,
            )

        return Plan(
            name="scan",
            driver="full scan",
            candidates=lambda: self.snapshot.store.scan().offsets(),
            **base,
        )

    def execute(self, query: Query) -> QueryResult:
        """
        Plan and start a query. The snapshot stays acquired until the result is
        closed or exhausted.
        """
        self.snapshot.acquire()
        try:
            plan = self.plan(query)
        except Exception:
            self.snapshot.release()
            raise
        logger.debug("Query %s -> plan=%s driver=%s", query, plan.name, plan.driver)
        result = QueryResult(plan, self._resolve(plan))
        result.add_close_callback(lambda _r: self.snapshot.release())
        return result

    def get_feature(self, feature_id: str) -> Feature:
        """Single feature by id; NotFound when absent."""
        with self.snapshot.reading() as snap:
            return snap.store.get(snap.identifiers.lookup(feature_id))

    def _resolve(self, plan: Plan) -> Iterator[Feature]:
        store = self.snapshot.store
        offsets = plan.candidates()
        if plan.exact:
            for o in islice(offsets, plan.offset, plan.offset + plan.limit):
                yield store.get(o)
            return

        skipped = 0
        returned = 0
        for o in offsets:
            if plan.needs_bbox_check and not store.bbox(o).intersects(plan.bbox):
                continue
            feature = None
            if plan.needs_filter_check:
                feature = store.get(o)
                if not evaluate(plan.expr, feature.attributes):
                    continue
            if skipped < plan.offset:
                skipped += 1
                continue
            yield feature if feature is not None else store.get(o)
            returned += 1
            if returned >= plan.limit:
                return

    def _indexed_conjuncts(self, expr: Expr | None) -> list[Comparison] | None:
        if expr is None:
            return None
        items = conjuncts(expr)
        if items is None:
            return None
        attrs = self.snapshot.attributes
        if all(attrs.has(c.field) for c in items):
            return items
        return None

    def _check_filter(self, expr: Expr, indexed: list[Comparison] | None, *, driven: bool) -> None:
        if self.limits.allow_full_scan:
            return
        attrs = self.snapshot.attributes
        missing = sorted(f for f in fields(expr) if not attrs.has(f))
        if missing:
            raise UnindexedField(missing[0])
        if indexed is None and not driven:
            names = ", ".join(sorted(fields(expr)))
            raise UnindexedField(
                names,
                "OR / NOT filters cannot be answered from attribute indexes; "
                "add a bbox or enable full scans for this collection",
            )

    def _id_candidates(self, feature_id: str) -> Callable[[], Iterator[int]]:
        def candidates() -> Iterator[int]:
            offset = self.snapshot.identifiers.get(feature_id)
            if offset is not None:
                yield offset

        return candidates

    def _count(self, c: Comparison) -> int:
        attrs = self.snapshot.attributes
        if c.op == "=":
            return attrs.count_equals(c.field, c.value)
        return attrs.count_range(c.field, *_range_args(c))

    def _cheapest(self, items: list[Comparison]) -> Comparison:
        return min(items, key=self._count)

    def _attribute_candidates(self, c: Comparison) -> Callable[[], Iterator[int]]:
        attrs = self.snapshot.attributes

        def candidates() -> Iterator[int]:
            if c.op == "=":
                # equal keys are stored by ascending offset already
                return attrs.equals(c.field, c.value)
            return iter(sorted(attrs.range(c.field, *_range_args(c))))

        return candidates


def _needs_residual(indexed: list[Comparison]) -> bool:
    return len(indexed) > 1 or not all(exact_in_index(c) for c in indexed)


def _range_args(c: Comparison):
    # f64 keys can round onto the bound; keep it and let the residual check decide
    strict = exact_in_index(c)
    if c.op == ">":
        return c.value, None, not strict, True
    if c.op == ">=":
        return c.value, None, True, True
    if c.op == "<":
        return None, c.value, True, not strict
    if c.op == "<=":
        return None, c.value, True, True
    raise InvalidQuery(f"Operator '{c.op}' cannot drive a range lookup")


def _describe(c: Comparison) -> str:
    return f"{c.field} {c.op} {c.value!r}"
