from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from store.errors import InvalidBoundingBox


@dataclass(frozen=True)
class BBox:
    """
    Axis-aligned bounding box in a collection's native CRS.

    Convention used throughout this repo:
    - minX, minY, maxX, maxY
    - closed intervals: boxes that only touch at an edge or corner intersect
    - degenerate (point / line) boxes are valid
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def validated(self) -> "BBox":
        for v in (self.min_x, self.min_y, self.max_x, self.max_y):
            if v != v:  # NaN
                raise InvalidBoundingBox("bbox contains NaN")
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise InvalidBoundingBox(
                f"bbox min exceeds max: ({self.min_x}, {self.min_y}, {self.max_x}, {self.max_y})"
            )
        return self

    def intersects(self, other: "BBox") -> bool:
        return not (
            other.min_x > self.max_x
            or other.max_x < self.min_x
            or other.min_y > self.max_y
            or other.max_y < self.min_y
        )

    def union(self, other: "BBox") -> "BBox":
        return BBox(
            min_x=min(self.min_x, other.min_x),
            min_y=min(self.min_y, other.min_y),
            max_x=max(self.max_x, other.max_x),
            max_y=max(self.max_y, other.max_y),
        )

    def center(self) -> tuple[float, float]:
        return ((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def as_list(self) -> list[float]:
        return [self.min_x, self.min_y, self.max_x, self.max_y]


def bbox_of_points(points: Iterable[tuple[float, ...]]) -> BBox | None:
    min_x = min_y = float("inf")
    max_x = max_y = float("-inf")
    seen = False
    for p in points:
        seen = True
        x, y = float(p[0]), float(p[1])
        if x < min_x:
            min_x = x
        if x > max_x:
            max_x = x
        if y < min_y:
            min_y = y
        if y > max_y:
            max_y = y
    if not seen:
        return None
    return BBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)


def union_all(boxes: Iterable[BBox]) -> BBox | None:
    out: BBox | None = None
    for b in boxes:
        out = b if out is None else out.union(b)
    return out


def parse_bbox(raw: str) -> BBox:
    """
    Parse the wire form `minx,miny,maxx,maxy`.

    A 6-number 3D box (`minx,miny,minz,maxx,maxy,maxz`) is accepted; z is ignored.
    """
    parts = [p.strip() for p in (raw or "").split(",")]
    try:
        nums = [float(p) for p in parts]
    except ValueError:
        raise InvalidBoundingBox(f"bbox must be comma-separated numbers: {raw!r}") from None
    if len(nums) == 4:
        b = BBox(min_x=nums[0], min_y=nums[1], max_x=nums[2], max_y=nums[3])
    elif len(nums) == 6:
        b = BBox(min_x=nums[0], min_y=nums[1], max_x=nums[3], max_y=nums[4])
    else:
        raise InvalidBoundingBox(f"bbox must have 4 or 6 numbers, got {len(nums)}")
    return b.validated()
