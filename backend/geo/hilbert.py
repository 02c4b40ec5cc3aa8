from __future__ import annotations

from geo.aoi import BBox

DEFAULT_BIT_DEPTH = 16


def hilbert_xy_to_d(x: int, y: int, *, bits: int) -> int:
    """
    Distance of grid cell (x, y) along a Hilbert curve covering a 2^bits x 2^bits grid.
    """
    n = 1 << bits
    d = 0
    s = n >> 1
    while s > 0:
        rx = 1 if (x & s) else 0
        ry = 1 if (y & s) else 0
        d += s * s * ((3 * rx) ^ ry)
        # Rotate the quadrant so the curve stays continuous.
        if ry == 0:
            if rx == 1:
                x = s - 1 - x
                y = s - 1 - y
            x, y = y, x
        s >>= 1
    return d


def hilbert_value(x: float, y: float, extent: BBox, *, bits: int = DEFAULT_BIT_DEPTH) -> int:
    """
    Hilbert value of a point after snapping it onto the extent's 2^bits grid.
    """
    cells = (1 << bits) - 1
    w = extent.max_x - extent.min_x
    h = extent.max_y - extent.min_y
    gx = int(cells * (x - extent.min_x) / w) if w > 0 else 0
    gy = int(cells * (y - extent.min_y) / h) if h > 0 else 0
    gx = max(0, min(cells, gx))
    gy = max(0, min(cells, gy))
    return hilbert_xy_to_d(gx, gy, bits=bits)


def hilbert_of_bbox(b: BBox, extent: BBox, *, bits: int = DEFAULT_BIT_DEPTH) -> int:
    cx, cy = b.center()
    return hilbert_value(cx, cy, extent, bits=bits)
