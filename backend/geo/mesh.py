from __future__ import annotations

import shapely
from shapely.errors import GEOSException
from shapely.geometry import Polygon

from features.types import Geometry, Surface, Vertex

Triangle = tuple[int, int, int]


def newell_normal(vertices: tuple[Vertex, ...], ring: tuple[int, ...]) -> tuple[float, float, float]:
    nx = ny = nz = 0.0
    n = len(ring)
    for k in range(n):
        x0, y0, z0 = vertices[ring[k]]
        x1, y1, z1 = vertices[ring[(k + 1) % n]]
        nx += (y0 - y1) * (z0 + z1)
        ny += (z0 - z1) * (x0 + x1)
        nz += (x0 - x1) * (y0 + y1)
    return nx, ny, nz


def _projector(normal: tuple[float, float, float]):
    ax, ay, az = (abs(c) for c in normal)
    # drop the dominant axis of the normal
    if az >= ax and az >= ay:
        return lambda v: (v[0], v[1])
    if ay >= ax:
        return lambda v: (v[2], v[0])
    return lambda v: (v[1], v[2])


def _oriented(
    tri: Triangle, vertices: tuple[Vertex, ...], normal: tuple[float, float, float]
) -> Triangle:
    a, b, c = (vertices[i] for i in tri)
    u = (b[0] - a[0], b[1] - a[1], b[2] - a[2])
    w = (c[0] - a[0], c[1] - a[1], c[2] - a[2])
    cross = (u[1] * w[2] - u[2] * w[1], u[2] * w[0] - u[0] * w[2], u[0] * w[1] - u[1] * w[0])
    if cross[0] * normal[0] + cross[1] * normal[1] + cross[2] * normal[2] < 0:
        return tri[0], tri[2], tri[1]
    return tri


def _fan(ring: tuple[int, ...]) -> list[Triangle]:
    return [(ring[0], ring[k], ring[k + 1]) for k in range(1, len(ring) - 1)]


def triangulate_surface(vertices: tuple[Vertex, ...], surface: Surface) -> list[Triangle]:
    """
    Triangulate one planar face (exterior ring + holes) into vertex-index triangles.

    The face is projected onto its dominant plane and triangulated with shapely's
    constrained Delaunay, so holes are kept out. Triangles follow the face's
    winding (outward normals stay outward).
    """
    if not surface or len(surface[0]) < 3:
        return []
    exterior = surface[0]
    normal = newell_normal(vertices, exterior)
    if normal == (0.0, 0.0, 0.0):
        return []
    if len(surface) == 1 and len(exterior) == 3:
        return [_oriented(tuple(exterior), vertices, normal)]

    project = _projector(normal)
    lookup: dict[tuple[float, float], int] = {}
    rings_2d = []
    for ring in surface:
        pts = []
        for i in ring:
            p = project(vertices[i])
            lookup.setdefault(p, i)
            pts.append(p)
        rings_2d.append(pts)

    try:
        poly = Polygon(rings_2d[0], [r for r in rings_2d[1:] if len(r) >= 3])
        triangles = shapely.constrained_delaunay_triangles(poly)
    except (GEOSException, ValueError):
        return [_oriented(t, vertices, normal) for t in _fan(tuple(exterior))]

    out: list[Triangle] = []
    for tri in shapely.get_parts(triangles):
        coords = list(tri.exterior.coords)[:3]
        try:
            idx = tuple(lookup[(x, y)] for x, y in coords)
        except KeyError:
            # GEOS introduced a point (self-touching input); fall back to the fan
            return [_oriented(t, vertices, normal) for t in _fan(tuple(exterior))]
        if len(set(idx)) == 3:
            out.append(_oriented(idx, vertices, normal))
    return out


def triangulate(geometry: Geometry) -> list[Triangle]:
    out: list[Triangle] = []
    for surface in geometry.surfaces:
        out.extend(triangulate_surface(geometry.vertices, surface))
    return out
