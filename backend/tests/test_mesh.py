from __future__ import annotations

from factories import cube
from geo.mesh import newell_normal, triangulate, triangulate_surface


def _cross(vertices, tri):
    a, b, c = (vertices[i] for i in tri)
    u = [b[k] - a[k] for k in range(3)]
    w = [c[k] - a[k] for k in range(3)]
    return (
        u[1] * w[2] - u[2] * w[1],
        u[2] * w[0] - u[0] * w[2],
        u[0] * w[1] - u[1] * w[0],
    )


def _dot(a, b):
    return sum(x * y for x, y in zip(a, b))


def test_square_with_hole_keeps_hole_empty():
    vertices = (
        (0.0, 0.0, 0.0),
        (10.0, 0.0, 0.0),
        (10.0, 10.0, 0.0),
        (0.0, 10.0, 0.0),
        (4.0, 4.0, 0.0),
        (4.0, 6.0, 0.0),
        (6.0, 6.0, 0.0),
        (6.0, 4.0, 0.0),
    )
    tris = triangulate_surface(vertices, ((0, 1, 2, 3), (4, 5, 6, 7)))
    area = sum(_cross(vertices, t)[2] / 2.0 for t in tris)
    assert area == 96.0
    # counter-clockwise exterior: every triangle faces +z
    assert all(_cross(vertices, t)[2] > 0 for t in tris)


def test_vertical_wall_keeps_its_orientation():
    vertices = ((0.0, 0.0, 0.0), (10.0, 0.0, 0.0), (10.0, 0.0, 5.0), (0.0, 0.0, 5.0))
    ring = (0, 1, 2, 3)
    normal = newell_normal(vertices, ring)
    tris = triangulate_surface(vertices, (ring,))
    assert len(tris) == 2
    assert all(_dot(_cross(vertices, t), normal) > 0 for t in tris)


def test_degenerate_faces_produce_nothing():
    vertices = ((0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (2.0, 0.0, 0.0))
    assert triangulate_surface(vertices, ((0, 1, 2),)) == []
    assert triangulate_surface(vertices, ((0, 1),)) == []


def test_cube_has_twelve_outward_triangles():
    g = cube("c", 0.0, 0.0).geometry
    tris = triangulate(g)
    assert len(tris) == 12
    center = (5.0, 5.0, 5.0)
    for t in tris:
        a = g.vertices[t[0]]
        outward = [a[k] - center[k] for k in range(3)]
        assert _dot(_cross(g.vertices, t), outward) > 0
