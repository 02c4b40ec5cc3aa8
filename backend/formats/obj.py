from __future__ import annotations

from features.types import Feature
from formats.base import EncodeContext, register
from geo.mesh import triangulate


def _num(v: float) -> str:
    return f"{v:.6f}".rstrip("0").rstrip(".") or "0"


@register("obj")
class OBJEncoder:
    """Wavefront OBJ; one `o <id>` group per feature, triangulated faces."""

    tag = "obj"
    media_type = "model/obj"

    def __init__(self):
        self.next_vertex = 1

    def encode_header(self, ctx: EncodeContext) -> bytes:
        lines = [f"# {ctx.title or ctx.collection_id}"]
        if ctx.crs:
            lines.append(f"# crs {ctx.crs}")
        return ("\n".join(lines) + "\n").encode("utf-8")

    def encode_feature(self, feature: Feature) -> bytes:
        g = feature.geometry
        base = self.next_vertex
        self.next_vertex += len(g.vertices)
        lines = [f"o {feature.id}"]
        lines.extend(f"v {_num(x)} {_num(y)} {_num(z)}" for x, y, z in g.vertices)
        lines.extend(f"f {a + base} {b + base} {c + base}" for a, b, c in triangulate(g))
        return ("\n".join(lines) + "\n").encode("utf-8")

    def encode_footer(self) -> bytes:
        return b""
