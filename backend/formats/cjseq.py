"""
CityJSON Text Sequences (CityJSONSeq): a header document followed by one
`CityJSONFeature` per line, each with its own local vertex list.

Memory use does not grow with the page size.
"""
from __future__ import annotations

from features.types import Feature
from formats.base import EncodeContext, dumps, register
from formats.cityjson import CITYJSON_VERSION, city_object, metadata, quantize, transform_for


@register("cjseq", "jsonl")
class CityJSONSeqEncoder:
    tag = "cjseq"
    media_type = "application/city+json-seq"

    def __init__(self):
        self.transform: dict[str, list[float]] | None = None

    def encode_header(self, ctx: EncodeContext) -> bytes:
        self.transform = transform_for(ctx)
        header = {
            "type": "CityJSON",
            "version": CITYJSON_VERSION,
            "transform": self.transform,
            "metadata": metadata(ctx),
            "CityObjects": {},
            "vertices": [],
        }
        return (dumps(header) + "\n").encode("utf-8")

    def encode_feature(self, feature: Feature) -> bytes:
        transform = self.transform or transform_for(EncodeContext(collection_id="features"))
        line = {
            "type": "CityJSONFeature",
            "id": feature.id,
            "CityObjects": {feature.id: city_object(feature, lambda i: i)},
            "vertices": [quantize(v, transform) for v in feature.geometry.vertices],
        }
        return (dumps(line) + "\n").encode("utf-8")

    def encode_footer(self) -> bytes:
        return b""
