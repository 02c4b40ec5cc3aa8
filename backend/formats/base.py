from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Protocol

from features.types import Feature
from geo.aoi import BBox
from store.errors import UnsupportedFormat


@dataclass(frozen=True)
class EncodeContext:
    """
    Response-level facts encoders may need.

    `page_href(offset)` builds the URL of the page starting at `offset`; it is
    None when the caller has no URL to offer (e.g. offline export).
    """

    collection_id: str
    title: str | None = None
    crs: str | None = None
    extent: BBox | None = None
    limit: int | None = None
    offset: int = 0
    self_href: str | None = None
    page_href: Callable[[int], str] | None = field(default=None, repr=False, compare=False)

    def links(self, number_returned: int) -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        if self.self_href:
            out.append({"href": self.self_href, "rel": "self", "type": "application/geo+json"})
        if (
            self.page_href is not None
            and self.limit is not None
            and number_returned >= self.limit
        ):
            out.append(
                {
                    "href": self.page_href(self.offset + number_returned),
                    "rel": "next",
                    "type": "application/geo+json",
                }
            )
        return out


class Encoder(Protocol):
    tag: str
    media_type: str

    def encode_header(self, ctx: EncodeContext) -> bytes: ...

    def encode_feature(self, feature: Feature) -> bytes: ...

    def encode_footer(self) -> bytes: ...


_REGISTRY: dict[str, Callable[[], Encoder]] = {}
_CANONICAL: list[str] = []


def register(*tags: str):
    """Class decorator: make an encoder selectable by `tags` (first tag is canonical)."""

    def deco(cls):
        for t in tags:
            _REGISTRY[t] = cls
        _CANONICAL.append(tags[0])
        return cls

    return deco


def supported_formats() -> list[str]:
    _load_builtin()
    return list(_CANONICAL)


def get_encoder(tag: str | None) -> Encoder:
    _load_builtin()
    key = (tag or "json").strip().lower()
    factory = _REGISTRY.get(key)
    if factory is None:
        raise UnsupportedFormat(tag or "", supported_formats())
    return factory()


def encode_stream(
    encoder: Encoder, features: Iterable[Feature], ctx: EncodeContext
) -> Iterator[bytes]:
    """
    Header, one chunk per feature, footer. Nothing is buffered here; closing this
    generator early closes `features` too.
    """
    it = iter(features)
    try:
        yield encoder.encode_header(ctx)
        for f in it:
            chunk = encoder.encode_feature(f)
            if chunk:
                yield chunk
        yield encoder.encode_footer()
    finally:
        close = getattr(it, "close", None)
        if close is not None:
            close()


def dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def _load_builtin() -> None:
    # encoders register themselves on import
    from formats import cityjson, cjseq, geojson, obj  # noqa: F401


def json_safe(attributes: dict[str, Any]) -> dict[str, Any]:
    """JSON has no NaN/Infinity; such values go out as null."""
    return {
        k: (None if isinstance(v, float) and not math.isfinite(v) else v)
        for k, v in attributes.items()
    }
