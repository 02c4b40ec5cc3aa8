from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from catalog.registry import CollectionEntry, get_collection, list_collections
from catalog.service import get_service
from formats.base import EncodeContext, encode_stream, get_encoder, supported_formats
from formats.geojson import single_feature_document
from geo.aoi import parse_bbox
from query.planner import QueryResult
from query.types import Query
from store.errors import (
    ClientError,
    CorruptRecord,
    InvalidQuery,
    NotFound,
    SnapshotRetired,
    StoreError,
)
from store.snapshot import Snapshot
from telemetry.singleton import get_store

logger = logging.getLogger(__name__)


def _int_param(name: str, raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise InvalidQuery(f"{name} must be an integer, got {raw!r}") from None


def collection_metadata(entry: CollectionEntry, snap: Snapshot) -> dict[str, Any]:
    cfg = entry.config
    extent = snap.extent
    return {
        "id": cfg.id,
        "title": cfg.title,
        "description": cfg.description,
        "itemType": "feature",
        "crs": snap.crs,
        "featureCount": snap.feature_count,
        "extent": extent.as_list() if extent is not None else None,
        "indexedFields": snap.indexed_fields,
        "formats": supported_formats(),
        "allowFullScan": cfg.allowFullScan,
        "links": [
            {"href": f"/collections/{cfg.id}/items", "rel": "items", "type": "application/geo+json"},
        ],
    }


def list_collection_metadata() -> list[dict[str, Any]]:
    service = get_service()
    out = []
    for entry in list_collections():
        with service.handle(entry.config.id).reader() as snap:
            out.append(collection_metadata(entry, snap))
    return out


def get_collection_metadata(collection_id: str) -> dict[str, Any]:
    entry = get_collection(collection_id)
    with get_service().handle(entry.config.id).reader() as snap:
        return collection_metadata(entry, snap)


def _record_telemetry(collection_id: str, query: Query, fmt: str):
    def on_close(result: QueryResult) -> None:
        store = get_store()
        if store is None:
            return
        store.record(
            collection=collection_id,
            query_type=query.query_type,
            plan=result.plan.name,
            format=fmt,
            limit=result.limit,
            number_returned=result.number_returned,
            total_ms=result.elapsed_ms or 0.0,
        )

    return on_close


def stream_items(
    request: Request,
    collection_id: str,
    *,
    bbox: str | None,
    bbox_crs: str | None,
    filter: str | None,
    limit: str | None,
    offset: str | None,
    f: str | None,
) -> StreamingResponse:
    entry = get_collection(collection_id)
    encoder = get_encoder(f)
    query = Query(
        bbox=parse_bbox(bbox) if bbox is not None else None,
        bbox_crs=bbox_crs,
        filter=filter,
        format=encoder.tag,
        limit=_int_param("limit", limit),
        offset=_int_param("offset", offset) or 0,
    )

    service = get_service()
    with service.handle(entry.config.id).reader() as snap:
        # the result holds its own snapshot reference until closed
        result = service.evaluator(entry.config.id, snap).execute(query)
        ctx = EncodeContext(
            collection_id=entry.config.id,
            title=entry.config.title,
            crs=snap.crs,
            extent=snap.extent,
            limit=result.limit,
            offset=result.offset,
            self_href=str(request.url),
            page_href=lambda off: str(request.url.include_query_params(offset=off)),
        )
    result.add_close_callback(_record_telemetry(entry.config.id, query, encoder.tag))

    return StreamingResponse(
        encode_stream(encoder, result, ctx),
        media_type=encoder.media_type,
        headers={"X-Query-Plan": result.plan.name},
        background=BackgroundTask(result.close),
    )


def get_item(request: Request, collection_id: str, feature_id: str, f: str | None) -> Response:
    entry = get_collection(collection_id)
    encoder = get_encoder(f)
    service = get_service()
    with service.handle(entry.config.id).reader() as snap:
        feature = service.evaluator(entry.config.id, snap).get_feature(feature_id)
        ctx = EncodeContext(
            collection_id=entry.config.id,
            title=entry.config.title,
            crs=snap.crs,
            extent=snap.extent,
            self_href=str(request.url),
        )

    if encoder.tag == "json":
        return JSONResponse(single_feature_document(feature, ctx), media_type=encoder.media_type)
    body = b"".join(encode_stream(encoder, [feature], ctx))
    return Response(content=body, media_type=encoder.media_type)


def status_for(exc: StoreError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ClientError):
        return 400
    if isinstance(exc, SnapshotRetired):
        return 503
    return 500


def error_response(exc: StoreError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        if isinstance(exc, CorruptRecord):
            logger.error("Snapshot integrity error: %s", exc)
        else:
            logger.error("%s: %s", exc.code, exc)
    else:
        logger.info("Rejected request (%s): %s", exc.code, exc)
    return JSONResponse(status_code=status, content={"code": exc.code, "description": str(exc)})
