from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from api.items import (
    error_response,
    get_collection_metadata,
    get_item,
    list_collection_metadata,
    stream_items,
)
from store.errors import StoreError
from telemetry.singleton import get_store

logging.basicConfig(
    level=os.getenv("PACKSTORE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="packstore")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip()
        for o in (os.getenv("PACKSTORE_CORS_ORIGINS") or "http://localhost:3000").split(",")
        if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
def handle_store_error(_request: Request, exc: StoreError):
    return error_response(exc)


@app.get("/collections")
def collections():
    return list_collection_metadata()


@app.get("/collections/{collection_id}")
def collection(collection_id: str):
    return get_collection_metadata(collection_id)


@app.get("/collections/{collection_id}/items")
def items(
    request: Request,
    collection_id: str,
    bbox: str | None = None,
    bbox_crs: str | None = Query(default=None, alias="bbox-crs"),
    filter: str | None = None,
    limit: str | None = None,
    offset: str | None = None,
    f: str | None = None,
):
    return stream_items(
        request,
        collection_id,
        bbox=bbox,
        bbox_crs=bbox_crs,
        filter=filter,
        limit=limit,
        offset=offset,
        f=f,
    )


@app.get("/collections/{collection_id}/items/{feature_id}")
def item(request: Request, collection_id: str, feature_id: str, f: str | None = None):
    return get_item(request, collection_id, feature_id, f)


@app.get("/telemetry/summary")
def telemetry_summary(
    collection: str | None = None,
    queryType: str | None = None,
    sinceMs: int | None = None,
):
    store = get_store()
    if store is None:
        return []
    return store.summary(collection=collection, query_type=queryType, since_ms=sinceMs)


@app.get("/telemetry/slowest")
def telemetry_slowest(
    collection: str | None = None,
    queryType: str | None = None,
    limit: int = 25,
):
    store = get_store()
    if store is None:
        return []
    return store.slowest(collection=collection, query_type=queryType, limit=limit)
