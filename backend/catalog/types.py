from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from geo.hilbert import DEFAULT_BIT_DEPTH
from store.spatial import DEFAULT_FANOUT

SourceType = Literal["geojson", "cityjson", "cjseq"]


class CollectionSource(BaseModel):
    type: SourceType
    # Repo-relative or absolute path to the source file.
    path: str


class CollectionIndex(BaseModel):
    fanout: int = Field(default=DEFAULT_FANOUT, ge=2)
    indexedFields: list[str] = Field(default_factory=list)
    hilbertBitDepth: int = Field(default=DEFAULT_BIT_DEPTH, ge=1, le=31)


class CollectionPaging(BaseModel):
    defaultLimit: int = Field(default=10, ge=1)
    maxLimit: int = Field(default=10_000, ge=1)

    @model_validator(mode="after")
    def _limits_ordered(self) -> "CollectionPaging":
        if self.defaultLimit > self.maxLimit:
            raise ValueError(
                f"defaultLimit ({self.defaultLimit}) must not exceed maxLimit ({self.maxLimit})"
            )
        return self


class CollectionConfig(BaseModel):
    """
    One served collection.

    Everything about a collection lives in its `collection.yaml`; code only
    interprets it.
    """

    id: str = Field(min_length=1)
    title: str
    description: str | None = None
    # Storage CRS of the source coordinates, e.g. "EPSG:7415".
    crs: str | None = None
    enabled: bool = True

    source: CollectionSource
    # Defaults to `<data dir>/snapshots/<id>.pks`.
    snapshotPath: str | None = None

    index: CollectionIndex = Field(default_factory=CollectionIndex)
    paging: CollectionPaging = Field(default_factory=CollectionPaging)

    # Let filters on unindexed fields (and OR / NOT filters without a bbox) scan the
    # whole store instead of failing with UnindexedField.
    allowFullScan: bool = False
