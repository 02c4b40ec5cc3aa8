from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import yaml

from catalog.types import CollectionConfig
from store.errors import NotFound

logger = logging.getLogger(__name__)


def _repo_root() -> Path:
    # .../backend/catalog/registry.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def collections_root() -> Path:
    raw = (os.getenv("PACKSTORE_COLLECTIONS_DIR") or "").strip()
    return Path(raw) if raw else _repo_root() / "collections"


def data_root() -> Path:
    raw = (os.getenv("PACKSTORE_DATA_DIR") or "").strip()
    return Path(raw) if raw else _repo_root() / "data"


@dataclass(frozen=True)
class CollectionEntry:
    config: CollectionConfig
    # Absolute path to collection.yaml on disk.
    path: Path

    @property
    def source_path(self) -> Path:
        return resolve_path(self.config.source.path, base=self.path.parent)

    @property
    def snapshot_path(self) -> Path:
        raw = self.config.snapshotPath
        if raw:
            return Path(raw) if Path(raw).is_absolute() else data_root() / raw
        return data_root() / "snapshots" / f"{self.config.id}.pks"


def _iter_collection_yaml_files() -> Iterable[Path]:
    root = collections_root()
    if not root.exists():
        return []
    # Convention: collections/*/collection.yaml
    return root.glob("*/collection.yaml")


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid collection yaml root: {path}")
    return data


@lru_cache(maxsize=1)
def get_registry() -> dict[str, CollectionEntry]:
    out: dict[str, CollectionEntry] = {}
    for p in sorted(_iter_collection_yaml_files(), key=lambda x: str(x)):
        cfg = CollectionConfig.model_validate(_load_yaml(p))
        if not cfg.enabled:
            continue
        if cfg.id in out:
            raise ValueError(f"Duplicate collection id '{cfg.id}' in {p} and {out[cfg.id].path}")
        out[cfg.id] = CollectionEntry(config=cfg, path=p)
    logger.info("Discovered %d collections under %s", len(out), collections_root())
    return out


def list_collections() -> list[CollectionEntry]:
    return list(get_registry().values())


def get_collection(collection_id: str) -> CollectionEntry:
    reg = get_registry()
    entry = reg.get((collection_id or "").strip())
    if entry is None:
        raise NotFound(f"Collection '{collection_id}' not found")
    return entry


def resolve_path(raw: str, *, base: Path | None = None) -> Path:
    """
    Absolute paths are kept. Relative ones resolve against `base` when the file
    exists there, otherwise against the repo root ("data/..." and "/data/..." style).
    """
    p = Path(raw)
    if p.is_absolute() and p.exists():
        return p
    rel = (raw or "").lstrip("/")
    if base is not None and (base / rel).exists():
        return base / rel
    if p.is_absolute():
        return p
    return _repo_root() / rel


def clear_registry_cache() -> None:
    """
    Forget discovered collections.

    YAML changes are otherwise not picked up until the process restarts.
    """
    get_registry.cache_clear()
