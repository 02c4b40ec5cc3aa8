import sys
from pathlib import Path

import pytest

# Ensure `backend/` is on sys.path so tests can import local modules
# like `store.*`, `geo.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

REPO_ROOT = BACKEND_ROOT.parent


@pytest.fixture
def packstore_env(tmp_path, monkeypatch):
    """
    Serve the repo's collections, but keep snapshots and telemetry under tmp_path.
    """
    from catalog.registry import clear_registry_cache
    from catalog.service import get_service

    monkeypatch.setenv("PACKSTORE_COLLECTIONS_DIR", str(REPO_ROOT / "collections"))
    monkeypatch.setenv("PACKSTORE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("PACKSTORE_TELEMETRY", "0")
    clear_registry_cache()
    get_service.cache_clear()
    yield tmp_path
    get_service().close()
    get_service.cache_clear()
    clear_registry_cache()
