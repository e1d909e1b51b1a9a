import os
import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ["INGEST_STORE_BACKEND"] = "memory"
os.environ["INGEST_BACKGROUND_ENABLED"] = "false"
os.environ["MOCK_EMBEDDINGS_ENABLED"] = "true"
os.environ["VECTORIZE_BACKOFF_SECONDS"] = "0"

from ingest_hub.main import create_app
from ingest_hub.store import store


@pytest.fixture(autouse=True)
def reset_store():
    store.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())
