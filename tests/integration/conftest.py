"""
Integration test fixtures for videoflow.

These fixtures provide a full FastAPI test client whose lifespan wires a real
SQLite job store to fake object storage, a fake transcoding engine and a
fake Redis.
"""

from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from videoflow.api.main import app
from videoflow.core.cache import Cache
from videoflow.core.config import Settings


@pytest.fixture(scope="function")
def api_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        redis_url="",
        s3_bucket="test-bucket",
    )


@pytest.fixture(scope="function")
def client(api_settings, storage, engine, cache) -> Generator[TestClient, None, None]:
    """Create a test client with the app's collaborators replaced by fakes."""
    engine.auto = True
    engine.auto_progress = [25, 80]

    # Patch collaborators where they're used (not where they're defined)
    with patch("videoflow.api.main.get_settings", return_value=api_settings), \
         patch("videoflow.api.main.StorageService", return_value=storage), \
         patch("videoflow.api.main.FFmpegEngine", return_value=engine), \
         patch.object(Cache, "from_url", return_value=cache):
        with TestClient(app) as test_client:
            yield test_client


@pytest.fixture
def headers(owner_id) -> dict:
    return {"X-Owner-Id": owner_id}


@pytest.fixture
def uploaded_job(client: TestClient, headers: dict, storage) -> dict:
    """Request a slot and simulate the browser's direct PUT."""
    response = client.post(
        "/api/v1/jobs/upload-url",
        json={"filename": "clip.mp4", "content_type": "video/mp4", "target_profile": "720p"},
        headers=headers,
    )
    assert response.status_code == 201
    slot = response.json()
    storage.put_object(slot["storage_key"], size=2_000_000)
    return slot
