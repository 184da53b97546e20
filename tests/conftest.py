import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Settings are read at import time, so the environment must be in place first.
_tmp = tempfile.mkdtemp(prefix="video-pipeline-tests-")
os.environ.update({
    "DATABASE_URL": f"sqlite:///{os.path.join(_tmp, 'test.db')}",
    "API_KEY": "test-api-key",
    "VIDEO_WORKER_URL": "http://worker.test:8787",
    "VIDEO_WORKER_SECRET": "test-worker-secret",
    "WEB_API_BASE": "http://testserver",
    "WORKER_ID": "test-worker",
    "RATE_LIMIT_PER_MINUTE": "10000",
    "LOG_FILE": os.path.join(_tmp, "app.log"),
    "WORKER_LOG_FILE": os.path.join(_tmp, "worker.log"),
    "JOBS_BASE_DIR": os.path.join(_tmp, "jobs"),
    "UPLOADS_DIR": os.path.join(_tmp, "uploads"),
})

from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from database import Base, CatalogItem, SessionLocal, VideoJob, engine  # noqa: E402
from main import app  # noqa: E402
from status_cache import status_cache  # noqa: E402
from worker_client import WebTierClient  # noqa: E402


@pytest.fixture(autouse=True)
def clean_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    status_cache.clear()
    yield
    status_cache.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def api_headers():
    return {settings.api_key_name: settings.api_key}


@pytest.fixture
def worker_headers():
    return {settings.worker_secret_header: settings.video_worker_secret}


@pytest.fixture
def online_worker(client, worker_headers):
    response = client.post("/api/video-worker/heartbeat", json={"worker_id": "test-worker"}, headers=worker_headers)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def start_job(client, api_headers, online_worker):
    """Factory: start a job for an item and return the start response body"""
    def _start(item_number=7):
        response = client.post(f"/api/video-jobs/{item_number}/start", headers=api_headers)
        assert response.status_code == 200, response.text
        return response.json()
    return _start


@pytest.fixture
def web_client(client):
    """Worker-side client talking to the in-process web tier"""
    return WebTierClient("http://testserver", settings.video_worker_secret, "test-worker", http=client)


@pytest.fixture
def catalog_item(db):
    item = CatalogItem(item_number=7, name="Smoked Old Fashioned")
    db.add(item)
    db.commit()
    return item


def age_heartbeat(db, seconds):
    """Move every stored heartbeat ``seconds`` into the past"""
    past = datetime.utcnow() - timedelta(seconds=seconds)
    db.query(VideoJob).filter(VideoJob.worker_last_seen_at.isnot(None)).update(
        {VideoJob.worker_last_seen_at: past}, synchronize_session=False
    )
    db.commit()


@pytest.fixture
def stale_heartbeat(db):
    return lambda seconds: age_heartbeat(db, seconds)
