import os
import sys
import threading
from contextlib import asynccontextmanager
from typing import Optional

import redis
from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from rq import Queue, SimpleWorker

from config import settings
from errors import WebTierError
from worker_client import WebTierClient
from worker_tasks import process_video_job

logger.add(settings.worker_log_file, rotation="1 week", retention="4 weeks", level="INFO")

ALLOWED_EXTENSIONS = {".mp4", ".mov", ".m4v", ".webm", ".avi", ".mkv"}
CHUNK_SIZE = 1024 * 1024


class HeartbeatLoop:
    """Posts a heartbeat to the web tier every ``interval`` seconds on a daemon thread"""

    def __init__(self, client: WebTierClient, interval: float):
        self.client = client
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def beat(self) -> bool:
        try:
            self.client.heartbeat()
            return True
        except WebTierError as e:
            logger.warning(f"Heartbeat failed: {e}")
            return False
        except Exception:
            # The loop must outlive any single bad beat or the worker reads as offline.
            logger.exception("Heartbeat failed unexpectedly")
            return False

    def _run(self):
        while True:
            self.beat()
            if self._stop.wait(self.interval):
                break

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()
        logger.info(f"Heartbeat started every {self.interval}s as {self.client.worker_id}")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + settings.web_request_timeout)


_client: Optional[WebTierClient] = None


def get_web_client() -> WebTierClient:
    global _client
    if _client is None:
        _client = WebTierClient.from_settings()
    return _client


def get_queue() -> Queue:
    redis_conn = redis.from_url(settings.redis_url)
    return Queue(settings.video_queue_name, connection=redis_conn)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.video_worker_secret:
        logger.error("VIDEO_WORKER_SECRET is not set; the web tier will reject this worker")

    os.makedirs(settings.uploads_dir, exist_ok=True)
    heartbeat = HeartbeatLoop(get_web_client(), settings.heartbeat_interval_seconds)
    heartbeat.start()

    yield

    heartbeat.stop()
    logger.info("Worker shutting down")


app = FastAPI(title="Promotional Video Worker", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.worker_allowed_origin],
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)


def extract_upload_token(x_upload_token: Optional[str], authorization: Optional[str]) -> str:
    if x_upload_token and x_upload_token.strip():
        return x_upload_token.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return ""


def store_upload(upload, dest_path: str, max_bytes: int) -> int:
    """Stream an upload to disk; returns bytes written or raises 413 past ``max_bytes``"""
    os.makedirs(os.path.dirname(dest_path), exist_ok=True)
    written = 0
    with open(dest_path, "wb") as out:
        while True:
            chunk = upload.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                out.close()
                os.remove(dest_path)
                raise HTTPException(status_code=413, detail=f"Video exceeds {settings.max_upload_mb} MB")
            out.write(chunk)
    if written == 0:
        os.remove(dest_path)
        raise HTTPException(status_code=400, detail="Empty upload")
    return written


@app.post("/upload/{job_id}")
def upload_video(
    job_id: str,
    video: UploadFile = File(...),
    x_upload_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    client: WebTierClient = Depends(get_web_client),
    queue: Queue = Depends(get_queue),
):
    """Receive a browser upload, verify its token with the web tier and queue the pipeline"""
    token = extract_upload_token(x_upload_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Upload token required")

    ext = os.path.splitext(video.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported video type: {ext or 'none'}")

    try:
        verified = client.verify_upload(job_id, token)
    except WebTierError as e:
        logger.warning(f"Upload for job {job_id} rejected: {e}")
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    item_number = int(verified["item_number"])

    source_path = os.path.join(settings.uploads_dir, job_id, f"source{ext}")
    try:
        size = store_upload(video.file, source_path, settings.max_upload_mb * 1024 * 1024)
    except HTTPException as e:
        _fail_quietly(client, job_id, e.detail)
        raise
    logger.info(f"Job {job_id}: stored {size} bytes for item {item_number}")

    try:
        queue.enqueue(process_video_job, job_id, item_number, source_path, job_timeout=-1)
    except redis.RedisError as e:
        logger.error(f"Job {job_id}: could not enqueue: {e}")
        _fail_quietly(client, job_id, "Worker queue unavailable")
        raise HTTPException(status_code=503, detail="Worker queue unavailable")

    return {"ok": True, "job_id": job_id, "item_number": item_number, "status": "uploaded"}


def _fail_quietly(client: WebTierClient, job_id: str, error: str):
    try:
        client.fail(job_id, error, "Upload could not be processed")
    except WebTierError as e:
        logger.error(f"Job {job_id}: could not report failure: {e}")


@app.get("/health")
def health():
    """Worker liveness plus writability of its upload and job directories"""
    directories = {}
    for name, path in (("uploads", settings.uploads_dir), ("jobs", settings.jobs_base_dir)):
        try:
            os.makedirs(path, exist_ok=True)
            directories[name] = "writable" if os.access(path, os.W_OK) else "read-only"
        except OSError as e:
            directories[name] = f"error: {e}"
    healthy = all(state == "writable" for state in directories.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "worker_id": settings.worker_id,
        "directories": directories,
    }


def run_queue_worker():
    """Process queued pipeline jobs one at a time in this process"""
    redis_conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.video_queue_name, connection=redis_conn)
    SimpleWorker([queue], connection=redis_conn).work()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "work":
        run_queue_worker()
    else:
        import uvicorn
        uvicorn.run(app, host=settings.worker_host, port=settings.worker_port)
