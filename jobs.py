"""Job record operations for the video pipeline.

Everything that changes a VideoJob row goes through this module so that the
state machine in job_states is applied uniformly. The web tier calls these
functions from its routes; each one commits its own transaction and refreshes
the status cache afterwards.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from database import (
    VideoJob,
    get_active_jobs,
    get_catalog_item,
    get_job_by_id,
    get_latest_heartbeat_job,
    get_latest_job_for_item,
    get_newest_job,
)
from errors import (
    InvalidItemError,
    InvalidStatusError,
    InvalidTokenError,
    JobConflictError,
    JobError,
    JobNotFoundError,
    NotConfiguredError,
    TokenExpiredError,
    WorkerOfflineError,
)
from job_states import JobStatus, ensure_transition, is_terminal, parse_status
from monitoring import job_count
from security import generate_upload_token, sha256_hex, token_matches
from status_cache import status_cache

logger = logging.getLogger(__name__)

SENTINEL_ITEM_NUMBER = 0

# States in which a job is expected to report progress regularly.
PROGRESS_REPORTING_STATUSES = [
    JobStatus.UPLOADED.value,
    JobStatus.PROCESSING.value,
    JobStatus.CLOUDINARY_UPLOAD.value,
]


def utcnow() -> datetime:
    return datetime.utcnow()


def validate_item_number(item_number) -> int:
    try:
        value = int(item_number)
    except (TypeError, ValueError):
        raise InvalidItemError("Invalid itemNumber")
    if value <= 0:
        raise InvalidItemError("Invalid itemNumber")
    return value


def worker_online(last_seen_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if not last_seen_at:
        return False
    now = now or utcnow()
    return (now - last_seen_at).total_seconds() <= settings.liveness_window_seconds


def upload_destination(job_id: str) -> str:
    return f"{str(settings.video_worker_url).rstrip('/')}/upload/{job_id}"


def job_fields(job: VideoJob) -> dict:
    return {
        "job_id": job.id,
        "item_number": job.item_number,
        "status": job.status,
        "active": not is_terminal(job.status),
        "stage": job.stage,
        "progress": job.progress or 0,
        "total": job.total or 100,
        "message": job.message or "",
        "error": job.error or None,
        "result": job.result_dict(),
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def _publish(job: VideoJob) -> None:
    if job.item_number and job.item_number > 0:
        status_cache.publish(job.item_number, job_fields(job))


def _get_job_or_404(db: Session, job_id: str) -> VideoJob:
    job = get_job_by_id(db, job_id)
    if not job:
        raise JobNotFoundError("job not found")
    return job


def _touch_worker(job: VideoJob, worker_id: Optional[str], now: datetime) -> None:
    job.worker_last_seen_at = now
    if worker_id:
        job.worker_id = str(worker_id)


def start_job(db: Session, item_number) -> tuple:
    """Create a new job awaiting upload; returns (job, raw_upload_token)."""
    item_number = validate_item_number(item_number)

    if not settings.video_worker_url:
        raise NotConfiguredError("VIDEO_WORKER_URL is not configured on the backend")
    if not settings.video_worker_secret:
        raise NotConfiguredError("VIDEO_WORKER_SECRET is not configured on the backend")

    sweep_stale_jobs(db)

    heartbeat = get_latest_heartbeat_job(db)
    if not worker_online(heartbeat.worker_last_seen_at if heartbeat else None):
        raise WorkerOfflineError("Local worker is offline")

    now = utcnow()
    superseded = []
    for old in get_active_jobs(db, item_number, for_update=True):
        old.status = ensure_transition(old.status, JobStatus.SUPERSEDED).value
        old.message = "Superseded by a newer upload"
        old.updated_at = now
        superseded.append(old)
    db.flush()

    upload_token = generate_upload_token()
    job = VideoJob(
        id=str(uuid.uuid4()),
        item_number=item_number,
        status=JobStatus.AWAITING_UPLOAD.value,
        stage="awaiting-upload",
        progress=0,
        total=100,
        message="Waiting for upload to local worker...",
        upload_token_hash=sha256_hex(upload_token),
        upload_token_expires_at=now + timedelta(minutes=settings.upload_token_ttl_minutes),
        last_progress_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"Concurrent start for item {item_number} lost the race")
        raise JobConflictError("Another upload for this item was just started")
    db.refresh(job)

    for old in superseded:
        job_count.labels(status=JobStatus.SUPERSEDED.value).inc()
        logger.info(f"Job {old.id} for item {item_number} superseded by {job.id}")

    logger.info(f"Job {job.id} created for item {item_number}, awaiting upload")
    _publish(job)
    return job, upload_token


def verify_upload(db: Session, job_id: str, token: str, worker_id: Optional[str] = None) -> VideoJob:
    """Check a browser's upload token; a valid token is consumed."""
    token = (token or "").strip()
    if not token:
        raise JobError("token required")

    job = _get_job_or_404(db, job_id)
    now = utcnow()

    if job.status == JobStatus.SUPERSEDED.value:
        raise JobConflictError("job superseded")
    if job.upload_token_expires_at and job.upload_token_expires_at < now:
        raise TokenExpiredError("token expired")
    if not token_matches(token, job.upload_token_hash):
        raise InvalidTokenError("invalid token")
    if job.status != JobStatus.AWAITING_UPLOAD.value:
        raise JobConflictError("upload token already used")

    job.status = ensure_transition(job.status, JobStatus.UPLOADED).value
    job.stage = "uploaded"
    job.progress = max(job.progress or 0, 5)
    job.message = "Upload received by local worker"
    job.last_progress_at = now
    _touch_worker(job, worker_id, now)
    db.commit()
    db.refresh(job)

    logger.info(f"Upload token accepted for job {job_id} (item {job.item_number})")
    _publish(job)
    return job


def record_progress(
    db: Session,
    job_id: str,
    stage: Optional[str] = None,
    progress: Optional[int] = None,
    message: Optional[str] = None,
    worker_id: Optional[str] = None,
    status: Optional[str] = None,
    total: Optional[int] = None,
) -> VideoJob:
    job = _get_job_or_404(db, job_id)
    target = parse_status(status) if status else JobStatus.PROCESSING
    new_status = ensure_transition(job.status, target)
    if is_terminal(new_status):
        raise InvalidStatusError(f"Progress cannot set status {new_status.value}")
    job.status = new_status.value

    now = utcnow()
    if stage is not None:
        job.stage = str(stage)
    if total is not None and int(total) > 0:
        job.total = int(total)
    if progress is not None:
        ceiling = job.total or 100
        # Never move backwards within one job.
        job.progress = min(max(int(progress), job.progress or 0), ceiling)
    if message is not None:
        job.message = str(message)
    job.last_progress_at = now
    _touch_worker(job, worker_id, now)
    db.commit()
    db.refresh(job)

    _publish(job)
    return job


def complete_job(db: Session, job_id: str, result: Optional[dict] = None, message: Optional[str] = None) -> VideoJob:
    job = _get_job_or_404(db, job_id)
    job.status = ensure_transition(job.status, JobStatus.COMPLETE).value

    now = utcnow()
    result = result or {}
    job.stage = "complete"
    job.progress = job.total or 100
    job.message = message or "Complete"
    job.error = None
    job.result_video_url = result.get("video_url") or job.result_video_url
    job.result_video_public_id = result.get("video_public_id") or job.result_video_public_id
    job.result_icon_url = result.get("icon_url") or job.result_icon_url
    job.result_icon_public_id = result.get("icon_public_id") or job.result_icon_public_id
    job.last_progress_at = now
    _touch_worker(job, None, now)

    if job.result_video_url:
        _publish_to_catalog(db, job)

    db.commit()
    db.refresh(job)

    job_count.labels(status=JobStatus.COMPLETE.value).inc()
    logger.info(f"Job {job_id} complete for item {job.item_number}: {job.result_video_url}")
    _publish(job)
    return job


def _publish_to_catalog(db: Session, job: VideoJob) -> bool:
    item = get_catalog_item(db, job.item_number)
    if not item:
        logger.warning(f"No catalog record for item {job.item_number}; result URL not published")
        return False

    item.video_url = job.result_video_url
    item.video_public_id = job.result_video_public_id or ""
    if job.result_icon_url:
        item.icon_url = job.result_icon_url
        item.icon_public_id = job.result_icon_public_id or ""
    return True


def fail_job(db: Session, job_id: str, error: Optional[str] = None, message: Optional[str] = None) -> VideoJob:
    job = _get_job_or_404(db, job_id)
    job.status = ensure_transition(job.status, JobStatus.FAILED).value

    now = utcnow()
    job.stage = "failed"
    job.progress = min(job.total or 100, job.progress or 0)
    job.message = message or "Video processing failed"
    job.error = str(error or "Unknown error")
    _touch_worker(job, None, now)
    db.commit()
    db.refresh(job)

    job_count.labels(status=JobStatus.FAILED.value).inc()
    logger.warning(f"Job {job_id} failed for item {job.item_number}: {job.error}")
    _publish(job)
    return job


def record_heartbeat(db: Session, worker_id: Optional[str] = None) -> VideoJob:
    """Store worker liveness on the newest job row, creating a sentinel if needed."""
    worker_id = (worker_id or settings.worker_id).strip()
    now = utcnow()

    newest = get_newest_job(db)
    if newest:
        _touch_worker(newest, worker_id, now)
        db.commit()
        return newest

    sentinel = VideoJob(
        id=str(uuid.uuid4()),
        item_number=SENTINEL_ITEM_NUMBER,
        status=JobStatus.QUEUED.value,
        stage="heartbeat",
        progress=0,
        total=100,
        message="Worker heartbeat sentinel",
        worker_last_seen_at=now,
        worker_id=worker_id,
        created_at=now,
        updated_at=now,
    )
    db.add(sentinel)
    db.commit()
    logger.info(f"Created heartbeat sentinel for worker {worker_id}")
    return sentinel


def worker_status(db: Session) -> dict:
    job = get_latest_heartbeat_job(db)
    last_seen = job.worker_last_seen_at if job else None
    return {
        "online": worker_online(last_seen),
        "worker_id": job.worker_id if job else None,
        "last_heartbeat_at": last_seen,
        "last_seen_seconds_ago": int((utcnow() - last_seen).total_seconds()) if last_seen else None,
        "configured": settings.worker_configured,
    }


def _idle_status(item_number: int) -> dict:
    return {
        "job_id": None,
        "item_number": item_number,
        "status": None,
        "active": False,
        "stage": None,
        "progress": 0,
        "total": 100,
        "message": "No job",
        "error": None,
        "result": {},
    }


def _with_liveness(db: Session, payload: dict) -> dict:
    heartbeat = get_latest_heartbeat_job(db)
    last_seen = heartbeat.worker_last_seen_at if heartbeat else None
    payload["worker_online"] = worker_online(last_seen)
    payload["worker_last_seen_at"] = last_seen
    payload["poll_interval_seconds"] = settings.status_poll_interval_seconds
    return payload


def item_status(db: Session, item_number) -> dict:
    """Latest job for an item, read from the job records."""
    item_number = validate_item_number(item_number)
    sweep_stale_jobs(db)

    job = get_latest_job_for_item(db, item_number)
    payload = job_fields(job) if job else _idle_status(item_number)
    return _with_liveness(db, payload)


def cached_item_status(db: Session, item_number) -> dict:
    """Status for legacy pollers: cache first, rebuilt from the job record on a miss."""
    item_number = validate_item_number(item_number)

    entry = status_cache.get(item_number)
    if entry is None:
        job = get_latest_job_for_item(db, item_number)
        if job is None:
            return _with_liveness(db, _idle_status(item_number))
        entry = status_cache.publish(item_number, job_fields(job))
    return _with_liveness(db, entry)


def list_active_jobs(db: Session) -> list:
    sweep_stale_jobs(db)
    return [job_fields(job) for job in get_active_jobs(db)]


def sweep_stale_jobs(db: Session, now: Optional[datetime] = None) -> int:
    """Fail jobs that stopped reporting progress or never received their upload."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.stale_job_timeout_minutes)

    stale = (
        db.query(VideoJob)
        .filter(VideoJob.status.in_(PROGRESS_REPORTING_STATUSES))
        .filter(func.coalesce(VideoJob.last_progress_at, VideoJob.created_at) < cutoff)
        .all()
    )
    expired = (
        db.query(VideoJob)
        .filter(VideoJob.status == JobStatus.AWAITING_UPLOAD.value)
        .filter(VideoJob.upload_token_expires_at.isnot(None))
        .filter(VideoJob.upload_token_expires_at < now)
        .all()
    )
    if not stale and not expired:
        return 0

    for job in stale:
        job.status = ensure_transition(job.status, JobStatus.FAILED).value
        job.stage = "failed"
        job.error = f"No progress from the worker for {settings.stale_job_timeout_minutes} minutes"
        job.message = "Video processing stalled"
    for job in expired:
        job.status = ensure_transition(job.status, JobStatus.FAILED).value
        job.stage = "failed"
        job.error = "Upload token expired before the video was received"
        job.message = "Upload not received"
    db.commit()

    for job in stale + expired:
        job_count.labels(status=JobStatus.FAILED.value).inc()
        logger.warning(f"Job {job.id} for item {job.item_number} auto-failed: {job.error}")
        _publish(job)
    return len(stale) + len(expired)
