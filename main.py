from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy.orm import Session
import uuid
import logging
from contextlib import asynccontextmanager

# Local imports
from config import settings
from database import get_db, create_tables
from errors import JobError
from security import security_manager
from rate_limiter import limiter, setup_rate_limiting, START_LIMIT
from health import health_router
from monitoring import setup_monitoring
from status_cache import status_cache
from models import (
    ActiveJobsResponse,
    CompleteRequest,
    FailRequest,
    HeartbeatRequest,
    JobStatusResponse,
    ProgressRequest,
    StartResponse,
    VerifyUploadRequest,
    VerifyUploadResponse,
    WorkerStatusResponse,
)
import jobs

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        create_tables()
        logger.info("Application started successfully")
        if not settings.worker_configured:
            logger.warning("VIDEO_WORKER_URL / VIDEO_WORKER_SECRET not set; video jobs cannot start")
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    # Shutdown
    logger.info("Application shutting down")

# Create FastAPI app
app = FastAPI(
    title="Promotional Video Pipeline API",
    description="Job coordination for per-item promotional videos rendered on a local worker",
    version="1.0.0",
    lifespan=lifespan
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure properly for production
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup rate limiting
setup_rate_limiting(app)

# Setup monitoring
setup_monitoring(app)

# Include health check router
app.include_router(health_router, prefix="/health", tags=["health"])

@app.exception_handler(JobError)
async def job_error_handler(request: Request, exc: JobError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
    )

# Editor surface

@app.post("/api/video-jobs/{item_number}/start", response_model=StartResponse)
@limiter.limit(START_LIMIT)
def start_video_job(
    item_number: int,
    request: Request,
    db: Session = Depends(get_db),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Create a job and hand out a single-use upload token for the worker"""
    job, upload_token = jobs.start_job(db, item_number)
    logger.info(f"Start for item {item_number} from {security_manager.get_client_ip(request)}")

    return StartResponse(
        job_id=job.id,
        item_number=job.item_number,
        upload_destination=jobs.upload_destination(job.id),
        upload_token=upload_token,
        upload_token_expires_at=job.upload_token_expires_at
    )

@app.get("/api/video-jobs/active", response_model=ActiveJobsResponse)
def list_active_jobs(
    db: Session = Depends(get_db),
    api_key: str = Depends(security_manager.get_api_key)
):
    """All non-terminal jobs, newest first (admin endpoint)"""
    return {"jobs": jobs.list_active_jobs(db)}

@app.get("/api/video-jobs/{item_number}/status", response_model=JobStatusResponse)
def get_video_job_status(item_number: int, db: Session = Depends(get_db)):
    """Latest job for an item plus worker liveness"""
    return jobs.item_status(db, item_number)

@app.get("/api/video-worker/status", response_model=WorkerStatusResponse)
def get_worker_status(db: Session = Depends(get_db)):
    return jobs.worker_status(db)

# Worker surface

@app.post("/api/video-jobs/{job_id}/verify-upload", response_model=VerifyUploadResponse)
def verify_upload(
    job_id: str,
    body: VerifyUploadRequest,
    db: Session = Depends(get_db),
    secret: str = Depends(security_manager.require_worker_secret)
):
    job = jobs.verify_upload(db, job_id, body.token, worker_id=body.worker_id)
    return VerifyUploadResponse(job_id=job.id, item_number=job.item_number)

@app.post("/api/video-jobs/{job_id}/progress")
def report_progress(
    job_id: str,
    body: ProgressRequest,
    db: Session = Depends(get_db),
    secret: str = Depends(security_manager.require_worker_secret)
):
    job = jobs.record_progress(
        db,
        job_id,
        stage=body.stage,
        progress=body.progress,
        message=body.message,
        worker_id=body.worker_id,
        status=body.status,
        total=body.total
    )
    return {"ok": True, "status": job.status, "progress": job.progress}

@app.post("/api/video-jobs/{job_id}/complete")
def complete_video_job(
    job_id: str,
    body: CompleteRequest,
    db: Session = Depends(get_db),
    secret: str = Depends(security_manager.require_worker_secret)
):
    job = jobs.complete_job(db, job_id, result=body.result.model_dump(), message=body.message)
    return {"ok": True, "status": job.status, "result": job.result_dict()}

@app.post("/api/video-jobs/{job_id}/fail")
def fail_video_job(
    job_id: str,
    body: FailRequest,
    db: Session = Depends(get_db),
    secret: str = Depends(security_manager.require_worker_secret)
):
    job = jobs.fail_job(db, job_id, error=body.error, message=body.message)
    return {"ok": True, "status": job.status}

@app.post("/api/video-worker/heartbeat")
def worker_heartbeat(
    body: HeartbeatRequest,
    db: Session = Depends(get_db),
    secret: str = Depends(security_manager.require_worker_secret)
):
    job = jobs.record_heartbeat(db, body.worker_id)
    return {"ok": True, "worker_id": job.worker_id, "last_heartbeat_at": job.worker_last_seen_at}

# Legacy polling surface, served from the status cache

@app.get("/api/video-processing/status/{item_number}", response_model=JobStatusResponse)
def get_cached_status(item_number: int, db: Session = Depends(get_db)):
    return jobs.cached_item_status(db, item_number)

@app.get("/api/video-processing/active-jobs")
def get_cached_active_jobs():
    return {"jobs": status_cache.active()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
