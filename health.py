from datetime import datetime

import psutil
import redis
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from jobs import worker_status

SERVICE_NAME = "Promotional Video Pipeline API"
SERVICE_VERSION = "1.0.0"

health_router = APIRouter()


def check_database(db: Session) -> dict:
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_worker(db: Session) -> dict:
    """Rendering worker as seen through its heartbeats.

    A missing or offline worker only blocks new starts, so it is reported as
    a warning instead of failing the web tier.
    """
    worker = worker_status(db)
    if not worker["configured"]:
        state = "warning"
        detail = "VIDEO_WORKER_URL or VIDEO_WORKER_SECRET is not set"
    elif not worker["online"]:
        state = "warning"
        detail = "no heartbeat within the liveness window"
    else:
        state = "healthy"
        detail = None

    check = {
        "status": state,
        "configured": worker["configured"],
        "online": worker["online"],
        "worker_id": worker["worker_id"],
        "last_seen_seconds_ago": worker["last_seen_seconds_ago"],
    }
    if detail:
        check["detail"] = detail
    return check


def check_queue() -> dict:
    # The queue belongs to the worker machine; the web tier only reports on it.
    try:
        redis_conn = redis.from_url(settings.redis_url, socket_connect_timeout=2)
        redis_conn.ping()
        return {"status": "healthy"}
    except redis.RedisError as e:
        return {"status": "warning", "error": str(e)}


def check_system() -> dict:
    cpu_percent = psutil.cpu_percent(interval=None)
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    busy = cpu_percent > 90 or memory.percent > 90 or disk.percent > 90
    return {
        "status": "warning" if busy else "healthy",
        "cpu_percent": cpu_percent,
        "memory_percent": memory.percent,
        "disk_percent": disk.percent
    }


@health_router.get("/")
def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION
    }


@health_router.get("/detailed")
def detailed_health_check(db: Session = Depends(get_db)):
    """Database, worker liveness, queue and host resources"""
    checks = {
        "database": check_database(db),
        "worker": check_worker(db),
        "queue": check_queue(),
        "system": check_system(),
    }
    unhealthy = any(check["status"] == "unhealthy" for check in checks.values())
    health_status = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks
    }

    if unhealthy:
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@health_router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """Ready once the job store answers"""
    database = check_database(db)
    if database["status"] != "healthy":
        raise HTTPException(
            status_code=503,
            detail={"status": "not ready", "error": database["error"]}
        )
    return {"status": "ready"}


@health_router.get("/live")
def liveness_check():
    return {"status": "alive"}
