from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class JobResult(BaseModel):
    video_url: Optional[str] = None
    video_public_id: Optional[str] = None
    icon_url: Optional[str] = None
    icon_public_id: Optional[str] = None


class StartResponse(BaseModel):
    job_id: str
    item_number: int
    upload_destination: str
    upload_token: str
    upload_token_expires_at: datetime


class VerifyUploadRequest(BaseModel):
    token: str = ""
    worker_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {"token": "9f2c...e1", "worker_id": "local-worker"}
        }


class VerifyUploadResponse(BaseModel):
    ok: bool = True
    job_id: str
    item_number: int


class ProgressRequest(BaseModel):
    stage: Optional[str] = None
    progress: Optional[int] = Field(default=None, ge=0)
    total: Optional[int] = Field(default=None, gt=0)
    message: Optional[str] = None
    worker_id: Optional[str] = None
    status: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "stage": "compositing",
                "progress": 55,
                "message": "Blurring canvas 120/467",
                "worker_id": "local-worker",
            }
        }


class CompleteRequest(BaseModel):
    result: JobResult = JobResult()
    message: Optional[str] = None


class FailRequest(BaseModel):
    error: str = "Unknown error"
    message: Optional[str] = None


class HeartbeatRequest(BaseModel):
    worker_id: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: Optional[str] = None
    item_number: int
    status: Optional[str] = None
    active: bool = False
    stage: Optional[str] = None
    progress: int = 0
    total: int = 100
    message: str = ""
    error: Optional[str] = None
    result: JobResult = JobResult()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    worker_online: bool = False
    worker_last_seen_at: Optional[datetime] = None
    poll_interval_seconds: float


class ActiveJobsResponse(BaseModel):
    jobs: list


class WorkerStatusResponse(BaseModel):
    online: bool
    worker_id: Optional[str] = None
    last_heartbeat_at: Optional[datetime] = None
    last_seen_seconds_ago: Optional[int] = None
    configured: bool
