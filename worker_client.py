from typing import Optional

import httpx

from config import settings
from errors import JobSupersededError, WebTierError


class WebTierClient:
    """Worker-side calls to the web tier's job endpoints.

    Every request carries the shared worker secret. A 409 answer means the
    job was superseded or already finished, and is raised as
    JobSupersededError so the pipeline can stop without reporting a failure.
    """

    def __init__(self, base_url: str, secret: Optional[str], worker_id: str,
                 http: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.worker_id = worker_id
        self.http = http or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)
        self.headers = {settings.worker_secret_header: secret or ""}

    @classmethod
    def from_settings(cls, http: Optional[httpx.Client] = None):
        return cls(
            settings.web_api_base,
            settings.video_worker_secret,
            settings.worker_id,
            http=http,
            timeout=settings.web_request_timeout,
        )

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = self.http.post(path, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            raise WebTierError(502, f"Web tier unreachable: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            if response.status_code == 409:
                raise JobSupersededError(409, str(detail))
            raise WebTierError(response.status_code, str(detail))
        try:
            return response.json()
        except ValueError:
            raise WebTierError(502, f"Web tier sent a non-JSON answer to {path}")

    def verify_upload(self, job_id: str, token: str) -> dict:
        return self._post(
            f"/api/video-jobs/{job_id}/verify-upload",
            {"token": token, "worker_id": self.worker_id},
        )

    def progress(self, job_id: str, stage: str, progress: int, message: str,
                 status: Optional[str] = None, total: Optional[int] = None) -> dict:
        payload = {
            "stage": stage,
            "progress": int(progress),
            "message": message,
            "worker_id": self.worker_id,
        }
        if status:
            payload["status"] = status
        if total:
            payload["total"] = int(total)
        return self._post(f"/api/video-jobs/{job_id}/progress", payload)

    def complete(self, job_id: str, result: dict, message: Optional[str] = None) -> dict:
        return self._post(f"/api/video-jobs/{job_id}/complete", {"result": result, "message": message})

    def fail(self, job_id: str, error: str, message: Optional[str] = None) -> dict:
        return self._post(f"/api/video-jobs/{job_id}/fail", {"error": error, "message": message})

    def heartbeat(self) -> dict:
        return self._post("/api/video-worker/heartbeat", {"worker_id": self.worker_id})
