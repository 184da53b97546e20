from fastapi import HTTPException, Security, Request
from fastapi.security.api_key import APIKeyHeader
from config import settings
import secrets
import hashlib
from typing import Optional

api_key_header = APIKeyHeader(name=settings.api_key_name, auto_error=False)
worker_secret_header = APIKeyHeader(name=settings.worker_secret_header, auto_error=False)

def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value).encode()).hexdigest()

def generate_upload_token() -> str:
    """Random single-use upload credential (returned to the caller once)"""
    return secrets.token_hex(32)

def token_matches(token: str, token_hash: Optional[str]) -> bool:
    if not token or not token_hash:
        return False
    return secrets.compare_digest(sha256_hex(token), token_hash)

class SecurityManager:
    def __init__(self):
        if not settings.api_key:
            raise ValueError("API_KEY environment variable is required")
        self.api_key_hash = sha256_hex(settings.api_key)

    def get_api_key(self, api_key: Optional[str] = Security(api_key_header)) -> str:
        """Validate editor API key"""
        if not api_key:
            raise HTTPException(
                status_code=401,
                detail="API key required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        # Use constant-time comparison to prevent timing attacks
        if not secrets.compare_digest(sha256_hex(api_key), self.api_key_hash):
            raise HTTPException(
                status_code=403,
                detail="Invalid API key"
            )

        return api_key

    def require_worker_secret(self, provided: Optional[str] = Security(worker_secret_header)) -> str:
        """Validate the shared secret sent by the trusted worker machine"""
        expected = (settings.video_worker_secret or "").strip()
        if not expected:
            raise HTTPException(status_code=500, detail="VIDEO_WORKER_SECRET not set")

        provided = (provided or "").strip()
        if not provided or not secrets.compare_digest(sha256_hex(provided), sha256_hex(expected)):
            raise HTTPException(status_code=401, detail="Invalid worker secret")

        return provided

    def get_client_ip(self, request: Request) -> str:
        """Get client IP address with proxy support"""
        # Check for forwarded headers (common in proxy setups)
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

        # Fallback to direct client IP
        return request.client.host if request.client else "unknown"

# Global security manager instance
security_manager = SecurityManager()
