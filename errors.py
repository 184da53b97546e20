"""Exception types shared by the web tier and the worker.

Web tier errors carry the HTTP status they map to, so route handlers can
raise them from the service layer and let the app's exception handler build
the response. Pipeline errors carry a message that is safe to show to an
editor polling the job status.
"""


class JobError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidItemError(JobError):
    status_code = 400


class InvalidStatusError(JobError):
    status_code = 400


class NotConfiguredError(JobError):
    status_code = 501


class WorkerOfflineError(JobError):
    status_code = 409


class JobNotFoundError(JobError):
    status_code = 404


class JobConflictError(JobError):
    status_code = 409


class IllegalTransitionError(JobConflictError):
    pass


class InvalidTokenError(JobError):
    status_code = 401


class TokenExpiredError(JobError):
    status_code = 410


# Worker side

class WebTierError(Exception):
    """A call from the worker to the web tier was rejected."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class JobSupersededError(WebTierError):
    """The web tier answered 409: a newer job replaced this one."""


class PipelineError(Exception):
    """A pipeline stage failed; the message is shown to editors."""


class ProbeError(PipelineError):
    pass


class FrameExtractionError(PipelineError):
    pass


class FrameCountMismatchError(FrameExtractionError):
    pass


class WhiteBalanceError(PipelineError):
    pass


class EncodingError(PipelineError):
    pass


class IconEncodingError(EncodingError):
    pass


class AssetStoreNotConfiguredError(PipelineError):
    pass


class AssetUploadError(PipelineError):
    pass
