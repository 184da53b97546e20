import enum
from typing import Union

from errors import IllegalTransitionError, InvalidStatusError


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    AWAITING_UPLOAD = "awaiting-upload"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    CLOUDINARY_UPLOAD = "cloudinary-upload"
    COMPLETE = "complete"
    FAILED = "failed"
    SUPERSEDED = "superseded"


# Forward path through the pipeline; a job never moves back along it.
PIPELINE_ORDER = [
    JobStatus.QUEUED,
    JobStatus.AWAITING_UPLOAD,
    JobStatus.UPLOADED,
    JobStatus.PROCESSING,
    JobStatus.CLOUDINARY_UPLOAD,
    JobStatus.COMPLETE,
]

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.SUPERSEDED})
ACTIVE_STATUSES = frozenset(s for s in JobStatus if s not in TERMINAL_STATUSES)
ACTIVE_STATUS_VALUES = [s.value for s in PIPELINE_ORDER if s in ACTIVE_STATUSES]

_RANK = {status: index for index, status in enumerate(PIPELINE_ORDER)}


def parse_status(value: Union[str, JobStatus]) -> JobStatus:
    """Turn a stored or client-supplied value into a JobStatus."""
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value).strip())
    except ValueError:
        raise InvalidStatusError(f"Unknown job status: {value}")


def is_terminal(status: Union[str, JobStatus]) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def can_transition(current: Union[str, JobStatus], target: Union[str, JobStatus]) -> bool:
    current = parse_status(current)
    target = parse_status(target)

    if current in TERMINAL_STATUSES:
        return False
    if target in (JobStatus.FAILED, JobStatus.SUPERSEDED):
        return True
    return _RANK[target] >= _RANK[current]


def ensure_transition(current: Union[str, JobStatus], target: Union[str, JobStatus]) -> JobStatus:
    """Validate a status change and return the target status.

    Raises IllegalTransitionError for writes against terminal jobs and for
    moves back to an earlier pipeline state.
    """
    current = parse_status(current)
    target = parse_status(target)

    if current == JobStatus.SUPERSEDED:
        raise IllegalTransitionError("job superseded")
    if current in TERMINAL_STATUSES:
        raise IllegalTransitionError(f"job already {current.value}")
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"illegal transition {current.value} -> {target.value}"
        )
    return target
