# User value: This file keeps job status moving one way so a finished analysis can never silently restart.
import logging
from typing import Any, Mapping, Optional

from schemas.job_contract import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    RESULT_REQUIRED_FIELDS,
    TERMINAL_STATUSES,
)

logger = logging.getLogger("api.status_machine")

_TERMINAL = set(TERMINAL_STATUSES)

_ALLOWED = {
    None: {JOB_STATUS_PROCESSING},
    JOB_STATUS_PROCESSING: {
        JOB_STATUS_PROCESSING,
        JOB_STATUS_COMPLETED,
        JOB_STATUS_FAILED,
    },
    JOB_STATUS_COMPLETED: {JOB_STATUS_COMPLETED},
    JOB_STATUS_FAILED: {JOB_STATUS_FAILED},
}

OUTCOME_COMPLETED = "completed"
OUTCOME_INVALID = "invalid"
OUTCOME_FAILED = "failed"


def _norm(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    s = str(status).strip().lower()
    return s or None


def is_terminal(status: Optional[str]) -> bool:
    return _norm(status) in _TERMINAL


# User value: blocks any write that would move a finished analysis back into processing.
def is_allowed_transition(current: Optional[str], target: Optional[str]) -> bool:
    target_n = _norm(target)
    if not target_n:
        return True
    current_n = _norm(current)
    allowed = _ALLOWED.get(current_n, set())
    return target_n in allowed


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


# User value: makes sure users are never billed for an analysis that came back empty.
def has_valid_result(result: Optional[Mapping[str, Any]]) -> bool:
    if not isinstance(result, Mapping) or not result:
        return False
    return all(not _is_empty(result.get(field)) for field in RESULT_REQUIRED_FIELDS)


def classify_terminal(status: Optional[str], result: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Map a terminal record to the outcome the caller sees.

    Returns None for non-terminal records.
    """
    s = _norm(status)
    if s == JOB_STATUS_COMPLETED:
        return OUTCOME_COMPLETED if has_valid_result(result) else OUTCOME_INVALID
    if s == JOB_STATUS_FAILED:
        return OUTCOME_FAILED
    return None


def check_transition(*, job_id: str, current: Optional[str], target: Optional[str], context: str) -> bool:
    if not is_allowed_transition(current, target):
        logger.warning(
            "status_transition_blocked context=%s job_id=%s current=%s target=%s",
            context,
            job_id,
            _norm(current),
            _norm(target),
        )
        return False

    if current and _norm(current) in _TERMINAL and _norm(current) == _norm(target):
        logger.info(
            "status_transition_idempotent_terminal context=%s job_id=%s status=%s",
            context,
            job_id,
            _norm(target),
        )
    return True
