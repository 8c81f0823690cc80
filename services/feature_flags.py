# User value: This file lets operators switch coordination features without redeploying code.
import os

BOOL_TRUE = {"1", "true", "yes", "on"}
BOOL_FALSE = {"0", "false", "no", "off"}


def _flag(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in BOOL_TRUE


FEATURE_REAPER_ENABLED = _flag("FEATURE_REAPER_ENABLED", True)
FEATURE_PUSH_NOTIFICATIONS = _flag("FEATURE_PUSH_NOTIFICATIONS", True)
FEATURE_ATOMIC_SCRIPT = _flag("FEATURE_ATOMIC_SCRIPT", True)
FEATURE_REUSE_PENDING_JOB = _flag("FEATURE_REUSE_PENDING_JOB", True)

FLAG_NAMES = (
    "FEATURE_REAPER_ENABLED",
    "FEATURE_PUSH_NOTIFICATIONS",
    "FEATURE_ATOMIC_SCRIPT",
    "FEATURE_REUSE_PENDING_JOB",
)


# User value: keeps stuck analyses from holding users hostage when the reaper is on.
def is_reaper_enabled() -> bool:
    return FEATURE_REAPER_ENABLED


def is_push_enabled() -> bool:
    return FEATURE_PUSH_NOTIFICATIONS


# User value: lets ops force the optimistic fallback when the store rejects server-side scripts.
def is_atomic_script_enabled() -> bool:
    return FEATURE_ATOMIC_SCRIPT


def is_reuse_pending_job_enabled() -> bool:
    return FEATURE_REUSE_PENDING_JOB
