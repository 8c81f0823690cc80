import logging
import os
from typing import List

from services.feature_flags import BOOL_FALSE, BOOL_TRUE, FLAG_NAMES

logger = logging.getLogger("api.startup")

STORE_BACKENDS = ("redis", "memory")

POSITIVE_NUMBER_KEYS = (
    "PAID_TIER_COST",
    "POLL_INTERVAL_SEC",
    "MIN_FETCH_GAP_SEC",
    "PUSH_CONNECT_TIMEOUT_SEC",
    "REAPER_DEADLINE_SEC",
    "REAPER_INTERVAL_SEC",
    "DISPATCH_MAX_ATTEMPTS",
    "DISPATCH_TIMEOUT_SEC",
)


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _validate_redis_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("redis://") or value.startswith("rediss://")):
        errors.append(f"{key} must start with redis:// or rediss://")


def _validate_http_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        return
    if not (value.startswith("http://") or value.startswith("https://")):
        errors.append(f"{key} must start with http:// or https://")


def _validate_bool_flag_env(key: str, errors: List[str]) -> None:
    raw = os.getenv(key)
    if _is_blank(raw):
        return
    if str(raw).strip().lower() not in BOOL_TRUE | BOOL_FALSE:
        allowed = sorted(BOOL_TRUE | BOOL_FALSE)
        errors.append(f"{key} must be one of {allowed}")


def _validate_positive_number(key: str, errors: List[str]) -> None:
    raw = os.getenv(key)
    if _is_blank(raw):
        return
    try:
        value = float(str(raw).strip())
    except ValueError:
        errors.append(f"{key} must be a number")
        return
    if value <= 0:
        errors.append(f"{key} must be greater than 0")


def validate_startup_env() -> None:
    errors: List[str] = []
    warnings: List[str] = []

    backend = (os.getenv("STORE_BACKEND") or "redis").strip().lower()
    if backend not in STORE_BACKENDS:
        errors.append(f"STORE_BACKEND must be one of {list(STORE_BACKENDS)}")
    if backend == "redis":
        _validate_redis_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), "REDIS_URL", errors)
    else:
        warnings.append("STORE_BACKEND=memory; jobs and balances are lost on restart")

    _validate_http_url(os.getenv("PROCESSOR_WEBHOOK_URL"), "PROCESSOR_WEBHOOK_URL", errors)
    if _is_blank(os.getenv("PROCESSOR_WEBHOOK_URL")):
        warnings.append("PROCESSOR_WEBHOOK_URL is not set; jobs are created but not dispatched")
    if _is_blank(os.getenv("PROCESSOR_CALLBACK_TOKEN")):
        errors.append("PROCESSOR_CALLBACK_TOKEN is required")

    for key in FLAG_NAMES:
        _validate_bool_flag_env(key, errors)
    for key in POSITIVE_NUMBER_KEYS:
        _validate_positive_number(key, errors)

    if errors:
        for err in errors:
            logger.error("startup_env_invalid %s", err)
        raise RuntimeError("Startup env validation failed: " + "; ".join(errors))

    for warning in warnings:
        logger.warning("startup_env_warning %s", warning)

    logger.info(
        "startup_env_validated keys=%s",
        ["STORE_BACKEND", "REDIS_URL", "PROCESSOR_WEBHOOK_URL", "PROCESSOR_CALLBACK_TOKEN", *FLAG_NAMES],
    )
