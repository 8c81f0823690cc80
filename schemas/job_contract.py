# User value: This file keeps one shared vocabulary for analysis jobs, tiers and credit settlements.
import os

CONTRACT_VERSION = "2026-10-19-alc-001"

JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

TIER_FREE = "free"
TIER_PAID = "paid"

# Credits debited when a paid analysis completes with a valid result.
PAID_TIER_COST = int(os.getenv("PAID_TIER_COST", "2"))

# A completed job is billable only when all of these result fields are non-empty.
RESULT_REQUIRED_FIELDS = (
    "summary",
    "overall_score",
)

SETTLEMENT_DEBIT = "debit"
SETTLEMENT_FREE = "free"
SETTLEMENT_REFUND = "refund"

ELIGIBILITY_REASON_INSUFFICIENT = "INSUFFICIENT_CREDITS"
ELIGIBILITY_REASON_USER_NOT_FOUND = "USER_NOT_FOUND"

REAP_ACTION_DELETED = "deleted"
REAP_ACTION_REFUNDED = "credit_restored"
REAP_ACTION_SKIPPED = "skipped"
REAP_ACTION_ERROR = "error"
