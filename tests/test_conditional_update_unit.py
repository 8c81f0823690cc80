import unittest

from schemas.records import Balance, InputDescriptor, JobRecord, SettlementRecord
from services.conditional_update import ConditionalOp, ConditionalVerdict, evaluate

VALID = {"summary": "Strong match", "overall_score": 81}


def _job(status="completed", result=None, tier="paid"):
    return JobRecord(
        job_id="job-1",
        user_id="u1",
        input=InputDescriptor(name="cv.pdf"),
        tier=tier,
        status=status,
        result=result,
    )


def _debit_op(cost=2):
    return ConditionalOp(
        job_id="job-1",
        user_id="u1",
        require_status="completed",
        require_valid_result=True,
        min_balance=cost,
        balance_delta=-cost,
        settlement=SettlementRecord(job_id="job-1", user_id="u1", kind="debit", credits_applied=-cost),
    )


def _reap_op():
    return ConditionalOp(
        job_id="job-1",
        user_id="u1",
        require_status="processing",
        delete_job=True,
        delete_when_settled=True,
        settlement=SettlementRecord(job_id="job-1", user_id="u1", kind="refund", credits_applied=0),
    )


class ConditionalEvaluateUnitTests(unittest.TestCase):
    def test_debit_applies_when_everything_holds(self):
        verdict = evaluate(_debit_op(), job=_job(result=VALID), balance=Balance(user_id="u1", credits=5), settled=False)
        self.assertEqual(verdict, ConditionalVerdict.APPLIED)

    # User value: a second completion report never charges again.
    def test_existing_settlement_short_circuits(self):
        verdict = evaluate(_debit_op(), job=_job(result=VALID), balance=Balance(user_id="u1", credits=5), settled=True)
        self.assertEqual(verdict, ConditionalVerdict.ALREADY_SETTLED)

    def test_invalid_result_is_never_billed(self):
        verdict = evaluate(
            _debit_op(), job=_job(result={"summary": ""}), balance=Balance(user_id="u1", credits=5), settled=False
        )
        self.assertEqual(verdict, ConditionalVerdict.INVALID_RESULT)

    def test_status_mismatch(self):
        verdict = evaluate(_debit_op(), job=_job(status="processing"), balance=Balance(user_id="u1", credits=5), settled=False)
        self.assertEqual(verdict, ConditionalVerdict.STATUS_MISMATCH)

    def test_missing_job_and_user(self):
        self.assertEqual(
            evaluate(_debit_op(), job=None, balance=Balance(user_id="u1", credits=5), settled=False),
            ConditionalVerdict.JOB_MISSING,
        )
        self.assertEqual(
            evaluate(_debit_op(), job=_job(result=VALID), balance=None, settled=False),
            ConditionalVerdict.USER_NOT_FOUND,
        )

    # User value: balances never go negative.
    def test_insufficient_balance(self):
        verdict = evaluate(_debit_op(), job=_job(result=VALID), balance=Balance(user_id="u1", credits=1), settled=False)
        self.assertEqual(verdict, ConditionalVerdict.INSUFFICIENT_BALANCE)

    def test_reap_on_settled_job_only_deletes(self):
        verdict = evaluate(_reap_op(), job=_job(status="processing"), balance=None, settled=True)
        self.assertEqual(verdict, ConditionalVerdict.DELETED_ONLY)
        self.assertTrue(verdict.mutated)

    def test_reap_skips_job_that_finished(self):
        verdict = evaluate(_reap_op(), job=_job(status="completed", result=VALID), balance=None, settled=False)
        self.assertEqual(verdict, ConditionalVerdict.STATUS_MISMATCH)
        self.assertFalse(verdict.mutated)

    def test_free_use_requires_unused_free_tier(self):
        op = ConditionalOp(
            job_id="job-1",
            user_id="u1",
            require_status="completed",
            require_valid_result=True,
            mark_free_tier_used=True,
            require_free_tier_available=True,
            settlement=SettlementRecord(job_id="job-1", user_id="u1", kind="free", credits_applied=0),
        )
        job = _job(result=VALID, tier="free")
        self.assertTrue(op.needs_balance)
        self.assertEqual(
            evaluate(op, job=job, balance=Balance(user_id="u1", credits=0), settled=False),
            ConditionalVerdict.APPLIED,
        )
        verdict = evaluate(op, job=job, balance=Balance(user_id="u1", credits=0, free_tier_used=True), settled=False)
        self.assertEqual(verdict, ConditionalVerdict.FREE_TIER_USED)
        self.assertFalse(verdict.mutated)

    def test_op_needs(self):
        self.assertTrue(_debit_op().needs_job)
        self.assertTrue(_debit_op().needs_balance)
        self.assertFalse(_reap_op().needs_balance)


if __name__ == "__main__":
    unittest.main()
