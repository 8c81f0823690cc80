# User value: This test guarantees stuck analyses are cleared without costing users credits.
import asyncio
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from schemas.records import InputDescriptor, JobRecord, ReapReport, utcnow
from services.memory_store import InMemoryJobStore
from services.settlement_ledger import SettlementLedger, SettlementOutcome
from services.timeout_reaper import TimeoutReaper


def _job(job_id, *, tier="paid", user_id="u1", minutes_ago=0, credits_held=0):
    return JobRecord(
        job_id=job_id,
        user_id=user_id,
        input=InputDescriptor(name=f"{job_id}.pdf"),
        tier=tier,
        credits_held=credits_held,
        created_at=utcnow() - timedelta(minutes=minutes_ago),
    )


def _setup():
    store = InMemoryJobStore()
    ledger = SettlementLedger(store, paid_cost=2)
    reaper = TimeoutReaper(store, ledger, deadline_sec=300, interval_sec=120)
    return store, ledger, reaper


class TimeoutReaperUnitTests(unittest.TestCase):
    # User value: a paid job stuck past five minutes is removed and the balance ends where it started.
    def test_sweep_reaps_paid_job_past_deadline(self):
        async def run_case():
            store, ledger, reaper = _setup()
            await store.set_balance("u1", 4, free_tier_used=True)
            await store.create_job(_job("j1"))

            report = await reaper.sweep(now=utcnow() + timedelta(minutes=6))

            self.assertTrue(report.success)
            self.assertEqual(report.processed, 1)
            self.assertEqual([d.action for d in report.details], ["deleted"])
            self.assertIsNone(await store.get_job("j1"))
            settlement = await ledger.get_settlement("j1")
            self.assertEqual(settlement.kind, "refund")
            self.assertEqual(settlement.credits_applied, 0)
            self.assertEqual((await store.get_balance("u1")).credits, 4)

        asyncio.run(run_case())

    def test_held_credits_are_reported_as_restored(self):
        async def run_case():
            store, ledger, reaper = _setup()
            await store.set_balance("u1", 1, free_tier_used=True)
            await store.create_job(_job("j1", credits_held=2))

            report = await reaper.sweep(now=utcnow() + timedelta(minutes=6))

            self.assertEqual([d.action for d in report.details], ["deleted", "credit_restored"])
            self.assertEqual((await ledger.get_settlement("j1")).credits_applied, 2)
            self.assertEqual((await store.get_balance("u1")).credits, 3)

        asyncio.run(run_case())

    def test_late_completion_after_reap_is_not_billed(self):
        async def run_case():
            store, ledger, reaper = _setup()
            await store.set_balance("u1", 4, free_tier_used=True)
            await store.create_job(_job("j1"))
            await reaper.sweep(now=utcnow() + timedelta(minutes=6))

            result = await ledger.settle_on_completion("j1", "u1", "paid")

            self.assertEqual(result.outcome, SettlementOutcome.ALREADY_SETTLED)
            self.assertEqual((await store.get_balance("u1")).credits, 4)
            self.assertEqual(len(await ledger.history("u1")), 1)

        asyncio.run(run_case())

    def test_free_job_is_deleted_without_settlement(self):
        async def run_case():
            store, ledger, reaper = _setup()
            await store.set_balance("u1", 0)
            await store.create_job(_job("j1", tier="free"))

            report = await reaper.sweep(now=utcnow() + timedelta(minutes=6))

            self.assertEqual([d.action for d in report.details], ["deleted"])
            self.assertIsNone(await ledger.get_settlement("j1"))
            self.assertFalse((await store.get_balance("u1")).free_tier_used)

        asyncio.run(run_case())

    def test_job_within_deadline_is_left_alone(self):
        async def run_case():
            store, _, reaper = _setup()
            await store.create_job(_job("j1"))

            report = await reaper.sweep(now=utcnow() + timedelta(minutes=4))

            self.assertEqual(report.processed, 0)
            self.assertIsNotNone(await store.get_job("j1"))

        asyncio.run(run_case())

    # User value: a job that finished while the sweep was running keeps its result.
    def test_job_completed_after_listing_is_skipped(self):
        async def run_case():
            store, _, reaper = _setup()
            stale = _job("j1", minutes_ago=10)
            await store.create_job(stale)
            await store.record_outcome("j1", status="completed", result={"summary": "s", "overall_score": 1})

            with patch.object(store, "list_stuck_jobs", AsyncMock(return_value=[stale])):
                report = await reaper.sweep()

            self.assertTrue(report.success)
            self.assertEqual(report.processed, 0)
            self.assertEqual(report.details[0].action, "skipped")
            self.assertEqual((await store.get_job("j1")).status, "completed")

        asyncio.run(run_case())

    def test_one_failing_job_does_not_abort_sweep(self):
        async def run_case():
            store, _, reaper = _setup()
            await store.set_balance("u1", 0, free_tier_used=True)
            await store.create_job(_job("j1", minutes_ago=10))
            await store.create_job(_job("j2", minutes_ago=9))
            original = store.conditional_settle

            async def flaky(op):
                if op.job_id == "j1":
                    raise RuntimeError("store timeout")
                return await original(op)

            with patch.object(store, "conditional_settle", side_effect=flaky):
                report = await reaper.sweep()

            self.assertFalse(report.success)
            self.assertEqual(report.processed, 1)
            self.assertEqual(len(report.errors), 1)
            self.assertIn("store timeout", report.errors[0])
            self.assertEqual(report.details[0].action, "error")
            self.assertIsNotNone(await store.get_job("j1"))
            self.assertIsNone(await store.get_job("j2"))

        asyncio.run(run_case())

    def test_dry_run_reports_without_mutating(self):
        async def run_case():
            store, ledger, reaper = _setup()
            await store.create_job(_job("j1", minutes_ago=10))

            report = await reaper.sweep(dry_run=True)

            self.assertTrue(report.dry_run)
            self.assertEqual(report.processed, 1)
            self.assertIsNotNone(await store.get_job("j1"))
            self.assertIsNone(await ledger.get_settlement("j1"))

        asyncio.run(run_case())

    def test_force_reap_ignores_deadline(self):
        async def run_case():
            store, _, reaper = _setup()
            await store.create_job(_job("j1"))

            report = await reaper.force_reap("j1")

            self.assertTrue(report.success)
            self.assertEqual(report.processed, 1)
            self.assertIsNone(await store.get_job("j1"))

        asyncio.run(run_case())

    def test_force_reap_reports_missing_or_finished_job(self):
        async def run_case():
            store, _, reaper = _setup()
            missing = await reaper.force_reap("nope")
            self.assertFalse(missing.success)
            self.assertIn("not found", missing.errors[0])

            await store.create_job(_job("j1"))
            await store.record_outcome("j1", status="failed", error="boom")
            finished = await reaper.force_reap("j1")
            self.assertFalse(finished.success)
            self.assertIn("not processing", finished.errors[0])

        asyncio.run(run_case())

    def test_is_timed_out(self):
        async def run_case():
            store, _, reaper = _setup()
            await store.create_job(_job("j1"))
            self.assertFalse(await reaper.is_timed_out("j1"))
            self.assertTrue(await reaper.is_timed_out("j1", now=utcnow() + timedelta(minutes=6)))
            self.assertFalse(await reaper.is_timed_out("missing"))

        asyncio.run(run_case())

    def test_start_runs_sweep_and_stop_cancels(self):
        async def run_case():
            _, _, reaper = _setup()
            with patch.object(reaper, "sweep", AsyncMock(return_value=ReapReport())) as mock_sweep:
                await reaper.start()
                self.assertTrue(reaper.running)
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                await reaper.stop()
            self.assertFalse(reaper.running)
            mock_sweep.assert_awaited()

        asyncio.run(run_case())


if __name__ == "__main__":
    unittest.main()
