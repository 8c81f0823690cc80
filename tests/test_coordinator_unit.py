# User value: This test walks a user through free, paid and reclaimed analyses end to end.
import asyncio
import unittest
from unittest.mock import AsyncMock

from schemas.records import InputDescriptor
from services.coordinator import AnalysisCoordinator, build_store
from services.errors import EligibilityDenied, JobNotFound, ReclaimedJob
from services.memory_store import InMemoryJobStore, InMemoryNotificationBus
from services.settlement_ledger import SettlementOutcome

VALID = {"summary": "Strong match", "overall_score": 81}


def _coordinator(**kwargs):
    store = InMemoryJobStore(bus=InMemoryNotificationBus())
    return AnalysisCoordinator(store, processor=AsyncMock(), paid_cost=2, reaper_enabled=False, **kwargs)


class AnalysisCoordinatorUnitTests(unittest.TestCase):
    def test_free_analysis_then_paid_quote(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 0)
            completed = []

            submitted = await coordinator.submit_job(InputDescriptor(name="cv.pdf"), "u1")
            self.assertEqual(submitted.tier, "free")
            observer = await coordinator.observe(
                submitted.job_id,
                on_complete=lambda record, settlement: completed.append(settlement),
            )
            await coordinator.record_outcome(submitted.job_id, status="completed", result=VALID)

            self.assertTrue(await observer.wait(1.0))
            self.assertEqual(completed[0].outcome, SettlementOutcome.APPLIED)
            quote = await coordinator.check_eligibility("u1")
            self.assertEqual((quote.eligible, quote.tier, quote.cost), (False, "paid", 2))
            with self.assertRaises(EligibilityDenied):
                await coordinator.submit_job(InputDescriptor(name="next.pdf"), "u1")

        asyncio.run(run_case())

    # User value: a paid job the processor abandons is reclaimed and the user keeps their credits.
    def test_reaped_paid_job_restores_starting_balance(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 4, free_tier_used=True)
            errors = []

            submitted = await coordinator.submit_job(InputDescriptor(name="cv.pdf"), "u1")
            self.assertEqual(submitted.tier, "paid")
            observer = await coordinator.observe(submitted.job_id, on_error=errors.append)

            report = await coordinator.force_reap(submitted.job_id)

            self.assertTrue(report.success)
            self.assertTrue(await observer.wait(1.0))
            self.assertIsInstance(errors[0], ReclaimedJob)
            self.assertEqual((await coordinator.store.get_balance("u1")).credits, 4)
            history = await coordinator.ledger.history("u1")
            self.assertEqual([r.kind for r in history], ["refund"])

        asyncio.run(run_case())

    # User value: a result read with a plain status fetch is billed the same as one watched live.
    def test_completion_is_settled_without_an_observer(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 0)
            submitted = await coordinator.submit_job(InputDescriptor(name="cv.pdf"), "u1")

            await coordinator.record_outcome(submitted.job_id, status="completed", result=VALID)

            self.assertEqual((await coordinator.get_job(submitted.job_id, user_id="u1")).result, VALID)
            self.assertEqual((await coordinator.ledger.get_settlement(submitted.job_id)).kind, "free")
            quote = await coordinator.check_eligibility("u1")
            self.assertEqual((quote.tier, quote.cost), ("paid", 2))

            # A repeated processor report does not settle twice.
            await coordinator.record_outcome(submitted.job_id, status="completed", result=VALID)
            self.assertEqual(len(await coordinator.ledger.history("u1")), 1)

        asyncio.run(run_case())

    def test_second_free_job_completing_does_not_reuse_free_tier(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 0)
            first = await coordinator.submit_job(InputDescriptor(name="a.pdf"), "u1")
            second = await coordinator.submit_job(InputDescriptor(name="b.pdf"), "u1")
            self.assertEqual((first.tier, second.tier), ("free", "free"))

            await coordinator.record_outcome(first.job_id, status="completed", result=VALID)
            await coordinator.record_outcome(second.job_id, status="completed", result=VALID)

            history = await coordinator.ledger.history("u1")
            self.assertEqual([(r.job_id, r.kind) for r in history], [(first.job_id, "free")])
            settled = await coordinator.settle(await coordinator.get_job(second.job_id))
            self.assertEqual(settled.outcome, SettlementOutcome.FREE_TIER_ALREADY_USED)

        asyncio.run(run_case())

    def test_invalid_completion_is_not_settled_on_write(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 4, free_tier_used=True)
            submitted = await coordinator.submit_job(InputDescriptor(name="cv.pdf"), "u1")

            await coordinator.record_outcome(submitted.job_id, status="completed", result={"summary": ""})

            self.assertIsNone(await coordinator.ledger.get_settlement(submitted.job_id))
            self.assertEqual((await coordinator.store.get_balance("u1")).credits, 4)

        asyncio.run(run_case())

    def test_get_job_hides_other_users_jobs(self):
        async def run_case():
            coordinator = _coordinator()
            await coordinator.store.set_balance("u1", 0)
            submitted = await coordinator.submit_job(InputDescriptor(name="cv.pdf"), "u1")

            self.assertEqual((await coordinator.get_job(submitted.job_id, user_id="u1")).user_id, "u1")
            with self.assertRaises(JobNotFound):
                await coordinator.get_job(submitted.job_id, user_id="someone-else")

        asyncio.run(run_case())

    def test_start_and_stop_manage_reaper_and_resources(self):
        async def run_case():
            store = InMemoryJobStore()
            processor = AsyncMock()
            coordinator = AnalysisCoordinator(store, processor=processor, reaper_enabled=True, reaper_interval_sec=60)

            await coordinator.start()
            self.assertTrue(coordinator.reaper.running)
            await coordinator.stop()

            self.assertFalse(coordinator.reaper.running)
            processor.close.assert_awaited_once()

        asyncio.run(run_case())

    def test_build_store_memory_backend(self):
        async def run_case():
            store = await build_store("memory")
            self.assertEqual(store.backend, "memory")
            self.assertIsInstance(store.bus, InMemoryNotificationBus)

        asyncio.run(run_case())


if __name__ == "__main__":
    unittest.main()
