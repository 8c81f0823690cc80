# User value: This test makes sure submitting never charges credits and never duplicates a running analysis.
import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from schemas.records import Eligibility, InputDescriptor
from services.errors import EligibilityDenied, TransientDispatchError
from services.job_submitter import JobSubmitter
from services.memory_store import InMemoryJobStore

FREE = Eligibility(eligible=True, tier="free", cost=0, credits_available=0, free_tier_available=True)
PAID = Eligibility(eligible=True, tier="paid", cost=2, credits_available=5)


class JobSubmitterUnitTests(unittest.TestCase):
    def test_submit_creates_processing_job_without_debit(self):
        async def run_case():
            store = InMemoryJobStore()
            await store.set_balance("u1", 5, free_tier_used=True)
            processor = AsyncMock()
            submitter = JobSubmitter(store, processor)

            submitted = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)

            job = await store.get_job(submitted.job_id)
            self.assertEqual(job.status, "processing")
            self.assertEqual(job.tier, "paid")
            self.assertFalse(job.can_upgrade)
            self.assertEqual(submitted.cost, 2)
            self.assertFalse(submitted.reused)
            self.assertEqual((await store.get_balance("u1")).credits, 5)
            processor.submit.assert_awaited_once()

        asyncio.run(run_case())

    def test_free_job_can_upgrade(self):
        async def run_case():
            store = InMemoryJobStore()
            submitter = JobSubmitter(store, AsyncMock())
            submitted = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", FREE)
            self.assertTrue((await store.get_job(submitted.job_id)).can_upgrade)

        asyncio.run(run_case())

    # User value: clicking submit twice for the same document reuses the running job.
    def test_pending_job_for_same_input_is_reused(self):
        async def run_case():
            store = InMemoryJobStore()
            processor = AsyncMock()
            submitter = JobSubmitter(store, processor)

            with patch("services.job_submitter.is_reuse_pending_job_enabled", return_value=True):
                first = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)
                second = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)
                other = await submitter.submit(InputDescriptor(name="other.pdf"), "u1", PAID)

            self.assertEqual(first.job_id, second.job_id)
            self.assertTrue(second.reused)
            self.assertNotEqual(first.job_id, other.job_id)
            self.assertEqual(processor.submit.await_count, 2)

        asyncio.run(run_case())

    def test_reuse_can_be_switched_off(self):
        async def run_case():
            store = InMemoryJobStore()
            submitter = JobSubmitter(store, AsyncMock())
            with patch("services.job_submitter.is_reuse_pending_job_enabled", return_value=False):
                first = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)
                second = await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)
            self.assertNotEqual(first.job_id, second.job_id)

        asyncio.run(run_case())

    def test_dispatch_failure_leaves_job_processing(self):
        async def run_case():
            store = InMemoryJobStore()
            processor = AsyncMock()
            processor.submit.side_effect = TransientDispatchError("Processor returned HTTP 503", status_code=503)
            submitter = JobSubmitter(store, processor)

            with self.assertRaises(TransientDispatchError):
                await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", PAID)

            jobs = await store.list_user_jobs("u1")
            self.assertEqual(len(jobs), 1)
            self.assertEqual(jobs[0].status, "processing")

        asyncio.run(run_case())

    def test_ineligible_decision_is_refused(self):
        async def run_case():
            store = InMemoryJobStore()
            submitter = JobSubmitter(store, AsyncMock())
            denied = Eligibility(eligible=False, tier="paid", cost=2, credits_available=1, reason="INSUFFICIENT_CREDITS")
            with self.assertRaises(EligibilityDenied):
                await submitter.submit(InputDescriptor(name="cv.pdf"), "u1", denied)
            self.assertEqual(await store.list_user_jobs("u1"), [])

        asyncio.run(run_case())


if __name__ == "__main__":
    unittest.main()
