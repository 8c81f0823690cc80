import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ResponseError

from schemas.records import InputDescriptor, JobRecord, SettlementRecord
from services.conditional_update import ConditionalOp, ConditionalVerdict
from services.notification_bus import RedisNotificationBus, decode_change, encode_change
from services.redis_store import (
    RedisJobStore,
    RedisKeys,
    RedisScriptUpdater,
    RedisWatchUpdater,
    balance_from_hash,
    op_payload,
    select_conditional_updater,
)


def _debit_op():
    return ConditionalOp(
        job_id="j1",
        user_id="u1",
        require_status="completed",
        require_valid_result=True,
        min_balance=2,
        balance_delta=-2,
        settlement=SettlementRecord(job_id="j1", user_id="u1", kind="debit", credits_applied=-2),
    )


def _script_client(reply):
    client = MagicMock()
    client.script_load = AsyncMock(return_value="sha1")
    client.register_script = MagicMock(return_value=AsyncMock(return_value=reply))
    return client


class RedisKeysUnitTests(unittest.TestCase):
    def test_key_layout(self):
        keys = RedisKeys(prefix="alc")
        self.assertEqual(keys.job("j1"), "alc:job:j1")
        self.assertEqual(keys.settlement("j1"), "alc:settlement:j1")
        self.assertEqual(keys.balance("u1"), "alc:balance:u1")
        self.assertEqual(
            keys.for_op(_debit_op()),
            ["alc:job:j1", "alc:settlement:j1", "alc:balance:u1", "alc:ledger:u1", "alc:jobs:processing"],
        )

    def test_op_payload_carries_predicate_and_effect(self):
        payload = json.loads(op_payload(_debit_op()))
        self.assertEqual(payload["require_status"], "completed")
        self.assertTrue(payload["needs_balance"])
        self.assertEqual(payload["balance_delta"], -2)
        self.assertEqual(payload["required_fields"], ["summary", "overall_score"])
        self.assertEqual(json.loads(payload["settlement"])["kind"], "debit")

    def test_balance_from_hash(self):
        self.assertIsNone(balance_from_hash("u1", {}))
        balance = balance_from_hash("u1", {"credits": "7", "free_tier_used": "1"})
        self.assertEqual(balance.credits, 7)
        self.assertTrue(balance.free_tier_used)


class ConditionalUpdaterSelectionUnitTests(unittest.TestCase):
    def test_script_preferred_when_server_accepts_it(self):
        client = _script_client(["applied", "completed", "8"])
        updater = asyncio.run(select_conditional_updater(client, RedisKeys()))
        self.assertIsInstance(updater, RedisScriptUpdater)

    # User value: stores that forbid scripting still settle credits safely.
    def test_falls_back_to_watch_when_scripting_rejected(self):
        client = _script_client([])
        client.script_load = AsyncMock(side_effect=ResponseError("NOSCRIPT scripting disabled"))
        updater = asyncio.run(select_conditional_updater(client, RedisKeys()))
        self.assertIsInstance(updater, RedisWatchUpdater)

    def test_flag_off_skips_script_probe(self):
        client = _script_client([])
        updater = asyncio.run(select_conditional_updater(client, RedisKeys(), prefer_script=False))
        self.assertIsInstance(updater, RedisWatchUpdater)
        client.script_load.assert_not_awaited()

    def test_script_reply_is_mapped(self):
        client = _script_client(["applied", "completed", "8"])
        updater = RedisScriptUpdater(client, RedisKeys())
        result = asyncio.run(updater.apply(_debit_op()))
        self.assertEqual(result.verdict, ConditionalVerdict.APPLIED)
        self.assertEqual(result.balance_after, 8)
        self.assertEqual(result.settlement.kind, "debit")

        client = _script_client(["already_settled", "completed", "8"])
        result = asyncio.run(RedisScriptUpdater(client, RedisKeys()).apply(_debit_op()))
        self.assertEqual(result.verdict, ConditionalVerdict.ALREADY_SETTLED)
        self.assertIsNone(result.settlement)


class RedisJobStoreUnitTests(unittest.TestCase):
    def test_get_job_decodes_hash(self):
        record = JobRecord(job_id="j1", user_id="u1", input=InputDescriptor(name="cv.pdf"), tier="paid")
        client = MagicMock()
        client.hgetall = AsyncMock(return_value=record.to_hash())
        store = RedisJobStore(client, updater=RedisWatchUpdater(client, RedisKeys()), keys=RedisKeys())

        loaded = asyncio.run(store.get_job("j1"))

        self.assertEqual(loaded.job_id, "j1")
        self.assertEqual(loaded.tier, "paid")
        self.assertEqual(loaded.input.name, "cv.pdf")
        client.hgetall.assert_awaited_once_with("alc:job:j1")

    def test_get_job_missing(self):
        client = MagicMock()
        client.hgetall = AsyncMock(return_value={})
        store = RedisJobStore(client, updater=RedisWatchUpdater(client, RedisKeys()), keys=RedisKeys())
        self.assertIsNone(asyncio.run(store.get_job("nope")))


class RedisNotificationBusUnitTests(unittest.TestCase):
    def test_change_encoding(self):
        record = JobRecord(job_id="j1", user_id="u1", input=InputDescriptor(name="cv.pdf"), status="failed", error="x")
        job_id, decoded = decode_change(encode_change("j1", record))
        self.assertEqual(job_id, "j1")
        self.assertEqual(decoded.status, "failed")
        self.assertEqual(decode_change(encode_change("j1", None)), ("j1", None))

    def test_publish_failure_is_logged_not_raised(self):
        client = MagicMock()
        client.publish = AsyncMock(side_effect=ConnectionError("down"))
        bus = RedisNotificationBus(client)
        with self.assertLogs("api.notifications", level="WARNING"):
            delivered = asyncio.run(bus.publish("j1", None))
        self.assertEqual(delivered, 0)
        self.assertEqual(bus.channel_name("j1"), "alc:job_updates:j1")


if __name__ == "__main__":
    unittest.main()
