# User value: This file keeps jobs, balances and settlements in Redis so billing survives restarts and reloads.
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from redis.exceptions import ResponseError, WatchError

from schemas.job_contract import JOB_STATUS_PROCESSING, RESULT_REQUIRED_FIELDS
from schemas.records import Balance, JobRecord, SettlementRecord, utcnow
from services.conditional_update import (
    ConditionalOp,
    ConditionalResult,
    ConditionalUpdater,
    ConditionalVerdict,
    evaluate,
)
from services.errors import JobNotFound, StateConflict
from services.job_store import JobStore
from services.notification_bus import NotificationBus
from utils.status_machine import check_transition, is_terminal

logger = logging.getLogger("api.redis_store")

WATCH_MAX_ATTEMPTS = 5

# ---------------------------------------------------------
# KEYS
# ---------------------------------------------------------


@dataclass(frozen=True)
class RedisKeys:
    prefix: str = "alc"

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def processing_index(self) -> str:
        return f"{self.prefix}:jobs:processing"

    def user_jobs(self, user_id: str) -> str:
        return f"{self.prefix}:user_jobs:{user_id}"

    def settlement(self, job_id: str) -> str:
        return f"{self.prefix}:settlement:{job_id}"

    def balance(self, user_id: str) -> str:
        return f"{self.prefix}:balance:{user_id}"

    def ledger(self, user_id: str) -> str:
        return f"{self.prefix}:ledger:{user_id}"

    def for_op(self, op: ConditionalOp) -> List[str]:
        return [
            self.job(op.job_id),
            self.settlement(op.job_id),
            self.balance(op.user_id),
            self.ledger(op.user_id),
            self.processing_index(),
        ]


# ---------------------------------------------------------
# ATOMIC SCRIPT (reference implementation)
# ---------------------------------------------------------
# Mirrors services.conditional_update.evaluate. KEYS: job, settlement,
# balance, ledger, processing index. ARGV[1]: op payload.
CONDITIONAL_SETTLE_LUA = """
local job_key = KEYS[1]
local settlement_key = KEYS[2]
local balance_key = KEYS[3]
local ledger_key = KEYS[4]
local index_key = KEYS[5]
local op = cjson.decode(ARGV[1])

local function is_empty(v)
  if v == nil or v == cjson.null then return true end
  if type(v) == 'string' then return string.match(v, '^%s*$') ~= nil end
  if type(v) == 'table' then return next(v) == nil end
  return false
end

local guarded = op.settlement ~= nil and op.settlement ~= cjson.null
local settled = redis.call('EXISTS', settlement_key) == 1
if settled and guarded and not op.delete_when_settled then
  return {'already_settled', '', ''}
end

local exists = redis.call('EXISTS', job_key) == 1
local status = ''
if exists then status = redis.call('HGET', job_key, 'status') or '' end
if op.needs_job and not exists then return {'job_missing', '', ''} end
if op.require_status ~= '' and exists and status ~= op.require_status then
  return {'status_mismatch', status, ''}
end

if settled and guarded then
  redis.call('DEL', job_key)
  redis.call('ZREM', index_key, op.job_id)
  return {'deleted_only', status, ''}
end

if op.require_valid_result then
  if not exists then return {'invalid_result', status, ''} end
  local raw = redis.call('HGET', job_key, 'result')
  if not raw or raw == '' then return {'invalid_result', status, ''} end
  local ok, result = pcall(cjson.decode, raw)
  if not ok or type(result) ~= 'table' then return {'invalid_result', status, ''} end
  for _, field in ipairs(op.required_fields) do
    if is_empty(result[field]) then return {'invalid_result', status, ''} end
  end
end

local credits = ''
if op.needs_balance then
  if redis.call('EXISTS', balance_key) == 0 then return {'user_not_found', status, ''} end
  local current = tonumber(redis.call('HGET', balance_key, 'credits') or '0')
  if op.require_free_tier_available and redis.call('HGET', balance_key, 'free_tier_used') == '1' then
    return {'free_tier_used', status, tostring(current)}
  end
  if current < op.min_balance or current + op.balance_delta < 0 then
    return {'insufficient_balance', status, tostring(current)}
  end
  credits = tostring(current)
end

if op.balance_delta ~= 0 then
  credits = tostring(redis.call('HINCRBY', balance_key, 'credits', op.balance_delta))
end
if op.mark_free_tier_used then redis.call('HSET', balance_key, 'free_tier_used', '1') end
if op.delete_job then
  redis.call('DEL', job_key)
  redis.call('ZREM', index_key, op.job_id)
end
if guarded then
  redis.call('SET', settlement_key, op.settlement)
  redis.call('LPUSH', ledger_key, op.settlement)
end
return {'applied', status, credits}
"""


def op_payload(op: ConditionalOp) -> str:
    return json.dumps(
        {
            "job_id": op.job_id,
            "require_status": op.require_status or "",
            "require_valid_result": op.require_valid_result,
            "required_fields": list(RESULT_REQUIRED_FIELDS),
            "needs_job": op.needs_job,
            "needs_balance": op.needs_balance,
            "min_balance": op.min_balance,
            "balance_delta": op.balance_delta,
            "mark_free_tier_used": op.mark_free_tier_used,
            "require_free_tier_available": op.require_free_tier_available,
            "delete_job": op.delete_job,
            "delete_when_settled": op.delete_when_settled,
            "settlement": op.settlement.to_json() if op.settlement is not None else None,
        }
    )


def balance_from_hash(user_id: str, data: Optional[dict]) -> Optional[Balance]:
    if not data:
        return None
    return Balance(
        user_id=user_id,
        credits=max(0, int(data.get("credits") or 0)),
        free_tier_used=str(data.get("free_tier_used") or "0") == "1",
    )


def _as_int(value: Any) -> Optional[int]:
    text = str(value or "").strip()
    return int(text) if text else None


class RedisScriptUpdater(ConditionalUpdater):
    name = "redis_script"

    def __init__(self, client: Any, keys: RedisKeys):
        self._keys = keys
        self._script = client.register_script(CONDITIONAL_SETTLE_LUA)

    async def apply(self, op: ConditionalOp) -> ConditionalResult:
        reply = await self._script(keys=self._keys.for_op(op), args=[op_payload(op)])
        verdict = ConditionalVerdict(str(reply[0]))
        return ConditionalResult(
            verdict=verdict,
            job_status=str(reply[1]) or None,
            settlement=op.settlement if verdict == ConditionalVerdict.APPLIED else None,
            balance_after=_as_int(reply[2]) if len(reply) > 2 else None,
        )


class RedisWatchUpdater(ConditionalUpdater):
    """Optimistic WATCH/MULTI fallback for deployments without scripting.

    Re-reads job, balance and settlement inside the watch, decides with the
    shared evaluator, and retries when a concurrent writer touched any of them.
    """

    name = "redis_watch"

    def __init__(self, client: Any, keys: RedisKeys, max_attempts: int = WATCH_MAX_ATTEMPTS):
        self._client = client
        self._keys = keys
        self._max_attempts = max(1, max_attempts)

    async def apply(self, op: ConditionalOp) -> ConditionalResult:
        job_key = self._keys.job(op.job_id)
        settlement_key = self._keys.settlement(op.job_id)
        balance_key = self._keys.balance(op.user_id)

        for attempt in range(1, self._max_attempts + 1):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key, settlement_key, balance_key)
                    settled = bool(await pipe.exists(settlement_key))
                    job_data = await pipe.hgetall(job_key)
                    balance = balance_from_hash(op.user_id, await pipe.hgetall(balance_key))
                    job = JobRecord.from_hash(job_data) if job_data else None
                    status = job.status if job is not None else None

                    verdict = evaluate(op, job=job, balance=balance, settled=settled)
                    if not verdict.mutated:
                        await pipe.unwatch()
                        return ConditionalResult(
                            verdict=verdict,
                            job_status=status,
                            balance_after=balance.credits if balance else None,
                        )

                    pipe.multi()
                    if verdict == ConditionalVerdict.DELETED_ONLY:
                        pipe.delete(job_key)
                        pipe.zrem(self._keys.processing_index(), op.job_id)
                        await pipe.execute()
                        return ConditionalResult(verdict=verdict, job_status=status)

                    if op.balance_delta:
                        pipe.hincrby(balance_key, "credits", op.balance_delta)
                    if op.mark_free_tier_used:
                        pipe.hset(balance_key, "free_tier_used", "1")
                    if op.delete_job:
                        pipe.delete(job_key)
                        pipe.zrem(self._keys.processing_index(), op.job_id)
                    if op.settlement is not None:
                        raw = op.settlement.to_json()
                        pipe.set(settlement_key, raw)
                        pipe.lpush(self._keys.ledger(op.user_id), raw)
                    await pipe.execute()
                    return ConditionalResult(
                        verdict=verdict,
                        job_status=status,
                        settlement=op.settlement,
                        balance_after=(balance.credits + op.balance_delta) if balance else None,
                    )
                except WatchError:
                    logger.info(
                        "conditional_update_conflict job_id=%s attempt=%s max_attempts=%s",
                        op.job_id,
                        attempt,
                        self._max_attempts,
                    )
                    continue

        logger.error("conditional_update_gave_up job_id=%s attempts=%s", op.job_id, self._max_attempts)
        return ConditionalResult(verdict=ConditionalVerdict.CONFLICT)


async def select_conditional_updater(client: Any, keys: RedisKeys, *, prefer_script: bool = True) -> ConditionalUpdater:
    if prefer_script:
        try:
            await client.script_load(CONDITIONAL_SETTLE_LUA)
            logger.info("conditional_updater_selected name=%s", RedisScriptUpdater.name)
            return RedisScriptUpdater(client, keys)
        except ResponseError as exc:
            logger.warning("conditional_script_unavailable error=%s falling_back=%s", exc, RedisWatchUpdater.name)
    logger.info("conditional_updater_selected name=%s", RedisWatchUpdater.name)
    return RedisWatchUpdater(client, keys)


# ---------------------------------------------------------
# STORE
# ---------------------------------------------------------


class RedisJobStore(JobStore):
    backend = "redis"

    def __init__(self, client: Any, *, updater: ConditionalUpdater, keys: RedisKeys, bus: Optional[NotificationBus] = None):
        super().__init__(updater=updater, bus=bus)
        self._client = client
        self.keys = keys

    @classmethod
    async def create(
        cls,
        client: Any,
        *,
        prefix: str = "alc",
        bus: Optional[NotificationBus] = None,
        prefer_script: bool = True,
    ) -> "RedisJobStore":
        keys = RedisKeys(prefix=prefix)
        updater = await select_conditional_updater(client, keys, prefer_script=prefer_script)
        return cls(client, updater=updater, keys=keys, bus=bus)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    async def create_job(self, record: JobRecord) -> str:
        key = self.keys.job(record.job_id)
        if await self._client.exists(key):
            raise StateConflict(f"Job {record.job_id} already exists", job_id=record.job_id)
        pipe = self._client.pipeline(transaction=True)
        pipe.hset(key, mapping=record.to_hash())
        pipe.zadd(self.keys.processing_index(), {record.job_id: record.created_at.timestamp()})
        pipe.lpush(self.keys.user_jobs(record.user_id), record.job_id)
        await pipe.execute()
        return record.job_id

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        data = await self._client.hgetall(self.keys.job(job_id))
        if not data:
            return None
        return JobRecord.from_hash(data)

    async def _load_many(self, job_ids: List[str]) -> List[Optional[JobRecord]]:
        if not job_ids:
            return []
        pipe = self._client.pipeline(transaction=False)
        for job_id in job_ids:
            pipe.hgetall(self.keys.job(job_id))
        rows = await pipe.execute()
        return [JobRecord.from_hash(row) if row else None for row in rows]

    async def list_stuck_jobs(self, older_than: datetime) -> List[JobRecord]:
        job_ids = await self._client.zrangebyscore(self.keys.processing_index(), "-inf", f"({older_than.timestamp()}")
        stuck = []
        orphans = []
        for job_id, job in zip(job_ids, await self._load_many(list(job_ids))):
            if job is None:
                orphans.append(job_id)
                continue
            if job.status == JOB_STATUS_PROCESSING and job.created_at < older_than:
                stuck.append(job)
        if orphans:
            await self._client.zrem(self.keys.processing_index(), *orphans)
        return stuck

    async def list_user_jobs(self, user_id: str, status: Optional[str] = None) -> List[JobRecord]:
        job_ids = await self._client.lrange(self.keys.user_jobs(user_id), 0, 199)
        jobs = [job for job in await self._load_many(list(job_ids)) if job is not None]
        if status:
            jobs = [job for job in jobs if job.status == status]
        return jobs

    async def _delete(self, job_id: str) -> bool:
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(self.keys.job(job_id))
        pipe.zrem(self.keys.processing_index(), job_id)
        deleted, _ = await pipe.execute()
        return bool(deleted)

    async def _write_outcome(
        self, job_id: str, *, status: str, result: Optional[dict], error: Optional[str]
    ) -> Optional[JobRecord]:
        key = self.keys.job(job_id)
        for attempt in range(1, WATCH_MAX_ATTEMPTS + 1):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    data = await pipe.hgetall(key)
                    if not data:
                        await pipe.unwatch()
                        raise JobNotFound("Job not found", job_id=job_id)
                    current = JobRecord.from_hash(data)
                    if not check_transition(job_id=job_id, current=current.status, target=status, context="record_outcome"):
                        await pipe.unwatch()
                        raise StateConflict(f"Cannot move job from {current.status} to {status}", job_id=job_id)
                    if is_terminal(current.status):
                        await pipe.unwatch()
                        return current

                    now = utcnow()
                    if now <= current.updated_at:
                        now = current.updated_at + timedelta(microseconds=1)
                    updated = current.model_copy(update={"status": status, "result": result, "error": error, "updated_at": now})
                    fields = updated.to_hash()

                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={k: fields[k] for k in ("status", "result", "error", "updated_at")},
                    )
                    if is_terminal(status):
                        pipe.zrem(self.keys.processing_index(), job_id)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.info("record_outcome_conflict job_id=%s attempt=%s", job_id, attempt)
                    continue
        raise StateConflict("Concurrent writers kept changing the job", job_id=job_id)

    async def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        raw = await self._client.get(self.keys.settlement(job_id))
        return SettlementRecord.from_json(raw) if raw else None

    async def get_balance(self, user_id: str) -> Optional[Balance]:
        return balance_from_hash(user_id, await self._client.hgetall(self.keys.balance(user_id)))

    async def set_balance(self, user_id: str, credits: int, free_tier_used: bool = False) -> Balance:
        balance = Balance(user_id=user_id, credits=credits, free_tier_used=free_tier_used)
        await self._client.hset(
            self.keys.balance(user_id),
            mapping={"credits": str(balance.credits), "free_tier_used": "1" if free_tier_used else "0"},
        )
        return balance

    async def ledger_history(self, user_id: str, limit: int = 50) -> List[SettlementRecord]:
        rows = await self._client.lrange(self.keys.ledger(user_id), 0, max(0, limit - 1))
        return [SettlementRecord.from_json(row) for row in rows]
