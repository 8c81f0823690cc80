"""Push channel for job record changes.

Delivery is best effort: a subscriber may never hear about a change, or hear
about it late. Callers that need liveness must poll as well.
"""

import asyncio
import inspect
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from schemas.records import JobRecord

logger = logging.getLogger("api.notifications")

CHANNEL_SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CHANNEL_CLOSED = "CLOSED"

EVENT_UPDATE = "UPDATE"
EVENT_DELETE = "DELETE"

OnChange = Callable[[Optional[JobRecord]], Any]
OnState = Callable[[str, Optional[BaseException]], Any]

_handle_ids = itertools.count(1)


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> Any:
    if callback is None:
        return None
    out = callback(*args)
    if inspect.isawaitable(out):
        return await out
    return out


def encode_change(job_id: str, record: Optional[JobRecord]) -> str:
    if record is None:
        return json.dumps({"event": EVENT_DELETE, "job_id": job_id, "record": None})
    return json.dumps({"event": EVENT_UPDATE, "job_id": job_id, "record": record.to_hash()})


def decode_change(raw: Any) -> tuple[str, Optional[JobRecord]]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    record = data.get("record")
    if data.get("event") == EVENT_DELETE or not record:
        return str(data.get("job_id") or ""), None
    return str(data.get("job_id") or ""), JobRecord.from_hash(record)


@dataclass
class Subscription:
    job_id: str
    on_change: OnChange
    on_state: Optional[OnState] = None
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    active: bool = True
    task: Optional[asyncio.Task] = None
    pubsub: Any = None


class NotificationBus(ABC):
    @abstractmethod
    async def subscribe(self, job_id: str, on_change: OnChange, on_state: Optional[OnState] = None) -> Subscription:
        ...

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    async def publish(self, job_id: str, record: Optional[JobRecord]) -> int:
        ...


class RedisNotificationBus(NotificationBus):
    """Redis pub/sub, one channel per job id."""

    def __init__(self, client: Any, channel_prefix: str = "alc:job_updates"):
        self._client = client
        self._prefix = channel_prefix

    def channel_name(self, job_id: str) -> str:
        return f"{self._prefix}:{job_id}"

    async def publish(self, job_id: str, record: Optional[JobRecord]) -> int:
        try:
            return int(await self._client.publish(self.channel_name(job_id), encode_change(job_id, record)) or 0)
        except Exception as exc:
            # The store write already happened; pollers will still see it.
            logger.warning("notification_publish_failed job_id=%s error=%s", job_id, exc)
            return 0

    async def subscribe(self, job_id: str, on_change: OnChange, on_state: Optional[OnState] = None) -> Subscription:
        sub = Subscription(job_id=job_id, on_change=on_change, on_state=on_state)
        sub.pubsub = self._client.pubsub()
        try:
            await sub.pubsub.subscribe(self.channel_name(job_id))
        except Exception as exc:
            sub.active = False
            logger.warning("notification_subscribe_failed job_id=%s error=%s", job_id, exc)
            await invoke_callback(on_state, CHANNEL_ERROR, exc)
            return sub
        sub.task = asyncio.create_task(self._listen(sub))
        return sub

    async def _listen(self, sub: Subscription) -> None:
        try:
            async for message in sub.pubsub.listen():
                if not sub.active:
                    break
                kind = message.get("type")
                if kind == "subscribe":
                    await invoke_callback(sub.on_state, CHANNEL_SUBSCRIBED, None)
                elif kind == "message":
                    try:
                        _, record = decode_change(message.get("data"))
                    except (ValueError, KeyError) as exc:
                        logger.warning("notification_payload_invalid job_id=%s error=%s", sub.job_id, exc)
                        continue
                    await invoke_callback(sub.on_change, record)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("notification_channel_error job_id=%s error=%s", sub.job_id, exc)
            if sub.active:
                await invoke_callback(sub.on_state, CHANNEL_ERROR, exc)

    async def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active and subscription.pubsub is None:
            return
        subscription.active = False
        if subscription.task is asyncio.current_task():
            # Called from inside a delivery; the listen loop exits on the inactive flag.
            subscription.task = None
        if subscription.task is not None:
            subscription.task.cancel()
            try:
                await subscription.task
            except (asyncio.CancelledError, Exception):
                pass
            subscription.task = None
        if subscription.pubsub is not None:
            try:
                await subscription.pubsub.unsubscribe(self.channel_name(subscription.job_id))
                await subscription.pubsub.aclose()
            except Exception as exc:
                logger.info("notification_unsubscribe_error job_id=%s error=%s", subscription.job_id, exc)
            subscription.pubsub = None
