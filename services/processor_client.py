# User value: This file hands each analysis to the external processor without giving up on a brief outage.
import logging
import time
from typing import Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import (
    DISPATCH_BASE_DELAY_SEC,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_TIMEOUT_SEC,
    PROCESSOR_WEBHOOK_URL,
)
from schemas.job_contract import CONTRACT_VERSION
from schemas.records import InputDescriptor
from services.errors import DispatchRejected, TransientDispatchError
from utils.metrics import incr, observe_ms
from utils.request_id import REQUEST_ID_HEADER, get_request_id

logger = logging.getLogger("api.processor")

TRANSIENT_STATUS_CODES = {429}


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUS_CODES


class ProcessorClient:
    """POSTs jobs to the processor webhook. Acceptance only; results come back later."""

    def __init__(
        self,
        webhook_url: str = PROCESSOR_WEBHOOK_URL,
        *,
        max_attempts: int = DISPATCH_MAX_ATTEMPTS,
        base_delay_sec: float = DISPATCH_BASE_DELAY_SEC,
        timeout_sec: float = DISPATCH_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = (webhook_url or "").strip()
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_sec = max(0.0, float(base_delay_sec))
        self._client = httpx.AsyncClient(timeout=timeout_sec, transport=transport)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_once(self, payload: dict, job_id: str) -> None:
        headers = {}
        request_id = get_request_id()
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id
        try:
            response = await self._client.post(self.webhook_url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise TransientDispatchError(f"Processor unreachable: {exc}", job_id=job_id) from exc

        if response.is_success:
            return
        if is_transient_status(response.status_code):
            raise TransientDispatchError(
                f"Processor returned HTTP {response.status_code}",
                job_id=job_id,
                status_code=response.status_code,
            )
        raise DispatchRejected(
            f"Processor rejected job with HTTP {response.status_code}: {response.text[:200]}",
            job_id=job_id,
            status_code=response.status_code,
        )

    # User value: a hiccup on the processor side costs the user a short wait, not a failed submission.
    async def submit(self, input: InputDescriptor, job_id: str, user_id: str, tier: str) -> bool:
        if not self.enabled:
            logger.warning("processor_dispatch_skipped job_id=%s reason=PROCESSOR_WEBHOOK_URL_not_set", job_id)
            incr("processor_dispatch_total", outcome="skipped")
            return False

        payload = {
            "contract_version": CONTRACT_VERSION,
            "job_id": job_id,
            "user_id": user_id,
            "tier": tier,
            "input": input.model_dump(),
        }
        t0 = time.time()
        attempt_no = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.base_delay_sec, min=self.base_delay_sec),
                retry=retry_if_exception_type(TransientDispatchError),
                reraise=True,
            ):
                with attempt:
                    attempt_no = attempt.retry_state.attempt_number
                    if attempt_no > 1:
                        logger.info("processor_dispatch_retry job_id=%s attempt=%s", job_id, attempt_no)
                    await self._post_once(payload, job_id)
        except (TransientDispatchError, DispatchRejected) as exc:
            incr("processor_dispatch_total", outcome=exc.error_code.lower())
            logger.error(
                "processor_dispatch_failed job_id=%s attempts=%s error_code=%s error=%s",
                job_id,
                attempt_no,
                exc.error_code,
                exc.error_message,
            )
            raise

        observe_ms("processor_dispatch_ms", (time.time() - t0) * 1000)
        incr("processor_dispatch_total", outcome="accepted")
        logger.info("processor_dispatch_accepted job_id=%s attempts=%s", job_id, attempt_no)
        return True
