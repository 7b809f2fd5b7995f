"""Signed outbound generation requests to the external worker."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from lumira.common.config import settings
from lumira.common.errors import DispatchError
from lumira.common.logging import logger
from lumira.common.metrics import dispatch_attempts_total, retries_total
from lumira.common.signatures import sign_body
from lumira.services.orders.models import Order, User


@dataclass(frozen=True)
class DispatchResult:
    sent: bool
    attempts: int
    status_code: int | None = None


def build_payload(
    order: Order,
    user: User | None,
    instructions: str,
    operator: str,
    regeneration: bool = False,
) -> dict[str, Any]:
    """Fixed request body sent to the generation worker."""

    client: dict[str, Any] = {"email": order.user_email, "name": order.user_name}
    if user is not None:
        client.update(
            firstName=user.first_name,
            lastName=user.last_name,
            profile=user.profile or {},
        )
    payload: dict[str, Any] = {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "level": order.level,
        "instructions": instructions,
        "client": client,
        "formData": order.form_data or {},
        "operator": operator,
    }
    if regeneration:
        payload["regeneration"] = True
    return payload


class DispatchClient:
    """POSTs signed generation requests with bounded retries and exponential backoff.

    Each non-2xx response, network error or timeout counts as a failed
    attempt; attempt `n` is followed by a sleep of `base ** n` seconds unless
    it was the last one.
    """

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        *,
        signature_header: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        service_name: str = "lumira-orders",
    ) -> None:
        self.url = settings.dispatch_url if url is None else url
        self.secret = settings.dispatch_secret if secret is None else secret
        self.signature_header = signature_header or settings.dispatch_signature_header
        self.timeout_seconds = timeout_seconds or settings.dispatch_timeout_seconds
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.backoff_base_seconds = backoff_base_seconds or settings.dispatch_backoff_base_seconds
        self.transport = transport
        self.sleep = sleep
        self.service_name = service_name

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def send(self, payload: dict[str, Any]) -> DispatchResult:
        if not self.url:
            logger.warning("dispatch_skipped reason=target_not_configured order_id=%s", payload.get("orderId"))
            dispatch_attempts_total.labels(service=self.service_name, outcome="skipped").inc()
            return DispatchResult(sent=False, attempts=0)

        # The signature covers these exact bytes.
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            self.signature_header: sign_body(self.secret, body),
        }

        last_error = "unknown"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await client.post(self.url, content=body, headers=headers)
                    if response.is_success:
                        dispatch_attempts_total.labels(service=self.service_name, outcome="success").inc()
                        logger.info(
                            "dispatch_sent order_id=%s attempt=%s status_code=%s",
                            payload.get("orderId"),
                            attempt,
                            response.status_code,
                        )
                        return DispatchResult(sent=True, attempts=attempt, status_code=response.status_code)
                    last_error = f"worker responded with {response.status_code}"
                    outcome = "http_error"
                except httpx.TimeoutException as exc:
                    last_error = f"timeout: {exc}"
                    outcome = "timeout"
                except httpx.HTTPError as exc:
                    last_error = f"network error: {exc}"
                    outcome = "network_error"

                dispatch_attempts_total.labels(service=self.service_name, outcome=outcome).inc()
                if attempt == self.max_attempts:
                    break
                backoff_seconds = self.backoff_base_seconds**attempt
                retries_total.labels(service=self.service_name, dependency="generation_worker").inc()
                logger.warning(
                    "dispatch_attempt_failed order_id=%s attempt=%s error=%s backoff_s=%s",
                    payload.get("orderId"),
                    attempt,
                    last_error,
                    backoff_seconds,
                )
                await self.sleep(backoff_seconds)

        logger.error(
            "dispatch_exhausted order_id=%s attempts=%s error=%s",
            payload.get("orderId"),
            self.max_attempts,
            last_error,
        )
        raise DispatchError(
            f"dispatch failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        )
