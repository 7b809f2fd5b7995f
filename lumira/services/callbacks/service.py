"""Inbound generation-result callbacks from the external worker."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from lumira.common.config import settings
from lumira.common.errors import AuthenticationError, RetryableError
from lumira.common.logging import logger, mask, order_id_ctx
from lumira.common.metrics import callback_rejections_total
from lumira.common.signatures import NonceCache, verify_callback
from lumira.common.state_machine import GENERATION_SOURCE_STATUSES, OrderStatus, require_status
from lumira.services.callbacks.schemas import CallbackRequest
from lumira.services.orders.models import Order
from lumira.services.orders.store import OrderStore


class CallbackService:
    """Verifies signed callbacks and applies their result under the status guard."""

    def __init__(
        self,
        store: OrderStore,
        nonce_cache: NonceCache,
        secret: str | None = None,
        tolerance_seconds: int | None = None,
        service_name: str = "lumira-orders",
    ) -> None:
        self.store = store
        self.nonce_cache = nonce_cache
        self.secret = settings.callback_webhook_secret if secret is None else secret
        self.tolerance_seconds = tolerance_seconds or settings.signature_tolerance_seconds
        self.service_name = service_name

    def authenticate(
        self,
        signature: str | None,
        timestamp: str | None,
        nonce: str | None,
        raw_body: bytes,
        now: float | None = None,
    ) -> None:
        """Raise AuthenticationError unless signature, freshness and nonce all check out."""

        result = verify_callback(
            signature,
            timestamp,
            nonce,
            raw_body,
            self.secret,
            self.nonce_cache,
            tolerance_seconds=self.tolerance_seconds,
            now=now,
        )
        if not result.ok:
            callback_rejections_total.labels(service=self.service_name, reason=result.reason).inc()
            logger.warning("callback_rejected reason=%s signature=%s nonce=%s", result.reason, mask(signature), nonce or "")
            raise AuthenticationError(result.reason)

    def apply(self, req: CallbackRequest) -> tuple[Order, dict[str, Any] | None]:
        """Apply an authenticated callback.

        Returns the order and, for `failed` callbacks, the acknowledgment body.
        """

        order_id_ctx.set(req.order_id)
        order = self.store.get_order(req.order_id)
        require_status(order.status, GENERATION_SOURCE_STATUSES, order.id)
        if req.order_number != order.order_number:
            logger.warning(
                "callback_order_number_mismatch order_id=%s expected=%s got=%s",
                order.id,
                order.order_number,
                req.order_number,
            )

        try:
            if req.status == "failed":
                error_log = "generation worker reported failure"
                if req.error:
                    error_log = f"{error_log}: {req.error}"
                failed = self.store.transition(
                    order.id,
                    OrderStatus.FAILED,
                    "callback_failed",
                    allowed_from=GENERATION_SOURCE_STATUSES,
                    expected_version=order.state_version,
                    values={"error_log": error_log},
                )
                return failed, {"status": "acknowledged", "error": "Generation failed"}

            content = req.content.model_dump(by_alias=True, exclude_none=True)
            content["generatedAt"] = datetime.now(timezone.utc).isoformat()
            updated = self.store.transition(
                order.id,
                OrderStatus.AWAITING_VALIDATION,
                "callback_ready",
                allowed_from=GENERATION_SOURCE_STATUSES,
                expected_version=order.state_version,
                values={"generated_content": content, "error_log": None},
                via=OrderStatus.PROCESSING,
            )
        except SQLAlchemyError as exc:
            logger.exception("callback_persist_failed order_id=%s", order.id)
            raise RetryableError(f"could not persist callback for order {order.id}") from exc

        logger.info("callback_applied order_id=%s status=%s", updated.id, updated.status)
        return updated, None
