"""Payment intake: checkout intents and the provider webhook."""

import json
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lumira.common.config import settings
from lumira.common.errors import AuthenticationError, ConflictError, LumiraError, NotFoundError, RetryableError
from lumira.common.logging import event_id_ctx, logger, order_id_ctx
from lumira.common.metrics import duplicate_events_skipped_total, payment_events_total
from lumira.common.state_machine import OrderStatus
from lumira.common.tasks import BackgroundRunner
from lumira.services.generation.orchestrator import GenerationOrchestrator
from lumira.services.notification.service import NotificationService
from lumira.services.orders.models import Order, ProcessedEvent
from lumira.services.orders.schemas import CheckoutIntentRequest
from lumira.services.orders.store import OrderStore


ACKNOWLEDGMENT = {"received": True}
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
LEVELS = range(1, 5)


def _metadata_int(value: Any, default: int) -> int:
    """Provider metadata values are strings; anything non-numeric falls back to `default`."""

    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class PaymentService:
    """Verifies provider events and applies them at most once per event id."""

    def __init__(
        self,
        store: OrderStore,
        notifier: NotificationService,
        orchestrator: GenerationOrchestrator,
        runner: BackgroundRunner,
        *,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
        auto_generate: bool | None = None,
        service_name: str = "lumira-orders",
    ) -> None:
        self.store = store
        self.session_factory = store.session_factory
        self.notifier = notifier
        self.orchestrator = orchestrator
        self.runner = runner
        self.webhook_secret = settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        self.tolerance_seconds = tolerance_seconds or settings.stripe_signature_tolerance_seconds
        self.auto_generate = settings.auto_generate_on_payment if auto_generate is None else auto_generate
        self.service_name = service_name
        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key

    # ------------------------------------------------------------ checkout

    def create_checkout_intent(self, req: CheckoutIntentRequest) -> dict[str, Any]:
        """Create the PENDING order and a provider PaymentIntent referencing it."""

        if not settings.stripe_secret_key:
            raise RetryableError("payment provider is not configured")
        currency = (req.currency or settings.default_currency).lower()
        order = self.store.create_order(
            email=req.email,
            first_name=req.first_name,
            last_name=req.last_name,
            level=req.level,
            amount_cents=req.amount_cents,
            currency=currency,
            form_data=req.form_data,
            reason="checkout_intent",
        )
        try:
            intent = stripe.PaymentIntent.create(
                amount=req.amount_cents,
                currency=currency,
                receipt_email=req.email,
                automatic_payment_methods={"enabled": True},
                metadata={"order_id": order.id, "order_number": order.order_number, "level": str(req.level)},
            )
        except stripe.StripeError as exc:
            logger.error("payment_intent_create_failed order_id=%s error=%s", order.id, exc)
            self.store.mark_failed(order.id, f"payment intent creation failed: {exc}", reason="checkout_failed")
            raise RetryableError("payment provider unavailable") from exc

        self.store.set_payment_intent(order.id, intent.id)
        logger.info("checkout_intent_created order_id=%s payment_intent_id=%s", order.id, intent.id)
        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "order_id": order.id,
            "order_number": order.order_number,
        }

    # ------------------------------------------------------------- webhook

    def verify(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Check the provider signature over the raw body and return the parsed event."""

        if not sig_header:
            raise AuthenticationError("missing provider signature header")
        if not self.webhook_secret:
            logger.error("payment webhook secret is not configured")
            raise AuthenticationError("webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig_header, self.webhook_secret, self.tolerance_seconds
            )
            event = json.loads(payload)
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("payment_webhook_rejected error=%s", exc)
            raise AuthenticationError("invalid provider signature") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise AuthenticationError("malformed provider event")
        return event

    def _event_seen(self, db, event_id: str) -> bool:
        return db.execute(select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)).scalar_one_or_none() is not None

    def _record_event(self, event: dict[str, Any]) -> None:
        try:
            with self.session_factory() as db:
                db.add(ProcessedEvent(event_id=event["id"], event_type=event["type"], payload=event))
                db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first.
            logger.info("processed_event_already_recorded event_id=%s", event["id"])

    async def handle_webhook(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify, dedupe, apply and record one provider event.

        Every verified event ends in the ledger and is acknowledged. Only a
        storage failure surfaces (as RetryableError) so the provider redelivers.
        """

        event = self.verify(payload, sig_header)
        event_id = event["id"]
        event_type = event["type"]
        event_id_ctx.set(event_id)

        try:
            with self.session_factory() as db:
                if self._event_seen(db, event_id):
                    logger.info("duplicate event skipped source=payment event_id=%s", event_id)
                    duplicate_events_skipped_total.labels(service=self.service_name, source="payment_webhook").inc()
                    return ACKNOWLEDGMENT

            outcome = await self._apply_event(event)
            self._record_event(event)
        except SQLAlchemyError as exc:
            logger.error("payment_event_storage_failed event_id=%s error=%s", event_id, exc)
            raise RetryableError("payment event could not be stored") from exc

        payment_events_total.labels(service=self.service_name, event_type=event_type, outcome=outcome).inc()
        return ACKNOWLEDGMENT

    async def _apply_event(self, event: dict[str, Any]) -> str:
        if event["type"] != PAYMENT_SUCCEEDED:
            logger.info("payment_event_ignored event_type=%s", event["type"])
            return "ignored"
        try:
            return await self._handle_payment_succeeded(event)
        except (LumiraError, ValueError, TypeError) as exc:
            # Redelivery cannot fix a bad payload; the event is recorded and dropped.
            logger.error("payment_event_unprocessable event_id=%s error=%s", event["id"], exc)
            return "unprocessable"

    async def _handle_payment_succeeded(self, event: dict[str, Any]) -> str:
        intent = (event.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        intent_id = intent.get("id")
        order_ref = metadata.get("order_id")

        if order_ref:
            order = self._mark_paid(order_ref, intent_id, event["id"])
        else:
            order = self._create_paid_order(intent, metadata, event["id"])
        if order is None:
            return "noop"

        order_id_ctx.set(order.id)
        await self._notify_paid(order)
        if self.auto_generate:
            self.orchestrator.trigger(self.runner, order.id, reason="payment_succeeded")
        return "paid"

    def _mark_paid(self, order_id: str, intent_id: str | None, event_id: str) -> Order | None:
        try:
            order = self.store.get_order(order_id)
        except NotFoundError:
            logger.warning("payment_for_unknown_order order_id=%s", order_id)
            return None
        if order.status != OrderStatus.PENDING:
            logger.info("payment_already_applied order_id=%s status=%s", order.id, order.status)
            return None
        values = {"payment_intent_id": intent_id} if intent_id and not order.payment_intent_id else None
        try:
            return self.store.transition(
                order.id,
                OrderStatus.PAID,
                "payment_succeeded",
                allowed_from={OrderStatus.PENDING},
                expected_version=order.state_version,
                values=values,
                event_id=event_id,
            )
        except ConflictError as exc:
            logger.info("payment_transition_skipped order_id=%s reason=%s", order.id, exc)
            return None

    def _create_paid_order(self, intent: dict[str, Any], metadata: dict[str, Any], event_id: str) -> Order | None:
        """Fast-checkout path: the order is created directly as PAID from checkout metadata."""

        email = metadata.get("email") or intent.get("receipt_email")
        if not email:
            logger.warning("payment_without_order_reference payment_intent_id=%s", intent.get("id"))
            return None
        intent_id = intent.get("id")
        if intent_id and self.store.find_by_payment_intent(intent_id) is not None:
            logger.info("payment_intent_already_has_order payment_intent_id=%s", intent_id)
            return None

        level = _metadata_int(metadata.get("level"), 1)
        if level not in LEVELS:
            logger.warning("fast_checkout_invalid_level payment_intent_id=%s level=%s", intent_id, metadata.get("level"))
            level = 1
        form_data = metadata.get("form_data") or {}
        if isinstance(form_data, str):
            try:
                form_data = json.loads(form_data)
            except ValueError:
                form_data = {"raw": form_data}
        return self.store.create_order(
            email=email,
            first_name=metadata.get("first_name", ""),
            last_name=metadata.get("last_name", ""),
            level=level,
            amount_cents=_metadata_int(metadata.get("amount"), _metadata_int(intent.get("amount"), 0)),
            currency=intent.get("currency") or settings.default_currency,
            form_data=form_data,
            status=OrderStatus.PAID,
            payment_intent_id=intent_id,
            reason="payment_succeeded_fast_checkout",
            event_id=event_id,
        )

    async def _notify_paid(self, order: Order) -> None:
        context = {
            "order_id": order.id,
            "order_number": order.order_number,
            "first_name": order.user_name.split(" ")[0] if order.user_name else "",
            "email": order.user_email,
            "level": order.level,
            "order_url": self.notifier.order_url(order.id),
        }
        try:
            await self.notifier.send(order.user_email, "order_confirmation", context)
            await self.notifier.notify_experts("expert_new_order", context)
        except Exception as exc:
            logger.warning("payment_notification_failed order_id=%s error=%s", order.id, exc)
