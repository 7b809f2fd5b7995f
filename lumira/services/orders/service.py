"""Operator actions on orders: dispatch, generate, validate, regenerate, purge."""

from lumira.common.errors import DispatchError, ValidationFailed
from lumira.common.logging import logger, order_id_ctx
from lumira.common.state_machine import OrderStatus, require_status
from lumira.common.tasks import BackgroundRunner
from lumira.services.dispatch.client import DispatchClient, build_payload
from lumira.services.generation.orchestrator import GenerationOrchestrator
from lumira.services.generation.schemas import GenerationOutcome
from lumira.services.notification.service import NotificationService
from lumira.services.orders.models import Order
from lumira.services.orders.store import OrderStore


DISPATCH_EXHAUSTED = "dispatch exhausted retries"


class OrderService:
    """Human-driven transitions layered on top of the order store."""

    def __init__(
        self,
        store: OrderStore,
        dispatcher: DispatchClient,
        orchestrator: GenerationOrchestrator,
        notifier: NotificationService,
        runner: BackgroundRunner,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.runner = runner

    async def _send(self, order: Order, instructions: str, operator: str, regeneration: bool) -> str:
        """Dispatch to the worker; fall back to the internal pipeline when no worker is configured.

        On exhausted retries the order is marked FAILED and the error re-raised.
        """

        _, user = self.store.get_order_with_user(order.id)
        payload = build_payload(order, user, instructions, operator, regeneration=regeneration)
        try:
            result = await self.dispatcher.send(payload)
        except DispatchError:
            self.store.mark_failed(order.id, DISPATCH_EXHAUSTED, reason="dispatch_failed")
            raise
        if result.sent:
            return "dispatched"
        self.orchestrator.trigger(self.runner, order.id, reason="dispatch_skipped")
        return "generation_started"

    async def dispatch(self, order_id: str, instructions: str, operator: str) -> tuple[Order, str]:
        order_id_ctx.set(order_id)
        order = self.store.get_order(order_id)
        require_status(order.status, {OrderStatus.PAID, OrderStatus.PROCESSING}, order_id)
        if order.status == OrderStatus.PAID:
            order = self.store.transition(
                order_id,
                OrderStatus.PROCESSING,
                f"dispatched_by:{operator}",
                allowed_from={OrderStatus.PAID},
                expected_version=order.state_version,
                values={"expert_instructions": instructions or None},
            )
        else:
            self.store.record_instructions(order_id, instructions or None)
            order = self.store.get_order(order_id)
        detail = await self._send(order, instructions, operator, regeneration=False)
        logger.info("order_dispatch order_id=%s operator=%s detail=%s", order_id, operator, detail)
        return self.store.get_order(order_id), detail

    async def generate(self, order_id: str) -> GenerationOutcome:
        order_id_ctx.set(order_id)
        return await self.orchestrator.run(order_id)

    async def validate(self, order_id: str, action: str, operator: str, note: str | None = None) -> Order:
        order_id_ctx.set(order_id)
        order = self.store.get_order(order_id)
        require_status(order.status, {OrderStatus.AWAITING_VALIDATION}, order_id)

        if action == "approve":
            approved = self.store.transition(
                order_id,
                OrderStatus.COMPLETED,
                f"approved_by:{operator}",
                allowed_from={OrderStatus.AWAITING_VALIDATION},
                expected_version=order.state_version,
            )
            await self.notifier.send(
                approved.user_email,
                "content_ready",
                {
                    "order_id": approved.id,
                    "order_number": approved.order_number,
                    "first_name": approved.user_name.split(" ")[0] if approved.user_name else "",
                    "order_url": self.notifier.order_url(approved.id),
                },
            )
            logger.info("order_approved order_id=%s operator=%s notes=%s", order_id, operator, note or "")
            return approved

        rejected = self.store.transition(
            order_id,
            OrderStatus.PROCESSING,
            f"rejected_by:{operator}",
            allowed_from={OrderStatus.AWAITING_VALIDATION},
            expected_version=order.state_version,
            bump_revision=True,
            values={"error_log": f"rejected: {note}" if note else None},
        )
        logger.info("order_rejected order_id=%s operator=%s reason=%s", order_id, operator, note or "")
        return rejected

    async def regenerate(self, order_id: str, operator: str, instructions: str | None = None) -> tuple[Order, str]:
        """Reset a FAILED or rejected-for-review order to PROCESSING and re-dispatch it."""

        order_id_ctx.set(order_id)
        order = self.store.get_order(order_id)
        require_status(order.status, {OrderStatus.FAILED, OrderStatus.AWAITING_VALIDATION}, order_id)
        effective = instructions or order.expert_instructions
        if self.dispatcher.configured and not effective:
            raise ValidationFailed(f"order {order_id} has no recorded instructions to regenerate from")
        order = self.store.transition(
            order_id,
            OrderStatus.PROCESSING,
            f"regenerated_by:{operator}",
            allowed_from={OrderStatus.FAILED, OrderStatus.AWAITING_VALIDATION},
            expected_version=order.state_version,
            bump_revision=True,
            values={"error_log": None, "expert_instructions": effective},
        )
        detail = await self._send(order, effective or "", operator, regeneration=True)
        logger.info("order_regenerated order_id=%s operator=%s revision=%s", order_id, operator, order.revision_count)
        return self.store.get_order(order_id), detail

    def purge(self, order_id: str) -> str:
        order_id_ctx.set(order_id)
        return self.store.purge_order(order_id)
