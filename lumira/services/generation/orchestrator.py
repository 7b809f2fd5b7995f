"""Generation pipeline: AI response to stored, deliverable content.

Steps run in strict sequence (oracle, validate, render, upload, persist,
notify). Content is written only at the persist step, after rendering and
upload have both succeeded; any earlier failure moves the order to FAILED
with the error captured in `error_log`.
"""

import asyncio
import time
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Awaitable

from pydantic import ValidationError

from lumira.common.config import settings
from lumira.common.errors import ConflictError, GenerationError, NotFoundError
from lumira.common.logging import logger, order_id_ctx
from lumira.common.metrics import generation_runs_total, generation_step_seconds
from lumira.common.state_machine import OrderStatus
from lumira.common.tasks import BackgroundRunner
from lumira.common.tracing import tracer
from lumira.services.generation.collaborators import Notifier, Oracle, Renderer, Storage
from lumira.services.generation.schemas import GenerationOutcome, OracleResponse
from lumira.services.orders.models import Order, User
from lumira.services.orders.store import OrderStore


LEVEL_NAMES = {1: "Initié", 2: "Mystique", 3: "Profond", 4: "Intégrale"}


def build_profile(user: User) -> dict[str, Any]:
    return {
        **(user.profile or {}),
        "userId": user.id,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "email": user.email,
    }


def build_order_context(order: Order) -> dict[str, Any]:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "level": order.level,
        "productName": LEVEL_NAMES.get(order.level, LEVEL_NAMES[1]),
        "expertInstructions": order.expert_instructions,
        "formData": order.form_data or {},
    }


class GenerationOrchestrator:
    """Runs the generation pipeline for one order at a time."""

    def __init__(
        self,
        store: OrderStore,
        oracle: Oracle,
        renderer: Renderer,
        storage: Storage,
        notifier: Notifier,
        *,
        auto_complete: bool | None = None,
        oracle_timeout_seconds: float | None = None,
        render_timeout_seconds: float | None = None,
        upload_timeout_seconds: float | None = None,
        service_name: str = "lumira-orders",
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.renderer = renderer
        self.storage = storage
        self.notifier = notifier
        self.auto_complete = settings.auto_complete_generation if auto_complete is None else auto_complete
        self.oracle_timeout_seconds = oracle_timeout_seconds or settings.oracle_timeout_seconds
        self.render_timeout_seconds = render_timeout_seconds or settings.render_timeout_seconds
        self.upload_timeout_seconds = upload_timeout_seconds or settings.upload_timeout_seconds
        self.service_name = service_name

    async def _step(self, step: str, call: Awaitable[Any], timeout: float | None) -> Any:
        """Await one collaborator call under its own timeout budget."""

        start = perf_counter()
        with tracer.start_as_current_span(f"generation.{step}"):
            try:
                return await asyncio.wait_for(call, timeout)
            except asyncio.TimeoutError as exc:
                raise GenerationError(step, f"timed out after {timeout}s") from exc
            except GenerationError:
                raise
            except Exception as exc:
                raise GenerationError(step, str(exc) or exc.__class__.__name__) from exc
            finally:
                generation_step_seconds.labels(service=self.service_name, step=step).observe(
                    max(0.0, perf_counter() - start)
                )

    def _validate(self, raw: Any) -> OracleResponse:
        if not raw:
            raise GenerationError("validate", "empty response from model")
        try:
            return OracleResponse.model_validate(raw)
        except ValidationError as exc:
            missing = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            raise GenerationError("validate", f"malformed response ({missing})") from exc

    def _finish(self, order_id: str, outcome: str, **fields: Any) -> GenerationOutcome:
        generation_runs_total.labels(service=self.service_name, outcome=outcome).inc()
        return GenerationOutcome(order_id=order_id, outcome=outcome, **fields)

    async def run(self, order_id: str) -> GenerationOutcome:
        """Generate, store and persist content for one PAID or PROCESSING order.

        Missing order/user and status conflicts are raised before anything is
        written. Failures after the claim never propagate; they end as FAILED.
        """

        order_id_ctx.set(order_id)
        order, user = self.store.get_order_with_user(order_id)
        if user is None:
            raise NotFoundError(f"user {order.user_id} for order {order_id} not found")
        claimed = self.store.claim_for_generation(order_id)
        version = claimed.state_version
        logger.info("generation_started order_id=%s order_number=%s version=%s", order_id, order.order_number, version)

        try:
            raw = await self._step(
                "oracle",
                self.oracle.generate(build_profile(user), build_order_context(claimed)),
                self.oracle_timeout_seconds,
            )
            response = self._validate(raw)

            generated_at = datetime.now(timezone.utc).isoformat()
            pdf = response.pdf_content
            document = await self._step(
                "render",
                self.renderer.render(
                    "reading",
                    {
                        "user_name": f"{user.first_name} {user.last_name}".strip(),
                        "order_number": order.order_number,
                        "archetype": response.synthesis.archetype,
                        "archetype_reveal": pdf.archetype_reveal,
                        "introduction": pdf.introduction,
                        "sections": [section.model_dump() for section in pdf.sections],
                        "karmic_insights": pdf.karmic_insights,
                        "life_mission": pdf.life_mission,
                        "rituals": [ritual.model_dump() for ritual in pdf.rituals],
                        "conclusion": pdf.conclusion,
                        "generated_at": generated_at,
                    },
                ),
                self.render_timeout_seconds,
            )
            if not document:
                raise GenerationError("render", "renderer returned an empty document")

            key = f"readings/{order.order_number}/{int(time.time() * 1000)}-lecture.pdf"
            pdf_url = await self._step("upload", self.storage.upload(document, key), self.upload_timeout_seconds)
        except Exception as exc:
            return self._fail(order_id, version, exc)

        content = {
            **response.model_dump(by_alias=True),
            "archetype": response.synthesis.archetype,
            "reading": pdf.introduction,
            "pdfUrl": pdf_url,
            "pdfKey": key,
            "generatedAt": generated_at,
        }
        target = OrderStatus.COMPLETED if self.auto_complete else OrderStatus.AWAITING_VALIDATION
        try:
            with tracer.start_as_current_span("generation.persist"):
                stored = self.store.transition(
                    order_id,
                    target,
                    "generation_succeeded",
                    allowed_from={OrderStatus.PROCESSING},
                    expected_version=version,
                    values={"generated_content": content, "error_log": None},
                    attachments=[
                        {"kind": "reading_pdf", "storage_key": key, "url": pdf_url, "size_bytes": len(document)}
                    ],
                )
        except (ConflictError, NotFoundError) as exc:
            logger.warning("generation_abandoned order_id=%s version=%s reason=%s", order_id, version, exc)
            return self._finish(order_id, "abandoned", status=OrderStatus.PROCESSING, error=str(exc))
        except Exception as exc:
            return self._fail(order_id, version, GenerationError("persist", str(exc)))

        await self._notify(stored)
        logger.info("generation_succeeded order_id=%s status=%s pdf_url=%s", order_id, stored.status, pdf_url)
        return self._finish(
            order_id,
            "succeeded",
            status=stored.status,
            pdf_url=pdf_url,
            archetype=response.synthesis.archetype,
            detail={"timeline_days": len(response.timeline)},
        )

    def _fail(self, order_id: str, version: int, exc: Exception) -> GenerationOutcome:
        message = str(exc) or exc.__class__.__name__
        logger.error("generation_failed order_id=%s error=%s", order_id, message)
        try:
            self.store.mark_failed(order_id, message, reason="generation_failed", expected_version=version)
        except (ConflictError, NotFoundError) as write_exc:
            # A newer claim owns the order now.
            logger.warning("generation_failure_not_recorded order_id=%s reason=%s", order_id, write_exc)
            return self._finish(order_id, "abandoned", status=OrderStatus.PROCESSING, error=message)
        return self._finish(order_id, "failed", status=OrderStatus.FAILED, error=message)

    async def _notify(self, order: Order) -> None:
        context = {
            "order_id": order.id,
            "order_number": order.order_number,
            "first_name": order.user_name.split(" ")[0] if order.user_name else "",
            "order_url": f"{settings.frontend_url.rstrip('/')}/orders/{order.id}",
        }
        try:
            if order.status == OrderStatus.COMPLETED:
                await self.notifier.send(order.user_email, "content_ready", context)
            else:
                for recipient in settings.expert_alert_recipients:
                    await self.notifier.send(recipient, "expert_review_ready", context)
        except Exception as exc:
            logger.warning("generation_notify_failed order_id=%s error=%s", order.id, exc)

    def trigger(self, runner: BackgroundRunner, order_id: str, reason: str) -> asyncio.Task:
        """Run the pipeline detached from the caller.

        Errors raised before the claim are converted into FAILED, except
        status conflicts which mean another path already owns the order.
        """

        async def on_error(exc: Exception) -> None:
            if isinstance(exc, ConflictError):
                logger.info("generation_trigger_skipped order_id=%s reason=%s", order_id, exc)
                return
            self.store.mark_failed(order_id, f"background generation failed: {exc}", reason="generation_failed")

        logger.info("generation_triggered order_id=%s reason=%s", order_id, reason)
        return runner.spawn(f"generation:{order_id}", lambda: self.run(order_id), on_error=on_error)
