"""Transactional email notifications sent through Resend.

Delivery is best effort: every attempt is written to `notification_logs` and
failures are logged, never raised to the caller.
"""

import asyncio
import html
from typing import Any

import resend

from lumira.common.config import settings
from lumira.common.logging import logger
from lumira.services.notification.models import NotificationLog


TEMPLATES: dict[str, tuple[str, str]] = {
    "order_confirmation": (
        "Your order {order_number} is confirmed",
        "<p>Hello {first_name},</p>"
        "<p>We received your payment for order <strong>{order_number}</strong>. "
        "Your reading is being prepared.</p>"
        '<p><a href="{order_url}">Follow your order</a></p>',
    ),
    "expert_new_order": (
        "New paid order {order_number}",
        "<p>Order <strong>{order_number}</strong> (level {level}) was paid by {email}.</p>"
        '<p><a href="{order_url}">Open the order</a></p>',
    ),
    "content_ready": (
        "Your reading {order_number} is ready",
        "<p>Hello {first_name},</p>"
        "<p>Your reading for order <strong>{order_number}</strong> is ready.</p>"
        '<p><a href="{order_url}">Open your reading</a></p>',
    ),
    "expert_review_ready": (
        "Order {order_number} awaits validation",
        "<p>Generated content for order <strong>{order_number}</strong> is ready for review.</p>"
        '<p><a href="{order_url}">Review the order</a></p>',
    ),
}


class _SafeContext(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_template(template: str, context: dict[str, Any]) -> tuple[str, str]:
    """Return `(subject, html)` for a named template."""

    try:
        subject, body = TEMPLATES[template]
    except KeyError as exc:
        raise ValueError(f"unknown notification template {template}") from exc
    # Context values come from public checkout input; the body is HTML.
    escaped = _SafeContext({key: html.escape(str(value)) for key, value in context.items() if value is not None})
    return subject.format_map(_SafeContext(context)), body.format_map(escaped)


class NotificationService:
    """Notification collaborator: `send(to, template, context)` never raises."""

    def __init__(self, session_factory, service_name: str = "lumira-orders", sender=None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.from_email = settings.email_from_address
        self.frontend_url = settings.frontend_url.rstrip("/")
        self._sender = sender or self._send_with_resend
        if settings.resend_api_key:
            resend.api_key = settings.resend_api_key

    def _send_with_resend(self, params: dict[str, Any]) -> Any:
        if not settings.resend_api_key:
            raise RuntimeError("RESEND_API_KEY is not configured")
        return resend.Emails.send(params)

    def order_url(self, order_id: str) -> str:
        return f"{self.frontend_url}/orders/{order_id}"

    def _log(self, order_id: str | None, recipient: str, template: str, status: str, error: str | None) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    NotificationLog(
                        order_id=order_id,
                        recipient=recipient,
                        template=template,
                        status=status,
                        error=error,
                    )
                )
                db.commit()
        except Exception as exc:
            logger.warning("notification_log_write_failed template=%s error=%s", template, exc)

    async def send(self, to: str, template: str, context: dict[str, Any]) -> None:
        order_id = context.get("order_id")
        try:
            subject, body = render_template(template, context)
            params = {"from": self.from_email, "to": [to], "subject": subject, "html": body}
            await asyncio.to_thread(self._sender, params)
        except Exception as exc:
            logger.warning("notification_failed template=%s order_id=%s error=%s", template, order_id, exc)
            self._log(order_id, to, template, "FAILED", str(exc))
            return
        logger.info("notification_sent template=%s order_id=%s", template, order_id)
        self._log(order_id, to, template, "SENT", None)

    async def notify_experts(self, template: str, context: dict[str, Any]) -> None:
        for recipient in settings.expert_alert_recipients:
            await self.send(recipient, template, context)
