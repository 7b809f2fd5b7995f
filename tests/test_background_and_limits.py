"""Background runner error boundary, rate limiter, notification logging."""

import asyncio

import pytest
from sqlalchemy import select

from conftest import RecordingSender
from lumira.common.db import SessionLocal
from lumira.common.errors import RateLimitError
from lumira.common.rate_limit import TokenBucketLimiter
from lumira.common.tasks import BackgroundRunner
from lumira.services.notification.models import NotificationLog
from lumira.services.notification.service import NotificationService, render_template


def test_runner_routes_failures_to_error_handler():
    seen = []

    async def boom():
        raise RuntimeError("exploded")

    async def on_error(exc):
        seen.append(str(exc))

    async def scenario():
        runner = BackgroundRunner()
        runner.spawn("boom", boom, on_error=on_error)
        assert len(runner) == 1
        await runner.drain()
        return len(runner)

    assert asyncio.run(scenario()) == 0
    assert seen == ["exploded"]


def test_runner_survives_failing_error_handler():
    async def boom():
        raise RuntimeError("first")

    async def broken_handler(exc):
        raise RuntimeError("second")

    async def scenario():
        runner = BackgroundRunner()
        task = runner.spawn("boom", boom, on_error=broken_handler)
        await runner.drain()
        return task.exception()

    assert asyncio.run(scenario()) is None


def test_limiter_blocks_after_capacity_and_refills():
    clock = {"now": 0.0}
    limiter = TokenBucketLimiter(2, clock=lambda: clock["now"])
    limiter.enforce("1.2.3.4")
    limiter.enforce("1.2.3.4")
    with pytest.raises(RateLimitError) as excinfo:
        limiter.enforce("1.2.3.4")
    assert excinfo.value.retry_after >= 1

    limiter.enforce("5.6.7.8")
    clock["now"] += 31
    limiter.enforce("1.2.3.4")


def test_notification_success_and_failure_are_logged_never_raised():
    ok = NotificationService(SessionLocal, sender=RecordingSender())
    broken = NotificationService(SessionLocal, sender=RecordingSender(fail=True))
    context = {"order_id": "o1", "order_number": "LU251018001", "first_name": "Alice", "order_url": "http://x"}

    asyncio.run(ok.send("alice@example.com", "order_confirmation", context))
    asyncio.run(broken.send("alice@example.com", "content_ready", context))
    asyncio.run(broken.send("alice@example.com", "no_such_template", context))

    with SessionLocal() as db:
        rows = db.execute(select(NotificationLog).order_by(NotificationLog.created_at)).scalars().all()
    assert sorted(row.status for row in rows) == ["FAILED", "FAILED", "SENT"]
    assert all(row.order_id == "o1" for row in rows)


def test_templates_tolerate_missing_keys():
    subject, html = render_template("expert_new_order", {"order_number": "LU251018007"})
    assert subject == "New paid order LU251018007"
    assert "level " in html


def test_limiter_forgets_idle_clients():
    clock = {"now": 0.0}
    limiter = TokenBucketLimiter(5, clock=lambda: clock["now"])
    for i in range(1000):
        limiter.enforce(f"10.0.{i // 256}.{i % 256}")
    assert len(limiter) == 1000

    clock["now"] += 3600
    limiter.enforce("fresh")
    assert len(limiter) == 1


def test_limiter_keeps_recently_limited_clients():
    clock = {"now": 0.0}
    limiter = TokenBucketLimiter(1, clock=lambda: clock["now"])
    limiter.enforce("busy")
    clock["now"] += 119
    limiter.enforce("idle")
    clock["now"] += 2
    limiter.enforce("other")
    # "busy" was last seen 121s ago and is dropped; "idle" stays.
    assert len(limiter) == 2
    with pytest.raises(RateLimitError):
        limiter.enforce("idle")


def test_template_body_escapes_client_input():
    subject, html = render_template(
        "order_confirmation",
        {
            "first_name": '<a href="https://evil.test">Click</a>',
            "order_number": "LU251018001",
            "order_url": "https://app.test/orders/o1",
        },
    )
    assert "<a href=\"https://evil.test\">" not in html
    assert "&lt;a href=&quot;https://evil.test&quot;&gt;Click&lt;/a&gt;" in html
    assert '<a href="https://app.test/orders/o1">' in html
    assert subject == "Your order LU251018001 is confirmed"
