"""HTTP surface for the order pipeline.

Public routes take checkout intents and serve order status, the two webhook
routes receive provider payment events and worker callbacks, and `/ops/*`
exposes operator actions behind the shared API key.
"""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from lumira.common.config import settings
from lumira.common.db import SessionLocal
from lumira.common.errors import AuthenticationError, LumiraError, RateLimitError, ValidationFailed
from lumira.common.logging import configure_logging, logger, trace_id_ctx
from lumira.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from lumira.common.rate_limit import TokenBucketLimiter
from lumira.common.signatures import NonceCache
from lumira.common.startup import log_startup_config
from lumira.common.tasks import BackgroundRunner
from lumira.common.tracing import instrument_app, setup_tracing
from lumira.services.callbacks.schemas import CallbackRequest
from lumira.services.callbacks.service import CallbackService
from lumira.services.dispatch.client import DispatchClient
from lumira.services.generation.collaborators import HttpObjectStorage, OpenAIOracle, WeasyPrintRenderer
from lumira.services.generation.orchestrator import GenerationOrchestrator
from lumira.services.generation.schemas import GenerationOutcome
from lumira.services.notification.service import NotificationService
from lumira.services.orders.schemas import (
    ActionResponse,
    CheckoutIntentRequest,
    CheckoutIntentResponse,
    DispatchRequest,
    OrderDetail,
    OrderPublic,
    RegenerateRequest,
    ValidateRequest,
)
from lumira.services.orders.service import OrderService
from lumira.services.orders.store import OrderStore
from lumira.services.payments.service import PaymentService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "stripe_webhook_secret",
        "callback_webhook_secret",
        "dispatch_url",
        "dispatch_max_attempts",
        "dispatch_timeout_seconds",
        "signature_tolerance_seconds",
        "nonce_sweep_interval_seconds",
        "auto_generate_on_payment",
        "auto_complete_generation",
    ],
)

store = OrderStore(SessionLocal, service_name=settings.service_name)
runner = BackgroundRunner()
nonce_cache = NonceCache(settings.nonce_ttl_seconds, settings.nonce_sweep_interval_seconds)
limiter = TokenBucketLimiter(settings.rate_limit_per_minute)
notifier = NotificationService(SessionLocal, service_name=settings.service_name)
orchestrator = GenerationOrchestrator(
    store,
    OpenAIOracle(),
    WeasyPrintRenderer(base_url=settings.frontend_url),
    HttpObjectStorage(timeout_seconds=settings.upload_timeout_seconds),
    notifier,
    service_name=settings.service_name,
)
dispatcher = DispatchClient(service_name=settings.service_name)
payments = PaymentService(store, notifier, orchestrator, runner, service_name=settings.service_name)
callbacks = CallbackService(store, nonce_cache, service_name=settings.service_name)
orders = OrderService(store, dispatcher, orchestrator, notifier, runner)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the nonce sweep with the app and settle background generation on shutdown."""

    await nonce_cache.start()
    yield
    await nonce_cache.stop()
    await runner.cancel_all()


app = FastAPI(title="Lumira Orders", lifespan=lifespan)
instrument_app(app)


@app.exception_handler(LumiraError)
async def lumira_error_handler(_: Request, exc: LumiraError):
    """Render every pipeline error with its mapped status code."""

    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"type": exc.error_type, "message": exc.message}},
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"type": "internal_error", "message": "internal server error"}},
    )


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject operator requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise AuthenticationError("invalid API key")


# ---------------------------------------------------------------- public


@app.post("/payments/checkout-intent", response_model=CheckoutIntentResponse)
def create_checkout_intent(req: CheckoutIntentRequest, request: Request):
    """Create a PENDING order and the provider PaymentIntent that will pay it."""

    client_key = request.client.host if request.client else "unknown"
    limiter.enforce(client_key)
    return CheckoutIntentResponse(**payments.create_checkout_intent(req))


@app.post("/payments/webhook")
async def payment_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
    """Provider webhook; the body is verified as raw bytes and always answered generically."""

    payload = await request.body()
    try:
        return await payments.handle_webhook(payload, stripe_signature)
    except AuthenticationError:
        return JSONResponse(
            status_code=400,
            content={"error": {"type": "invalid_signature", "message": "invalid signature"}},
        )


@app.post("/webhooks/generation-callback")
async def generation_callback(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    x_webhook_timestamp: str | None = Header(default=None),
    x_webhook_nonce: str | None = Header(default=None),
):
    """Signed result delivered by the external generation worker."""

    raw_body = await request.body()
    callbacks.authenticate(x_webhook_signature, x_webhook_timestamp, x_webhook_nonce, raw_body)
    try:
        req = CallbackRequest.model_validate_json(raw_body)
    except ValidationError as exc:
        raise ValidationFailed(f"invalid callback body: {exc.error_count()} error(s)") from exc
    order, ack = callbacks.apply(req)
    if ack is not None:
        return ack
    return OrderPublic.from_order(order)


@app.get("/orders/{order_id}", response_model=OrderPublic)
def get_order(order_id: str):
    """Client-facing order status."""

    return OrderPublic.from_order(store.get_order(order_id))


# ------------------------------------------------------------- operators


@app.get("/ops/orders", response_model=list[OrderDetail])
def list_orders(status: str | None = None, limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return [OrderDetail.from_order(order) for order in store.list_orders(status, min(max(limit, 1), 500))]


@app.get("/ops/orders/{order_id}", response_model=OrderDetail)
def get_order_detail(order_id: str, x_api_key: str | None = Header(default=None)):
    """Operator view of one order including its transition timeline."""

    enforce_api_key(x_api_key)
    return OrderDetail.from_order(store.get_order(order_id), store.get_timeline(order_id))


@app.post("/ops/orders/{order_id}/dispatch", response_model=ActionResponse)
async def dispatch_order(order_id: str, req: DispatchRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    order, detail = await orders.dispatch(order_id, req.instructions, req.operator)
    return ActionResponse(order_id=order.id, status=order.status, detail=detail)


@app.post("/ops/orders/{order_id}/generate", response_model=GenerationOutcome)
async def generate_order(order_id: str, x_api_key: str | None = Header(default=None)):
    """Run the internal generation pipeline synchronously."""

    enforce_api_key(x_api_key)
    return await orders.generate(order_id)


@app.post("/ops/orders/{order_id}/validate", response_model=ActionResponse)
async def validate_order(order_id: str, req: ValidateRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    order = await orders.validate(order_id, req.action, req.operator, req.notes or req.reason)
    return ActionResponse(order_id=order.id, status=order.status, detail=req.action)


@app.post("/ops/orders/{order_id}/regenerate", response_model=ActionResponse)
async def regenerate_order(order_id: str, req: RegenerateRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    order, detail = await orders.regenerate(order_id, req.operator, req.instructions)
    return ActionResponse(order_id=order.id, status=order.status, detail=detail)


@app.delete("/ops/orders/{order_id}")
def purge_order(order_id: str, x_api_key: str | None = Header(default=None)):
    """Administrative hard delete of an order and its files."""

    enforce_api_key(x_api_key)
    order_number = orders.purge(order_id)
    logger.warning("order_purged_by_operator order_id=%s", order_id)
    return {"deleted": True, "order_number": order_number}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
