"""API request/response schemas for order endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from lumira.services.orders.models import Order, OrderTimeline


class CheckoutIntentRequest(BaseModel):
    """Payload accepted by `POST /payments/checkout-intent`."""

    email: EmailStr
    first_name: str = Field(min_length=1, alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    level: int = Field(ge=1, le=4)
    amount_cents: int = Field(gt=0, alias="amountCents")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    form_data: dict[str, Any] = Field(default_factory=dict, alias="formData")

    model_config = ConfigDict(populate_by_name=True)


class CheckoutIntentResponse(BaseModel):
    client_secret: str | None
    payment_intent_id: str
    order_id: str
    order_number: str


class OrderPublic(BaseModel):
    """Client-facing order representation (no error log, no instructions)."""

    id: str
    order_number: str
    status: str
    level: int
    amount_cents: int
    currency: str
    generated_content: dict[str, Any] | None
    revision_count: int
    created_at: datetime | None
    paid_at: datetime | None
    delivered_at: datetime | None

    @classmethod
    def from_order(cls, order: Order) -> "OrderPublic":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            level=order.level,
            amount_cents=order.amount_cents,
            currency=order.currency,
            generated_content=order.generated_content,
            revision_count=order.revision_count,
            created_at=order.created_at,
            paid_at=order.paid_at,
            delivered_at=order.delivered_at,
        )


class TimelineEntry(BaseModel):
    from_state: str | None
    to_state: str
    reason: str
    event_id: str | None
    created_at: datetime | None

    @classmethod
    def from_row(cls, row: OrderTimeline) -> "TimelineEntry":
        return cls(
            from_state=row.from_state,
            to_state=row.to_state,
            reason=row.reason,
            event_id=row.event_id,
            created_at=row.created_at,
        )


class OrderDetail(OrderPublic):
    """Operator view: public fields plus diagnostics and the transition history."""

    user_id: str
    user_email: str
    user_name: str
    form_data: dict[str, Any]
    payment_intent_id: str | None
    expert_instructions: str | None
    error_log: str | None
    state_version: int
    timeline: list[TimelineEntry] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order, timeline: list[OrderTimeline] | None = None) -> "OrderDetail":
        base = OrderPublic.from_order(order).model_dump()
        return cls(
            **base,
            user_id=order.user_id,
            user_email=order.user_email,
            user_name=order.user_name,
            form_data=order.form_data or {},
            payment_intent_id=order.payment_intent_id,
            expert_instructions=order.expert_instructions,
            error_log=order.error_log,
            state_version=order.state_version,
            timeline=[TimelineEntry.from_row(row) for row in timeline or []],
        )


class DispatchRequest(BaseModel):
    instructions: str = Field(default="", max_length=10000)
    operator: str = Field(min_length=1)


class RegenerateRequest(BaseModel):
    operator: str = Field(min_length=1)
    instructions: str | None = Field(default=None, max_length=10000)


class ValidateRequest(BaseModel):
    """Human validation decision for an order awaiting validation."""

    action: Literal["approve", "reject"]
    operator: str = Field(min_length=1)
    notes: str | None = None
    reason: str | None = None


class ActionResponse(BaseModel):
    order_id: str
    status: str
    detail: str = ""
