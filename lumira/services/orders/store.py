"""Order store: the single source of truth for order state.

Every mutation is a single-row conditional write guarded by the status and
`state_version` read in the same session, so the state-machine check and the
write are atomic at the storage layer.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from lumira.common.errors import ConflictError, NotFoundError
from lumira.common.logging import logger
from lumira.common.metrics import order_transitions_total
from lumira.common.state_machine import (
    CONTENT_STATUSES,
    GENERATION_SOURCE_STATUSES,
    OrderStatus,
    require_status,
    validate_transition,
)
from lumira.services.orders.models import (
    Order,
    OrderFile,
    OrderSequence,
    OrderTimeline,
    User,
)


ORDER_NUMBER_PREFIX = "LU"
NON_TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.AWAITING_VALIDATION,
    }
)


def order_number_prefix(now: datetime) -> str:
    """Date prefix `LU<YY><MM><DD>` shared by all orders created that day."""

    return f"{ORDER_NUMBER_PREFIX}{now:%y%m%d}"


class OrderStore:
    """Reads and guarded writes over `orders` and their satellite tables."""

    def __init__(self, session_factory, service_name: str = "lumira-orders") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    # ------------------------------------------------------------------ reads

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            return order

    def get_order_with_user(self, order_id: str) -> tuple[Order, User | None]:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            return order, db.get(User, order.user_id)

    def find_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order).where(Order.payment_intent_id == payment_intent_id)
            ).scalar_one_or_none()

    def list_orders(self, status: str | None = None, limit: int = 100) -> list[Order]:
        with self.session_factory() as db:
            query = select(Order).order_by(Order.created_at.desc()).limit(limit)
            if status:
                query = query.where(Order.status == status)
            return list(db.execute(query).scalars().all())

    def get_timeline(self, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.created_at.asc())
                )
                .scalars()
                .all()
            )

    def list_files(self, order_id: str) -> list[OrderFile]:
        with self.session_factory() as db:
            return list(db.execute(select(OrderFile).where(OrderFile.order_id == order_id)).scalars().all())

    # --------------------------------------------------------------- creation

    def upsert_user(self, db, email: str, first_name: str = "", last_name: str = "") -> User:
        """Return the user for `email`, creating it on first sight."""

        user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is not None:
            return user
        user = User(email=email, first_name=first_name, last_name=last_name, profile={})
        db.add(user)
        db.flush()
        return user

    def _next_order_number(self, db, now: datetime) -> str:
        """Allocate the next sequence for today's prefix inside the caller's transaction."""

        prefix = order_number_prefix(now)
        result = db.execute(
            update(OrderSequence)
            .where(OrderSequence.prefix == prefix)
            .values(last_value=OrderSequence.last_value + 1)
        )
        if result.rowcount == 0:
            db.add(OrderSequence(prefix=prefix, last_value=1))
            db.flush()
        value = db.execute(
            select(OrderSequence.last_value).where(OrderSequence.prefix == prefix)
        ).scalar_one()
        return f"{prefix}{value:03d}"

    def create_order(
        self,
        *,
        email: str,
        first_name: str = "",
        last_name: str = "",
        level: int = 1,
        amount_cents: int,
        currency: str,
        form_data: dict[str, Any] | None = None,
        status: str = OrderStatus.PENDING,
        payment_intent_id: str | None = None,
        reason: str = "order_created",
        event_id: str | None = None,
        now: datetime | None = None,
        max_attempts: int = 3,
    ) -> Order:
        """Upsert the user and insert a new order with a fresh order number.

        A concurrent first insert of the day's sequence row surfaces as an
        integrity error; the whole unit is retried.
        """

        if status not in {OrderStatus.PENDING, OrderStatus.PAID}:
            raise ConflictError(f"orders cannot be created in status {status}")
        created_at = now or datetime.now(timezone.utc)

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.session_factory() as db:
                    user = self.upsert_user(db, email, first_name, last_name)
                    order = Order(
                        order_number=self._next_order_number(db, created_at),
                        user_id=user.id,
                        user_email=email,
                        user_name=f"{first_name} {last_name}".strip(),
                        status=status,
                        state_version=0,
                        level=level,
                        amount_cents=amount_cents,
                        currency=currency.lower(),
                        form_data=form_data or {},
                        payment_intent_id=payment_intent_id,
                        revision_count=0,
                        created_at=created_at,
                        paid_at=created_at if status == OrderStatus.PAID else None,
                    )
                    db.add(order)
                    db.flush()
                    db.add(
                        OrderTimeline(
                            order_id=order.id,
                            from_state=None,
                            to_state=status,
                            reason=reason,
                            event_id=event_id,
                        )
                    )
                    db.commit()
                    logger.info(
                        "order_created order_id=%s order_number=%s status=%s",
                        order.id,
                        order.order_number,
                        status,
                    )
                    return order
            except IntegrityError as exc:
                if attempt == max_attempts:
                    raise
                logger.warning("order_create_retry attempt=%s/%s error=%s", attempt, max_attempts, exc)

    def set_payment_intent(self, order_id: str, payment_intent_id: str) -> None:
        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                .values(payment_intent_id=payment_intent_id, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount != 1:
                raise ConflictError(f"order {order_id} is no longer awaiting payment")
            db.commit()

    # ---------------------------------------------------------- transitions

    def _apply(
        self,
        db,
        order: Order,
        new_status: str,
        reason: str,
        event_id: str | None,
        values: dict[str, Any] | None = None,
    ) -> None:
        """Apply one validated transition with optimistic concurrency.

        The write is guarded by `(id, status, state_version)` so a stale read
        can never overwrite a concurrent update.
        """

        validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        now = datetime.now(timezone.utc)

        changes: dict[str, Any] = dict(values or {})
        changes.update(status=new_status, state_version=current_version + 1, updated_at=now)
        if from_status == OrderStatus.PENDING and new_status == OrderStatus.PAID:
            changes["paid_at"] = now
        if new_status == OrderStatus.COMPLETED:
            changes["delivered_at"] = now
        if new_status not in CONTENT_STATUSES:
            changes["generated_content"] = None

        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == from_status,
                Order.state_version == current_version,
            )
            .values(**changes)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"concurrent update on order {order.id} (expected {from_status} v{current_version})"
            )

        for key, value in changes.items():
            set_committed_value(order, key, value)
        db.add(
            OrderTimeline(
                order_id=order.id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                event_id=event_id,
            )
        )
        order_transitions_total.labels(
            service=self.service_name, from_status=from_status, to_status=new_status
        ).inc()
        logger.info(
            "order_transition order_id=%s from=%s to=%s reason=%s",
            order.id,
            from_status,
            new_status,
            reason,
        )

    def transition(
        self,
        order_id: str,
        to_status: str,
        reason: str,
        *,
        allowed_from: set[str] | frozenset[str] | None = None,
        expected_version: int | None = None,
        values: dict[str, Any] | None = None,
        event_id: str | None = None,
        via: str | None = None,
        bump_revision: bool = False,
        attachments: list[dict[str, Any]] | None = None,
    ) -> Order:
        """Move an order to `to_status` if its current status allows it.

        `via` names an intermediate status applied first in the same
        transaction when the order is not already there. `attachments` are
        file records written atomically with the transition.
        """

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            if allowed_from is not None:
                require_status(order.status, allowed_from, order_id)
            if expected_version is not None and order.state_version != expected_version:
                raise ConflictError(
                    f"order {order_id} was modified concurrently "
                    f"(expected version {expected_version}, found {order.state_version})"
                )

            if via is not None and order.status != via:
                self._apply(db, order, via, reason, event_id)
            step_values = dict(values or {})
            if bump_revision:
                step_values["revision_count"] = order.revision_count + 1
            self._apply(db, order, to_status, reason, event_id, step_values)
            for attachment in attachments or []:
                db.add(OrderFile(order_id=order.id, **attachment))
            db.commit()
            return order

    def claim_for_generation(self, order_id: str, reason: str = "generation_started") -> Order:
        """Take the generation lease on an order and return it at the claimed version.

        PAID orders move to PROCESSING; orders already in PROCESSING get their
        version bumped so any earlier run's final write is rejected.
        """

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            require_status(order.status, GENERATION_SOURCE_STATUSES, order_id)
            if order.status == OrderStatus.PAID:
                self._apply(db, order, OrderStatus.PROCESSING, reason, None)
            else:
                current_version = order.state_version
                now = datetime.now(timezone.utc)
                result = db.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status == OrderStatus.PROCESSING,
                        Order.state_version == current_version,
                    )
                    .values(state_version=current_version + 1, updated_at=now)
                )
                if result.rowcount != 1:
                    raise ConflictError(f"concurrent update on order {order.id}")
                set_committed_value(order, "state_version", current_version + 1)
                set_committed_value(order, "updated_at", now)
                logger.info("generation_reclaimed order_id=%s version=%s", order.id, order.state_version)
            db.commit()
            return order

    def mark_failed(
        self,
        order_id: str,
        error_log: str,
        *,
        reason: str = "failed",
        expected_version: int | None = None,
    ) -> Order:
        """Compensating transition: any non-terminal status to FAILED with an error log."""

        return self.transition(
            order_id,
            OrderStatus.FAILED,
            reason,
            allowed_from=NON_TERMINAL_STATUSES,
            expected_version=expected_version,
            values={"error_log": error_log},
        )

    def record_instructions(self, order_id: str, instructions: str | None) -> None:
        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(expert_instructions=instructions, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount != 1:
                raise NotFoundError(f"order {order_id} not found")
            db.commit()

    # ----------------------------------------------------------------- purge

    def purge_order(self, order_id: str) -> str:
        """Administrative hard delete cascading to files and timeline rows."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            order_number = order.order_number
            db.execute(delete(OrderFile).where(OrderFile.order_id == order_id))
            db.execute(delete(OrderTimeline).where(OrderTimeline.order_id == order_id))
            db.execute(delete(Order).where(Order.id == order_id))
            db.commit()
            logger.info("order_purged order_id=%s order_number=%s", order_id, order_number)
            return order_number
