"""Unit tests for core order state-machine guardrails."""

import pytest

from lumira.common.errors import ConflictError, InvalidTransitionError
from lumira.common.state_machine import ALLOWED_TRANSITIONS, OrderStatus, require_status, validate_transition


def test_valid_transition():
    """Sanity check: the happy path is legal step by step."""

    path = [
        OrderStatus.PENDING,
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.AWAITING_VALIDATION,
        OrderStatus.COMPLETED,
    ]
    for current, new in zip(path, path[1:]):
        validate_transition(current, new)


def test_invalid_transition():
    """Skipping payment must raise to protect pipeline correctness."""

    with pytest.raises(InvalidTransitionError):
        validate_transition(OrderStatus.PENDING, OrderStatus.PROCESSING)


def test_invalid_transition_is_a_conflict():
    with pytest.raises(ConflictError):
        validate_transition(OrderStatus.COMPLETED, OrderStatus.PROCESSING)


def test_rejection_returns_to_processing():
    validate_transition(OrderStatus.AWAITING_VALIDATION, OrderStatus.PROCESSING)


def test_every_non_terminal_status_can_fail():
    for status in (
        OrderStatus.PENDING,
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.AWAITING_VALIDATION,
    ):
        validate_transition(status, OrderStatus.FAILED)


def test_failed_only_leaves_through_regeneration_or_refund():
    assert ALLOWED_TRANSITIONS[OrderStatus.FAILED] == {OrderStatus.PROCESSING, OrderStatus.REFUNDED}
    assert ALLOWED_TRANSITIONS[OrderStatus.REFUNDED] == set()


def test_require_status_rejects_outside_source_set():
    require_status(OrderStatus.PAID, {OrderStatus.PAID, OrderStatus.PROCESSING}, "o1")
    with pytest.raises(ConflictError, match="COMPLETED"):
        require_status(OrderStatus.COMPLETED, {OrderStatus.PAID, OrderStatus.PROCESSING}, "o1")
