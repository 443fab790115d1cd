from __future__ import annotations

import uuid
from typing import Any

import pytest

from orthoflow.workflow.definitions import default_rule_table
from orthoflow.workflow.errors import (
    ForbiddenTransitionError,
    NoSuchTransitionError,
    PreconditionFailedError,
    TerminalStateError,
)
from orthoflow.workflow.models import WorkflowEntity
from orthoflow.workflow.store import EntityStore
from orthoflow.workflow.validator import TransitionValidator, is_empty


@pytest.fixture()
def validator() -> TransitionValidator:
    return TransitionValidator(EntityStore(default_rule_table()))


def _entity(entity_type: str, status: str, payload: dict[str, Any] | None = None) -> WorkflowEntity:
    return WorkflowEntity(
        id=uuid.uuid4(),
        entity_type=entity_type,
        status=status,
        payload=payload or {},
        row_version=4,
    )


def test_contact_new_lead(validator: TransitionValidator) -> None:
    entity = _entity("lead", "NEW")

    plan = validator.evaluate(entity, "contact", ["front_desk"])

    assert plan.from_status == "NEW"
    assert plan.to_status == "CONTACTED"
    assert plan.expected_version == 4
    assert plan.entity_id == entity.id


def test_roles_are_matched_case_insensitively(validator: TransitionValidator) -> None:
    plan = validator.evaluate(_entity("lead", "NEW"), "contact", ["Front_Desk"])
    assert plan.to_status == "CONTACTED"


def test_terminal_lead_rejects_contact(validator: TransitionValidator) -> None:
    with pytest.raises(TerminalStateError) as exc_info:
        validator.evaluate(_entity("lead", "LOST"), "contact", ["front_desk"])

    assert exc_info.value.code == "TERMINAL_STATE"
    assert exc_info.value.details["status"] == "LOST"


def test_unknown_action_from_open_status(validator: TransitionValidator) -> None:
    with pytest.raises(NoSuchTransitionError):
        validator.evaluate(_entity("lab_order", "ACKNOWLEDGED"), "acknowledge", ["lab"])


def test_role_outside_allowed_roles_is_forbidden(validator: TransitionValidator) -> None:
    with pytest.raises(ForbiddenTransitionError) as exc_info:
        validator.evaluate(_entity("payment", "PENDING"), "refund", ["front_desk"])

    assert "billing_manager" in exc_info.value.details["allowed_roles"]


def test_refund_without_reason_names_the_missing_field(validator: TransitionValidator) -> None:
    entity = _entity("payment", "PENDING", {"amount": 250, "refundAmount": 100})

    with pytest.raises(PreconditionFailedError) as exc_info:
        validator.evaluate(entity, "refund", ["billing_manager"])

    assert exc_info.value.missing_fields == ["refundReason"]
    assert exc_info.value.failed_rules == []


def test_blank_values_count_as_missing(validator: TransitionValidator) -> None:
    entity = _entity("payment", "PENDING", {"amount": 250, "refundAmount": 100, "refundReason": "   "})

    with pytest.raises(PreconditionFailedError) as exc_info:
        validator.evaluate(entity, "refund", ["billing_manager"])

    assert exc_info.value.missing_fields == ["refundReason"]


def test_field_updates_satisfy_required_fields(validator: TransitionValidator) -> None:
    entity = _entity("payment", "COMPLETED", {"amount": 250})

    plan = validator.evaluate(
        entity,
        "refund",
        ["billing_manager"],
        {"refundReason": "duplicate charge", "refundAmount": 250},
    )

    assert plan.to_status == "REFUNDED"
    assert plan.payload["refundReason"] == "duplicate charge"
    assert entity.payload == {"amount": 250}


def test_refund_larger_than_payment_fails_precondition(validator: TransitionValidator) -> None:
    entity = _entity("payment", "COMPLETED", {"amount": 250})

    with pytest.raises(PreconditionFailedError) as exc_info:
        validator.evaluate(
            entity,
            "refund",
            ["billing_manager"],
            {"refundReason": "goodwill", "refundAmount": 300},
        )

    assert exc_info.value.missing_fields == []
    assert exc_info.value.failed_rules == ["refund_within_payment_amount"]


def test_refund_of_refunded_payment_is_terminal(validator: TransitionValidator) -> None:
    entity = _entity(
        "payment",
        "REFUNDED",
        {"amount": 250, "refundAmount": 250, "refundReason": "duplicate charge"},
    )

    with pytest.raises(TerminalStateError):
        validator.evaluate(entity, "refund", ["billing_manager"])


def test_whitelisted_rule_leaves_terminal_status(validator: TransitionValidator) -> None:
    plan = validator.evaluate(_entity("lead", "LOST", {"lostReason": "price"}), "reactivate", ["treatment_coordinator"])
    assert plan.to_status == "CONTACTED"

    with pytest.raises(ForbiddenTransitionError):
        validator.evaluate(_entity("lead", "LOST"), "reactivate", ["front_desk"])


def test_retry_increments_counter_until_limit(validator: TransitionValidator) -> None:
    plan = validator.evaluate(_entity("payment", "FAILED", {"retryCount": 1}), "retry", ["billing"])
    assert plan.payload["retryCount"] == 2

    with pytest.raises(PreconditionFailedError) as exc_info:
        validator.evaluate(_entity("payment", "FAILED", {"retryCount": 3}), "retry", ["billing"])
    assert exc_info.value.failed_rules == ["retry_limit_not_reached"]


def test_available_actions_respect_roles_and_terminal_status(validator: TransitionValidator) -> None:
    actions = validator.available_actions(_entity("lead", "NEW"), ["front_desk"])
    by_name = {item.action: item for item in actions}

    assert set(by_name) == {"contact", "mark_lost", "schedule_consultation"}
    assert by_name["schedule_consultation"].missing_fields == ("consultationAt",)

    lost_actions = validator.available_actions(_entity("lead", "LOST"), ["admin"])
    assert [item.action for item in lost_actions] == ["reactivate"]


def test_is_empty() -> None:
    assert is_empty(None)
    assert is_empty("")
    assert is_empty("  ")
    assert is_empty([])
    assert is_empty({})
    assert not is_empty(0)
    assert not is_empty(False)
    assert not is_empty("x")


@pytest.mark.parametrize(
    ("roles", "field_updates"),
    [
        (["billing_manager"], {}),
        (["billing"], {"refundReason": "duplicate charge", "refundAmount": 50}),
    ],
)
def test_cancelled_payment_is_locked_before_role_and_field_checks(
    validator: TransitionValidator,
    roles: list[str],
    field_updates: dict[str, Any],
) -> None:
    entity = _entity("payment", "CANCELLED", {"amount": 250})

    with pytest.raises(TerminalStateError) as exc_info:
        validator.evaluate(entity, "refund", roles, field_updates)

    assert exc_info.value.details["status"] == "CANCELLED"


def test_wildcard_rule_from_converted_lead_is_terminal(validator: TransitionValidator) -> None:
    with pytest.raises(TerminalStateError):
        validator.evaluate(_entity("lead", "CONVERTED"), "mark_lost", ["front_desk"])
