"""Built-in workflows for the practice-management domains.

Each entity type gets one definition: its status enum, start status, terminal
statuses and the transition rules between them. Status names follow the
practice platform's existing enums so records can be migrated as-is.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from orthoflow.workflow.rules import ANY_STATUS, Precondition, RuleTable, TransitionRule, WorkflowDefinition

MAX_PAYMENT_RETRIES = 3

NOTIFY = "notify"
RECALCULATE_BALANCE = "recalculate-balance"
CREATE_PATIENT_RECORD = "create-patient-record"


def _rules(
    entity_type: str,
    action: str,
    from_statuses: Iterable[str],
    to_status: str,
    roles: Iterable[str],
    **options: Any,
) -> list[TransitionRule]:
    allowed_roles = frozenset(roles)
    return [
        TransitionRule(
            entity_type=entity_type,
            from_status=from_status,
            action=action,
            to_status=to_status,
            allowed_roles=allowed_roles,
            **options,
        )
        for from_status in from_statuses
    ]


def _decimal(payload: Mapping[str, Any], key: str) -> Decimal:
    return Decimal(str(payload[key]))


refund_within_payment_amount = Precondition(
    name="refund_within_payment_amount",
    check=lambda payload: Decimal("0") < _decimal(payload, "refundAmount") <= _decimal(payload, "amount"),
)
partial_refund_below_payment_amount = Precondition(
    name="partial_refund_below_payment_amount",
    check=lambda payload: Decimal("0") < _decimal(payload, "refundAmount") < _decimal(payload, "amount"),
)
retry_limit_not_reached = Precondition(
    name="retry_limit_not_reached",
    check=lambda payload: int(payload.get("retryCount") or 0) < MAX_PAYMENT_RETRIES,
)
refund_within_original_payment = Precondition(
    name="refund_within_original_payment",
    check=lambda payload: Decimal("0") < _decimal(payload, "amount") <= _decimal(payload, "paymentAmount"),
)


FRONT_DESK = "front_desk"
COORDINATOR = "treatment_coordinator"
DOCTOR = "doctor"
CLINICAL_STAFF = "clinical_staff"
LAB = "lab"
LAB_COORDINATOR = "lab_coordinator"
BILLING = "billing"
BILLING_MANAGER = "billing_manager"
SYSTEM = "system"
ADMIN = "admin"


def lead_workflow() -> WorkflowDefinition:
    t = "lead"
    intake = (FRONT_DESK, COORDINATOR, ADMIN)
    coordination = (COORDINATOR, ADMIN)
    rules = [
        *_rules(t, "contact", ["NEW"], "CONTACTED", intake),
        *_rules(
            t,
            "schedule_consultation",
            ["NEW", "CONTACTED"],
            "CONSULTATION_SCHEDULED",
            intake,
            required_fields=("consultationAt",),
            side_effects=(NOTIFY,),
        ),
        *_rules(t, "complete_consultation", ["CONSULTATION_SCHEDULED"], "CONSULTATION_COMPLETED", (COORDINATOR, DOCTOR, ADMIN)),
        *_rules(t, "await_decision", ["CONSULTATION_COMPLETED"], "PENDING_DECISION", coordination),
        *_rules(
            t,
            "accept_treatment",
            ["CONSULTATION_COMPLETED", "PENDING_DECISION"],
            "TREATMENT_ACCEPTED",
            coordination,
            side_effects=(NOTIFY,),
        ),
        *_rules(
            t,
            "convert",
            ["TREATMENT_ACCEPTED"],
            "CONVERTED",
            coordination,
            required_fields=("patientId",),
            side_effects=(NOTIFY, CREATE_PATIENT_RECORD),
        ),
        *_rules(t, "mark_lost", [ANY_STATUS], "LOST", intake, required_fields=("lostReason",)),
        *_rules(
            t,
            "reactivate",
            ["LOST"],
            "CONTACTED",
            coordination,
            allow_from_terminal=True,
            side_effects=(NOTIFY,),
        ),
    ]
    return WorkflowDefinition(
        entity_type=t,
        label="Lead",
        statuses=(
            "NEW",
            "CONTACTED",
            "CONSULTATION_SCHEDULED",
            "CONSULTATION_COMPLETED",
            "PENDING_DECISION",
            "TREATMENT_ACCEPTED",
            "CONVERTED",
            "LOST",
        ),
        initial_status="NEW",
        terminal_statuses=frozenset({"CONVERTED", "LOST"}),
        rules=tuple(rules),
    )


def payment_workflow() -> WorkflowDefinition:
    t = "payment"
    processors = (BILLING, SYSTEM, ADMIN)
    managers = (BILLING_MANAGER, ADMIN)
    rules = [
        *_rules(t, "process", ["PENDING"], "PROCESSING", processors),
        *_rules(
            t,
            "complete",
            ["PENDING", "PROCESSING"],
            "COMPLETED",
            processors,
            side_effects=(NOTIFY, RECALCULATE_BALANCE),
        ),
        *_rules(t, "fail", ["PROCESSING"], "FAILED", processors, required_fields=("failureReason",), side_effects=(NOTIFY,)),
        *_rules(
            t,
            "retry",
            ["FAILED"],
            "PROCESSING",
            processors,
            preconditions=(retry_limit_not_reached,),
            increments=("retryCount",),
        ),
        *_rules(t, "cancel", ["PENDING", "PROCESSING"], "CANCELLED", (BILLING, BILLING_MANAGER, ADMIN), required_fields=("cancelReason",)),
        *_rules(
            t,
            "refund",
            [ANY_STATUS],
            "REFUNDED",
            managers,
            required_fields=("refundReason", "refundAmount", "amount"),
            preconditions=(refund_within_payment_amount,),
            side_effects=(NOTIFY, RECALCULATE_BALANCE),
        ),
        *_rules(
            t,
            "partial_refund",
            [ANY_STATUS],
            "PARTIALLY_REFUNDED",
            managers,
            required_fields=("refundReason", "refundAmount", "amount"),
            preconditions=(partial_refund_below_payment_amount,),
            side_effects=(NOTIFY, RECALCULATE_BALANCE),
        ),
        *_rules(
            t,
            "dispute",
            ["COMPLETED", "PARTIALLY_REFUNDED"],
            "DISPUTED",
            (BILLING_MANAGER, SYSTEM, ADMIN),
            required_fields=("disputeReason",),
            side_effects=(NOTIFY,),
        ),
        *_rules(t, "resolve_dispute", ["DISPUTED"], "COMPLETED", managers, side_effects=(RECALCULATE_BALANCE,)),
    ]
    return WorkflowDefinition(
        entity_type=t,
        label="Payment",
        statuses=(
            "PENDING",
            "PROCESSING",
            "COMPLETED",
            "FAILED",
            "CANCELLED",
            "REFUNDED",
            "PARTIALLY_REFUNDED",
            "DISPUTED",
        ),
        initial_status="PENDING",
        terminal_statuses=frozenset({"CANCELLED", "REFUNDED"}),
        rules=tuple(rules),
    )


def refund_workflow() -> WorkflowDefinition:
    t = "refund"
    staff = (BILLING, BILLING_MANAGER, ADMIN)
    managers = (BILLING_MANAGER, ADMIN)
    rules = [
        *_rules(
            t,
            "approve",
            ["PENDING"],
            "APPROVED",
            managers,
            required_fields=("paymentId", "amount", "paymentAmount"),
            preconditions=(refund_within_original_payment,),
        ),
        *_rules(t, "reject", ["PENDING"], "REJECTED", managers, required_fields=("rejectionReason",), side_effects=(NOTIFY,)),
        *_rules(t, "process", ["APPROVED"], "PROCESSING", (BILLING, BILLING_MANAGER, SYSTEM, ADMIN)),
        *_rules(
            t,
            "complete",
            ["APPROVED", "PROCESSING"],
            "COMPLETED",
            (BILLING, SYSTEM, ADMIN),
            side_effects=(NOTIFY, RECALCULATE_BALANCE),
        ),
        *_rules(t, "fail", ["PROCESSING"], "FAILED", (BILLING, SYSTEM, ADMIN), required_fields=("failureReason",)),
        *_rules(t, "retry", ["FAILED"], "PROCESSING", staff),
        *_rules(t, "cancel", ["PENDING", "APPROVED"], "CANCELLED", staff, required_fields=("cancelReason",)),
    ]
    return WorkflowDefinition(
        entity_type=t,
        label="Refund",
        statuses=("PENDING", "APPROVED", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", "REJECTED"),
        initial_status="PENDING",
        terminal_statuses=frozenset({"COMPLETED", "CANCELLED", "REJECTED"}),
        rules=tuple(rules),
    )


def lab_order_workflow() -> WorkflowDefinition:
    t = "lab_order"
    clinic = (CLINICAL_STAFF, LAB_COORDINATOR, DOCTOR, ADMIN)
    lab_side = (LAB, LAB_COORDINATOR, SYSTEM, ADMIN)
    rules = [
        *_rules(t, "submit", ["DRAFT"], "SUBMITTED", clinic, required_fields=("vendorId",), side_effects=(NOTIFY,)),
        *_rules(t, "acknowledge", ["SUBMITTED"], "ACKNOWLEDGED", lab_side),
        *_rules(t, "start", ["ACKNOWLEDGED"], "IN_PROGRESS", lab_side),
        *_rules(
            t,
            "hold",
            ["SUBMITTED", "ACKNOWLEDGED", "IN_PROGRESS"],
            "ON_HOLD",
            (LAB, LAB_COORDINATOR, ADMIN),
            required_fields=("holdReason",),
            side_effects=(NOTIFY,),
        ),
        *_rules(t, "resume", ["ON_HOLD"], "IN_PROGRESS", (LAB, LAB_COORDINATOR, ADMIN)),
        *_rules(t, "complete", ["IN_PROGRESS"], "COMPLETED", lab_side),
        *_rules(
            t,
            "ship",
            ["COMPLETED"],
            "SHIPPED",
            lab_side,
            required_fields=("trackingNumber", "carrier"),
            side_effects=(NOTIFY,),
        ),
        *_rules(t, "deliver", ["SHIPPED"], "DELIVERED", (LAB_COORDINATOR, SYSTEM, ADMIN)),
        *_rules(t, "receive", ["SHIPPED", "DELIVERED"], "RECEIVED", (CLINICAL_STAFF, LAB_COORDINATOR, ADMIN), side_effects=(NOTIFY,)),
        *_rules(
            t,
            "request_remake",
            ["RECEIVED"],
            "REMAKE_REQUESTED",
            (DOCTOR, LAB_COORDINATOR, ADMIN),
            required_fields=("remakeReason",),
            allow_from_terminal=True,
            side_effects=(NOTIFY,),
        ),
        *_rules(t, "resubmit", ["REMAKE_REQUESTED"], "SUBMITTED", (LAB_COORDINATOR, ADMIN), side_effects=(NOTIFY,)),
        *_rules(
            t,
            "cancel",
            ["DRAFT", "SUBMITTED", "ACKNOWLEDGED", "IN_PROGRESS", "ON_HOLD"],
            "CANCELLED",
            (CLINICAL_STAFF, LAB_COORDINATOR, ADMIN),
            required_fields=("cancelReason",),
            side_effects=(NOTIFY,),
        ),
    ]
    return WorkflowDefinition(
        entity_type=t,
        label="Lab order",
        statuses=(
            "DRAFT",
            "SUBMITTED",
            "ACKNOWLEDGED",
            "IN_PROGRESS",
            "ON_HOLD",
            "COMPLETED",
            "SHIPPED",
            "DELIVERED",
            "RECEIVED",
            "REMAKE_REQUESTED",
            "CANCELLED",
        ),
        initial_status="DRAFT",
        terminal_statuses=frozenset({"RECEIVED", "CANCELLED"}),
        rules=tuple(rules),
    )


def treatment_plan_workflow() -> WorkflowDefinition:
    t = "treatment_plan"
    planners = (DOCTOR, COORDINATOR, ADMIN)
    providers = (DOCTOR, ADMIN)
    rules = [
        *_rules(t, "present", ["DRAFT"], "PRESENTED", planners, required_fields=("primaryProviderId",)),
        *_rules(t, "accept", ["PRESENTED"], "ACCEPTED", planners, required_fields=("acceptedAt",), side_effects=(NOTIFY,)),
        *_rules(t, "activate", ["ACCEPTED"], "ACTIVE", providers, required_fields=("startDate",)),
        *_rules(t, "hold", ["ACTIVE"], "ON_HOLD", planners, required_fields=("holdReason",), side_effects=(NOTIFY,)),
        *_rules(t, "resume", ["ON_HOLD"], "ACTIVE", planners),
        *_rules(t, "complete", ["ACTIVE"], "COMPLETED", providers, side_effects=(NOTIFY,)),
        *_rules(
            t,
            "discontinue",
            [ANY_STATUS],
            "DISCONTINUED",
            providers,
            required_fields=("discontinueReason",),
            side_effects=(NOTIFY,),
        ),
        *_rules(
            t,
            "transfer",
            ["ACTIVE", "ON_HOLD"],
            "TRANSFERRED",
            providers,
            required_fields=("transferClinic",),
            side_effects=(NOTIFY,),
        ),
        *_rules(
            t,
            "reopen",
            ["COMPLETED"],
            "ACTIVE",
            providers,
            required_fields=("reopenReason",),
            allow_from_terminal=True,
        ),
    ]
    return WorkflowDefinition(
        entity_type=t,
        label="Treatment plan",
        statuses=("DRAFT", "PRESENTED", "ACCEPTED", "ACTIVE", "ON_HOLD", "COMPLETED", "DISCONTINUED", "TRANSFERRED"),
        initial_status="DRAFT",
        terminal_statuses=frozenset({"COMPLETED", "DISCONTINUED", "TRANSFERRED"}),
        rules=tuple(rules),
    )


def default_rule_table() -> RuleTable:
    return RuleTable(
        [
            lead_workflow(),
            payment_workflow(),
            refund_workflow(),
            lab_order_workflow(),
            treatment_plan_workflow(),
        ]
    )
