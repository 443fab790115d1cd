from orthoflow.workflow.api import entities_router, workflows_router
from orthoflow.workflow.errors import (
    ConcurrentModificationError,
    ForbiddenTransitionError,
    IdempotencyConflictError,
    NoSuchTransitionError,
    NotFoundError,
    PreconditionFailedError,
    TerminalStateError,
    WorkflowError,
)
from orthoflow.workflow.models import NotificationIntent, TransitionRecord, WorkflowEntity
from orthoflow.workflow.rules import ANY_STATUS, Precondition, RuleTable, TransitionRule, WorkflowDefinition
from orthoflow.workflow.service import WorkflowService, build_workflow_service, workflow_service

__all__ = [
    "entities_router",
    "workflows_router",
    "WorkflowError",
    "NotFoundError",
    "NoSuchTransitionError",
    "ForbiddenTransitionError",
    "PreconditionFailedError",
    "TerminalStateError",
    "ConcurrentModificationError",
    "IdempotencyConflictError",
    "WorkflowEntity",
    "TransitionRecord",
    "NotificationIntent",
    "ANY_STATUS",
    "Precondition",
    "TransitionRule",
    "WorkflowDefinition",
    "RuleTable",
    "WorkflowService",
    "build_workflow_service",
    "workflow_service",
]
