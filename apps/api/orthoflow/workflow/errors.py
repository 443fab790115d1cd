from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for errors surfaced by the workflow engine."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: object | None = None) -> None:
        if entity_id is None:
            message = f"Unknown entity type '{entity_type}'"
        else:
            message = f"{entity_type} '{entity_id}' not found"
        super().__init__(message, entity_type=entity_type, entity_id=None if entity_id is None else str(entity_id))
        self.entity_type = entity_type
        self.entity_id = entity_id


class NoSuchTransitionError(WorkflowError):
    code = "NO_SUCH_TRANSITION"

    def __init__(self, entity_type: str, status: str, action: str) -> None:
        super().__init__(
            f"Action '{action}' is not available for {entity_type} in status {status}",
            entity_type=entity_type,
            status=status,
            action=action,
        )
        self.status = status
        self.action = action


class ForbiddenTransitionError(WorkflowError):
    code = "FORBIDDEN"

    def __init__(self, entity_type: str, action: str, allowed_roles: list[str]) -> None:
        super().__init__(
            f"Your role is not permitted to {action} a {entity_type}",
            entity_type=entity_type,
            action=action,
            allowed_roles=sorted(allowed_roles),
        )


class PreconditionFailedError(WorkflowError):
    code = "PRECONDITION_FAILED"

    def __init__(self, action: str, missing_fields: list[str], failed_rules: list[str] | None = None) -> None:
        self.missing_fields = sorted(set(missing_fields))
        self.failed_rules = list(failed_rules or [])
        parts: list[str] = []
        if self.missing_fields:
            parts.append(f"missing required fields: {', '.join(self.missing_fields)}")
        if self.failed_rules:
            parts.append(f"failed checks: {', '.join(self.failed_rules)}")
        super().__init__(
            f"Cannot {action}: {'; '.join(parts)}",
            action=action,
            missing_fields=self.missing_fields,
            failed_rules=self.failed_rules,
        )


class TerminalStateError(WorkflowError):
    code = "TERMINAL_STATE"

    def __init__(self, entity_type: str, status: str, action: str) -> None:
        super().__init__(
            f"This {entity_type.replace('_', ' ')} is {status} and cannot be changed by '{action}'",
            entity_type=entity_type,
            status=status,
            action=action,
        )
        self.status = status


class ConcurrentModificationError(WorkflowError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: object, *, cause: WorkflowError | None = None) -> None:
        details: dict[str, Any] = {"entity_type": entity_type, "entity_id": str(entity_id)}
        if cause is not None:
            details["cause"] = {"code": cause.code, "message": cause.message}
        super().__init__(f"{entity_type} '{entity_id}' was modified by another request", **details)
        self.cause = cause


class IdempotencyConflictError(WorkflowError):
    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            "Idempotency key was already used with a different request",
            idempotency_key=idempotency_key,
        )
