from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from orthoflow.context import get_correlation_id
from orthoflow.core.auth import AuthUser, get_current_user as get_auth_user
from orthoflow.core.database import get_db
from orthoflow.platform.security.context import AuthContext
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
from orthoflow.workflow.schemas import (
    AvailableActionRead,
    EntityCreate,
    EntityRead,
    EntityUpdate,
    TransitionRecordRead,
    TransitionRequest,
    TransitionResult,
    WorkflowDefinitionRead,
)
from orthoflow.workflow.service import workflow_service

entities_router = APIRouter(prefix="/entities", tags=["workflow.entities"])
workflows_router = APIRouter(prefix="/workflows", tags=["workflow.definitions"])

_STATUS_BY_ERROR: dict[type[WorkflowError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NoSuchTransitionError: status.HTTP_409_CONFLICT,
    ForbiddenTransitionError: status.HTTP_403_FORBIDDEN,
    PreconditionFailedError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    TerminalStateError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    IdempotencyConflictError: status.HTTP_409_CONFLICT,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def workflow_error_response(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            status_code = _STATUS_BY_ERROR[error_type]
            break
    return error_response(
        request,
        status_code=status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_workflow_auth_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return AuthContext(
        user_id=auth_user.sub,
        roles=[str(role) for role in auth_user.roles],
        correlation_id=correlation_id,
    )


@workflows_router.get("", response_model=list[WorkflowDefinitionRead])
def list_workflows() -> list[WorkflowDefinitionRead]:
    return workflow_service.list_definitions()


@workflows_router.get("/{entity_type}", response_model=WorkflowDefinitionRead)
def get_workflow(request: Request, entity_type: str) -> WorkflowDefinitionRead | JSONResponse:
    try:
        return workflow_service.get_definition(entity_type)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.post("/{entity_type}", response_model=EntityRead, status_code=status.HTTP_201_CREATED)
def create_entity(
    request: Request,
    entity_type: str,
    dto: EntityCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_workflow_auth_context),
) -> EntityRead | JSONResponse:
    try:
        return workflow_service.create_entity(db, ctx, entity_type, dto)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.get("/{entity_type}", response_model=list[EntityRead])
def list_entities(
    request: Request,
    entity_type: str,
    status_filter: str | None = Query(default=None, alias="status"),
    owner_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[EntityRead] | JSONResponse:
    try:
        return workflow_service.list_entities(
            db,
            entity_type,
            status=status_filter,
            owner_id=owner_id,
            limit=limit,
            offset=offset,
        )
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.get("/{entity_type}/{entity_id}", response_model=EntityRead)
def get_entity(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> EntityRead | JSONResponse:
    try:
        return workflow_service.get_entity(db, entity_type, entity_id)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.patch("/{entity_type}/{entity_id}", response_model=EntityRead)
def update_entity(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    dto: EntityUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_workflow_auth_context),
) -> EntityRead | JSONResponse:
    try:
        return workflow_service.update_entity(db, ctx, entity_type, entity_id, dto)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.get("/{entity_type}/{entity_id}/actions", response_model=list[AvailableActionRead])
def list_available_actions(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_workflow_auth_context),
) -> list[AvailableActionRead] | JSONResponse:
    try:
        return workflow_service.available_actions(db, ctx, entity_type, entity_id)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.post("/{entity_type}/{entity_id}/transitions", response_model=TransitionResult)
def request_transition(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_workflow_auth_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> TransitionResult | JSONResponse:
    try:
        return workflow_service.request_transition(
            db,
            ctx,
            entity_type,
            entity_id,
            dto,
            idempotency_key=idempotency_key,
        )
    except WorkflowError as exc:
        return workflow_error_response(request, exc)


@entities_router.get("/{entity_type}/{entity_id}/transitions", response_model=list[TransitionRecordRead])
def list_transitions(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> list[TransitionRecordRead] | JSONResponse:
    try:
        return workflow_service.list_transitions(db, entity_type, entity_id)
    except WorkflowError as exc:
        return workflow_error_response(request, exc)
