from __future__ import annotations

import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from orthoflow.workflow.models import TransitionRecord


class TransitionLog:
    """Append-only history of committed transitions.

    Records are never updated or deleted. ``sequence`` is assigned per entity
    and, together with the unique constraint on (entity_id, sequence), makes two
    commits racing on the same entity collide instead of interleaving.
    """

    def next_sequence(self, session: Session, entity_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.coalesce(func.max(TransitionRecord.sequence), 0)).where(TransitionRecord.entity_id == entity_id)
        )
        return int(current or 0) + 1

    def append(self, session: Session, record: TransitionRecord) -> TransitionRecord:
        record.sequence = self.next_sequence(session, record.entity_id)
        session.add(record)
        return record

    def history(self, session: Session, entity_id: uuid.UUID) -> list[TransitionRecord]:
        stmt = (
            select(TransitionRecord)
            .where(TransitionRecord.entity_id == entity_id)
            .order_by(TransitionRecord.sequence)
        )
        return list(session.scalars(stmt).all())

    def latest(self, session: Session, entity_id: uuid.UUID) -> TransitionRecord | None:
        return session.scalar(
            select(TransitionRecord)
            .where(TransitionRecord.entity_id == entity_id)
            .order_by(TransitionRecord.sequence.desc())
            .limit(1)
        )

    def find_by_idempotency_key(
        self,
        session: Session,
        entity_id: uuid.UUID,
        action: str,
        idempotency_key: str,
    ) -> TransitionRecord | None:
        return session.scalar(
            select(TransitionRecord).where(
                and_(
                    TransitionRecord.entity_id == entity_id,
                    TransitionRecord.action == action,
                    TransitionRecord.idempotency_key == idempotency_key,
                )
            )
        )
