# ferry_engine/infrastructure/repositories/outbox_repository.py

import json
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ferry_engine.infrastructure.db.models import OutboxEvent


class OutboxRepository:
    """
    Domain events for the external notification sender. Rows are written
    in the same transaction as the state change they describe.
    """

    def __init__(self, db: Session):
        self.db = db

    def add_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True, default=str),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
        self.db.flush()

    def list_by_status(self, status: str, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        return self.db.get(OutboxEvent, event_id)

    def mark_published(self, event: OutboxEvent, now: datetime) -> OutboxEvent:
        event.status = "PUBLISHED"
        event.published_at = now
        event.attempts += 1
        return event
