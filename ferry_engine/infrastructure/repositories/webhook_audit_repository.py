# ferry_engine/infrastructure/repositories/webhook_audit_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ferry_engine.infrastructure.db.models import WebhookAudit


class WebhookAuditRepository:
    """Append-only store; the only update allowed is replay bookkeeping."""

    def __init__(self, db: Session):
        self.db = db

    def find_final(self, replay_key: str, final_outcomes: frozenset[str]) -> WebhookAudit | None:
        stmt = (
            select(WebhookAudit)
            .where(WebhookAudit.replay_key == replay_key)
            .where(WebhookAudit.outcome.in_(final_outcomes))
            .order_by(WebhookAudit.created_at)
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def record(self, audit: WebhookAudit) -> WebhookAudit:
        self.db.add(audit)
        self.db.flush()
        return audit

    def mark_replayed(self, audit_id: str, now: datetime) -> None:
        stmt = (
            update(WebhookAudit)
            .where(WebhookAudit.id == audit_id)
            .values(
                replay_count=WebhookAudit.replay_count + 1,
                last_replayed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def list_recent(
        self,
        outcome: str | None = None,
        order_id: str | None = None,
        limit: int = 50,
    ) -> list[WebhookAudit]:
        stmt = select(WebhookAudit).order_by(WebhookAudit.created_at.desc()).limit(limit)
        if outcome:
            stmt = stmt.where(WebhookAudit.outcome == outcome)
        if order_id:
            stmt = stmt.where(WebhookAudit.order_id == order_id)
        return list(self.db.execute(stmt).scalars().all())
