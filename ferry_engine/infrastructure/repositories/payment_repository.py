# ferry_engine/infrastructure/repositories/payment_repository.py

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ferry_engine.domain.state_machine import PaymentStateMachine, PaymentStatus
from ferry_engine.infrastructure.db.models import Payment, PaymentAttempt


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str, for_update: bool = False) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_booking_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.booking_id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id(
        self,
        order_id: str,
        for_update: bool = False,
    ) -> Payment | None:
        """
        SELECT ... FOR UPDATE when for_update is set, so two deliveries
        for the same order are serialized on the payment row.
        """
        stmt = select(Payment).where(Payment.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_attempt_by_order_id(self, order_id: str) -> PaymentAttempt | None:
        stmt = select(PaymentAttempt).where(PaymentAttempt.order_id == order_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_attempts(self, payment_id: str) -> list[PaymentAttempt]:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.payment_id == payment_id)
            .order_by(PaymentAttempt.attempt)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_stuck_order_ids(self, requested_before: datetime, limit: int) -> list[str]:
        stmt = (
            select(Payment.order_id)
            .where(Payment.status == PaymentStatus.PENDING)
            .where(Payment.gateway_token.is_not(None))
            .where(Payment.requested_at < requested_before)
            .order_by(Payment.requested_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def archive_attempt(self, payment: Payment, now: datetime) -> PaymentAttempt:
        attempt = PaymentAttempt(
            payment_id=payment.id,
            order_id=payment.order_id,
            attempt=payment.attempt,
            status=payment.status.value,
            gateway_token=payment.gateway_token,
            transaction_id=payment.transaction_id,
            payment_type=payment.payment_type,
            raw_payload=payment.raw_payload,
            requested_at=payment.requested_at,
            superseded_at=now,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def restart(self, payment: Payment, expected_status: PaymentStatus, **values: Any) -> bool:
        """
        Reuses the row for a new gateway order. This starts a new attempt
        rather than moving through the transition table, so it is only
        conditioned on the status the caller archived.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id)
            .where(Payment.status == expected_status)
            .values(
                status=PaymentStatus.PENDING,
                attempt=payment.attempt + 1,
                transaction_id=None,
                payment_type=None,
                paid_at=None,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(payment)
        return result.rowcount == 1

    def transition(
        self,
        payment: Payment,
        to_status: PaymentStatus,
        **values: Any,
    ) -> bool:
        from_status = payment.status
        PaymentStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(Payment)
            .where(Payment.id == payment.id)
            .where(Payment.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(payment)
        return result.rowcount == 1
