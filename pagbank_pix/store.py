"""Persistence for payment intents.

Every state change goes through ``update_state``, a single conditional UPDATE
that only matches when the row is still in the state the caller read. That
compare-and-swap is the only synchronization between the lifecycle manager,
the webhook reconciler and the expiration sweep.
"""
import uuid
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from pagbank_pix.errors import Conflict, IntentNotFound, InvalidTransition, StaleState
from pagbank_pix.models import (
    TERMINAL_STATES,
    HostCallback,
    IntentState,
    PaymentIntent,
    PaymentMethod,
    can_transition,
    utcnow,
)

IMMUTABLE_FIELDS = ("id", "order_reference", "amount", "currency", "method", "state", "created_at")


class IntentStore:
    def __init__(self, session_factory: sessionmaker, clock=utcnow):
        self.SessionLocal = session_factory
        self.clock = clock

    def create(self, order_reference: str, amount: int, expires_at, idempotency_key: str,
               method: PaymentMethod = PaymentMethod.PIX, currency: str = "BRL") -> PaymentIntent:
        now = self.clock()
        intent = PaymentIntent(
            id=uuid.uuid4().hex,
            order_reference=order_reference,
            amount=amount,
            currency=currency,
            method=method,
            state=IntentState.CREATED,
            expires_at=expires_at,
            idempotency_key=idempotency_key,
            refunded_amount=0,
            created_at=now,
            updated_at=now,
        )
        with self.SessionLocal() as db:
            db.add(intent)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                active = self._active_for_order(db, order_reference)
                if active is None:
                    raise
                logger.info(f"Order {order_reference} already has active intent {active.id}")
                return active
        return intent

    def _active_for_order(self, db, order_reference: str) -> Optional[PaymentIntent]:
        return db.execute(
            select(PaymentIntent)
            .filter_by(order_reference=order_reference)
            .where(PaymentIntent.state.not_in(tuple(TERMINAL_STATES)))
        ).scalar_one_or_none()

    def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        with self.SessionLocal() as db:
            return db.get(PaymentIntent, intent_id)

    def get_by_provider_id(self, provider_id: str) -> Optional[PaymentIntent]:
        with self.SessionLocal() as db:
            return db.execute(
                select(PaymentIntent).filter_by(provider_id=provider_id)
            ).scalar_one_or_none()

    def list_by_order(self, order_reference: str) -> List[PaymentIntent]:
        with self.SessionLocal() as db:
            return list(db.execute(
                select(PaymentIntent)
                .filter_by(order_reference=order_reference)
                .order_by(PaymentIntent.created_at.desc())
            ).scalars())

    def get_by_order(self, order_reference: str) -> Optional[PaymentIntent]:
        """The order's active intent, or its most recent one when none is active."""
        intents = self.list_by_order(order_reference)
        for intent in intents:
            if intent.is_active:
                return intent
        return intents[0] if intents else None

    def list_in_state(self, state: IntentState, expired_before=None,
                      updated_before=None) -> List[PaymentIntent]:
        query = select(PaymentIntent).filter_by(state=state)
        if expired_before is not None:
            query = query.where(PaymentIntent.expires_at < expired_before)
        if updated_before is not None:
            query = query.where(PaymentIntent.updated_at < updated_before)
        with self.SessionLocal() as db:
            return list(db.execute(query.order_by(PaymentIntent.expires_at)).scalars())

    def update_state(self, intent_id: str, expected_state: IntentState, new_state: IntentState,
                     **changes) -> PaymentIntent:
        if not can_transition(expected_state, new_state):
            raise InvalidTransition(expected_state, new_state)
        for name in changes:
            if name in IMMUTABLE_FIELDS:
                raise ValueError(f"{name} cannot be changed through update_state")

        with self.SessionLocal() as db:
            try:
                result = db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.id == intent_id, PaymentIntent.state == expected_state)
                    .values(state=new_state, updated_at=self.clock(), **changes)
                )
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise Conflict(f"Intent {intent_id} cannot move to {new_state.value}: {e.orig}")
            if result.rowcount == 0:
                if db.get(PaymentIntent, intent_id) is None:
                    raise IntentNotFound(f"Intent {intent_id} does not exist")
                raise StaleState(intent_id, expected_state)
            intent = db.get(PaymentIntent, intent_id, populate_existing=True)
        return intent

    def enqueue_callback(self, order_reference: str, event: str, reason: Optional[str],
                         error: str) -> HostCallback:
        callback = HostCallback(
            order_reference=order_reference,
            event=event,
            reason=reason,
            attempts=1,
            last_error=error,
            created_at=self.clock(),
        )
        with self.SessionLocal() as db:
            db.add(callback)
            db.commit()
        return callback

    def pending_callbacks(self) -> List[HostCallback]:
        with self.SessionLocal() as db:
            return list(db.execute(
                select(HostCallback)
                .where(HostCallback.delivered_at.is_(None))
                .order_by(HostCallback.id)
            ).scalars())

    def mark_callback_delivered(self, callback_id: int) -> None:
        with self.SessionLocal() as db:
            db.execute(
                update(HostCallback)
                .where(HostCallback.id == callback_id)
                .values(delivered_at=self.clock())
            )
            db.commit()

    def mark_callback_failed(self, callback_id: int, error: str) -> None:
        with self.SessionLocal() as db:
            db.execute(
                update(HostCallback)
                .where(HostCallback.id == callback_id)
                .values(attempts=HostCallback.attempts + 1, last_error=error)
            )
            db.commit()
