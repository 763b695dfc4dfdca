import enum
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, Enum, Text, Index, text

from pagbank_pix.database import Base


def utcnow() -> datetime:
    """Naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentMethod(str, enum.Enum):
    PIX = "PIX"


class IntentState(str, enum.Enum):
    CREATED = "CREATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({IntentState.EXPIRED, IntentState.REFUNDED, IntentState.FAILED})
ACTIVE_STATES_SQL = "state IN (" + ", ".join(
    f"'{state.name}'" for state in IntentState if state not in TERMINAL_STATES
) + ")"

TRANSITIONS = {
    IntentState.CREATED: {IntentState.AWAITING_PAYMENT, IntentState.PAID, IntentState.FAILED},
    IntentState.AWAITING_PAYMENT: {IntentState.PAID, IntentState.EXPIRED, IntentState.FAILED},
    IntentState.PAID: {IntentState.REFUND_REQUESTED},
    IntentState.REFUND_REQUESTED: {IntentState.REFUNDED, IntentState.PAID},
}

# How far along the payment an intent is; terminal states sit above everything.
PROGRESS = {
    IntentState.CREATED: 0,
    IntentState.AWAITING_PAYMENT: 1,
    IntentState.PAID: 2,
    IntentState.REFUND_REQUESTED: 3,
    IntentState.REFUNDED: 4,
}


def can_transition(current: IntentState, target: IntentState) -> bool:
    return target in TRANSITIONS.get(current, ())


def is_at_or_past(current: IntentState, target: IntentState) -> bool:
    if current.is_terminal:
        return True
    return PROGRESS[current] >= PROGRESS.get(target, len(PROGRESS))


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String(32), primary_key=True)          # local uuid hex
    provider_id = Column(String, unique=True, index=True, nullable=True)  # PagBank order id
    order_reference = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)           # centavos
    currency = Column(String(3), nullable=False, default="BRL")
    method = Column(Enum(PaymentMethod, native_enum=False, length=16), nullable=False)
    state = Column(Enum(IntentState, native_enum=False, length=32), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    provider_payload = Column(JSON, nullable=True)
    idempotency_key = Column(String(64), nullable=False)
    refunded_amount = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # One active intent per order; terminal intents are kept for audit.
    __table_args__ = (
        Index(
            "uq_payment_intents_active_order",
            "order_reference",
            unique=True,
            sqlite_where=text(ACTIVE_STATES_SQL),
            postgresql_where=text(ACTIVE_STATES_SQL),
        ),
    )

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    @property
    def refundable_amount(self) -> int:
        return self.amount - (self.refunded_amount or 0)

    def display(self) -> dict:
        payload = self.provider_payload or {}
        return {
            "order_id": self.order_reference,
            "payment_id": self.id,
            "status": self.state.value,
            "amount": self.amount,
            "currency": self.currency,
            "expiration": payload.get("expiration_date") or self.expires_at.isoformat(),
            "qr_text": payload.get("qr_text"),
            "qr_image_url": payload.get("qr_image_url"),
        }


class HostCallback(Base):
    __tablename__ = "host_callbacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_reference = Column(String, index=True, nullable=False)
    event = Column(String(32), nullable=False)         # order_paid | order_payment_failed
    reason = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    delivered_at = Column(DateTime, nullable=True)
