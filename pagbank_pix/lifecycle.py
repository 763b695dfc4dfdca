import uuid
from datetime import timedelta
from typing import List, Optional

from loguru import logger

from pagbank_pix.config import Settings
from pagbank_pix.errors import (
    CheckoutFailed,
    Conflict,
    GatewayUnavailable,
    IntentNotFound,
    InvalidAmount,
    PermanentError,
    ProviderError,
    RefundFailed,
    StaleState,
    TransientError,
    UnsupportedCurrency,
    ValidationError,
)
from pagbank_pix.host import HostNotifier
from pagbank_pix.models import IntentState, PaymentIntent, PaymentMethod, utcnow
from pagbank_pix.pagbank_client import PagBankClient
from pagbank_pix.store import IntentStore

SETTLEMENT_CURRENCY = "BRL"
AWAITING_PAYMENT_NOTE = "Aguardando pagamento do Pix."
MAX_CAS_ATTEMPTS = 3
REFUND_ERROR = "Houve um erro ao tentar realizar o reembolso."


def idempotency_key(order_reference: str, amount: int, attempt: int) -> str:
    """Stable per (order, amount, attempt) so a resumed create replays at PagBank."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"pix:{order_reference}:{amount}:{attempt}"))


def _check_amount(amount) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidAmount("Amount must be an integer number of centavos")
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero")


class LifecycleManager:
    def __init__(self, settings: Settings, store: IntentStore, provider: PagBankClient,
                 notifier: HostNotifier, clock=utcnow):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.clock = clock

    def start_payment(self, order_reference: str, amount: int, currency: str = SETTLEMENT_CURRENCY,
                      expiration_minutes: Optional[int] = None) -> PaymentIntent:
        """Create (or reuse) the order's Pix intent and leave it awaiting payment.

        Raises ``ValidationError`` for bad input and ``CheckoutFailed`` when
        PagBank could not create the charge; the latter is always safe to retry.
        """
        _check_amount(amount)
        if self.settings.max_amount is not None and amount > self.settings.max_amount:
            raise InvalidAmount(f"Amount exceeds the Pix limit of {self.settings.max_amount}")
        if (currency or "").upper() != SETTLEMENT_CURRENCY:
            raise UnsupportedCurrency(currency)
        if expiration_minutes is None:
            expiration_minutes = self.settings.expiration_minutes
        if expiration_minutes < 1:
            raise ValidationError("expiration_minutes must be at least 1")
        if not self.settings.pagbank_token:
            raise GatewayUnavailable("PagBank account is not connected (PAGBANK_TOKEN is empty)")

        now = self.clock()
        intent = None
        existing = self.store.get_by_order(order_reference)
        if existing is not None and existing.is_active:
            if existing.state in (IntentState.PAID, IntentState.REFUND_REQUESTED):
                raise ValidationError(f"Order {order_reference} has already been paid")
            reusable = existing.amount == amount and existing.expires_at > now
            if reusable and existing.state is IntentState.AWAITING_PAYMENT:
                return existing
            if reusable:
                intent = existing
                logger.info(f"Resuming Pix intent {intent.id} for order {order_reference}")
            else:
                self._supersede(existing)

        if intent is None:
            attempt = len(self.store.list_by_order(order_reference))
            intent = self.store.create(
                order_reference=order_reference,
                amount=amount,
                expires_at=now + timedelta(minutes=expiration_minutes),
                idempotency_key=idempotency_key(order_reference, amount, attempt),
                method=PaymentMethod.PIX,
                currency=SETTLEMENT_CURRENCY,
            )
            # A concurrent checkout for the same order may have created it first.
            if intent.amount == amount and intent.state is IntentState.AWAITING_PAYMENT:
                return intent
            if intent.amount != amount or intent.state is not IntentState.CREATED:
                logger.warning(f"Order {order_reference} has a concurrent checkout in {intent.state.value}")
                raise CheckoutFailed(order_reference)

        try:
            charge = self.provider.create_charge(
                order_reference, amount, PaymentMethod.PIX,
                {"expires_at": intent.expires_at, "idempotency_key": intent.idempotency_key},
            )
        except TransientError as e:
            logger.warning(f"Pix charge for order {order_reference} not created yet, intent {intent.id} kept: {e}")
            raise CheckoutFailed(order_reference, e)
        except PermanentError as e:
            self._fail(intent, str(e))
            raise CheckoutFailed(order_reference, e)

        payload = charge.payload()
        payload["environment"] = self.settings.environment
        try:
            intent = self.store.update_state(
                intent.id, IntentState.CREATED, IntentState.AWAITING_PAYMENT,
                provider_id=charge.provider_id,
                provider_payload=payload,
            )
        except Conflict as e:
            self._fail(intent, f"PagBank order {charge.provider_id} already belongs to another intent")
            raise CheckoutFailed(order_reference, e)
        except StaleState:
            current = self.store.get_by_id(intent.id)
            logger.info(f"Intent {intent.id} moved to {current.state.value} while the charge was created")
            return current

        logger.info(f"Intent {intent.id} awaiting Pix payment (PagBank order {charge.provider_id})")
        self.notifier.awaiting_payment(order_reference, AWAITING_PAYMENT_NOTE)
        return intent

    def _supersede(self, intent: PaymentIntent) -> None:
        target = IntentState.EXPIRED if intent.state is IntentState.AWAITING_PAYMENT else IntentState.FAILED
        try:
            self.store.update_state(intent.id, intent.state, target, failure_reason="superseded")
        except StaleState as e:
            raise CheckoutFailed(intent.order_reference, e)
        logger.info(f"Intent {intent.id} superseded ({target.value})")

    def _fail(self, intent: PaymentIntent, reason: str) -> None:
        try:
            self.store.update_state(intent.id, intent.state, IntentState.FAILED, failure_reason=reason)
        except StaleState:
            logger.info(f"Intent {intent.id} changed state before it could be marked failed")
            return
        logger.error(f"Intent {intent.id} failed: {reason}")
        self.notifier.order_payment_failed(intent.order_reference, reason)

    def request_refund(self, order_reference: str, amount: int, reason: str = "") -> PaymentIntent:
        intent = self.store.get_by_order(order_reference)
        if intent is None:
            raise IntentNotFound(f"No Pix payment found for order {order_reference}")
        if intent.state is not IntentState.PAID:
            raise ValidationError(f"Only paid orders can be refunded (current state {intent.state.value})")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount("O valor para reembolso deve ser maior que zero")
        if amount > intent.refundable_amount:
            raise InvalidAmount(
                f"Refund of {amount} exceeds the refundable balance of {intent.refundable_amount}"
            )

        try:
            intent = self.store.update_state(intent.id, IntentState.PAID, IntentState.REFUND_REQUESTED)
        except StaleState:
            raise RefundFailed("The payment changed while the refund was requested, try again")

        logger.info(f"Refund of {amount} requested for order {order_reference}: {reason or 'no reason given'}")
        try:
            result = self.provider.refund(intent.provider_id, amount)
        except TransientError as e:
            # Left in REFUND_REQUESTED; reconcile_pending settles it from PagBank's view.
            logger.warning(f"Refund for order {order_reference} unconfirmed: {e}")
            raise RefundFailed("PagBank did not confirm the refund yet, it will be checked again")
        except (ProviderError, ValidationError) as e:
            self._revert_refund(intent, str(e))
            raise RefundFailed(str(e))

        if not result.accepted:
            self._revert_refund(intent, f"PagBank answered {result.status or 'no status'}")
            raise RefundFailed(REFUND_ERROR)

        intent = self._confirm_refund(intent, amount)
        logger.info(f"Order {order_reference} refunded ({amount} centavos)")
        return intent

    def _confirm_refund(self, intent: PaymentIntent, amount: int) -> PaymentIntent:
        """Record a refund PagBank accepted, whatever settled the intent meanwhile."""
        refunded_amount = intent.refunded_amount + amount
        for _ in range(MAX_CAS_ATTEMPTS):
            try:
                return self.store.update_state(
                    intent.id, IntentState.REFUND_REQUESTED, IntentState.REFUNDED,
                    refunded_amount=refunded_amount, failure_reason=None,
                )
            except StaleState:
                intent = self.store.get_by_id(intent.id)
            if intent.state is IntentState.REFUNDED:
                return intent
            if intent.state is IntentState.PAID:
                # Reverted by the sweep before PagBank showed the refund; put it back.
                logger.warning(f"Reapplying accepted refund for order {intent.order_reference}")
                try:
                    self.store.update_state(intent.id, IntentState.PAID, IntentState.REFUND_REQUESTED)
                except StaleState:
                    intent = self.store.get_by_id(intent.id)
        logger.error(f"Refund of order {intent.order_reference} accepted by PagBank but left in {intent.state.value}")
        raise RefundFailed("The refund was accepted by PagBank but could not be recorded, try again")

    def _revert_refund(self, intent: PaymentIntent, reason: str) -> None:
        logger.error(f"Refund for order {intent.order_reference} rejected: {reason}")
        try:
            self.store.update_state(
                intent.id, IntentState.REFUND_REQUESTED, IntentState.PAID, failure_reason=reason,
            )
        except StaleState:
            logger.info(f"Intent {intent.id} was settled by a notification during the refund")

    def expire_stale_pending(self) -> List[PaymentIntent]:
        now = self.clock()
        expired = []
        for intent in self.store.list_in_state(IntentState.AWAITING_PAYMENT, expired_before=now):
            try:
                intent = self.store.update_state(
                    intent.id, IntentState.AWAITING_PAYMENT, IntentState.EXPIRED,
                    failure_reason="expired",
                )
            except StaleState:
                logger.debug(f"Intent {intent.id} settled before it could expire")
                continue
            logger.info(f"Intent {intent.id} for order {intent.order_reference} expired")
            self.notifier.order_payment_failed(intent.order_reference, "expired")
            expired.append(intent)
        return expired

    def payment_details(self, order_reference: str) -> Optional[dict]:
        intent = self.store.get_by_order(order_reference)
        if intent is None:
            return None
        return intent.display()
