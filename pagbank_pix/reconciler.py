"""Applies PagBank's view of a payment to the intent store.

Notifications are neither ordered nor delivered exactly once, so every
status is turned into a target state and applied only when it moves the
intent forward. Replays and stale deliveries are acknowledged as no-ops.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from loguru import logger

from pagbank_pix.config import Settings
from pagbank_pix.errors import PermanentError, StaleState, TransientError
from pagbank_pix.host import HostNotifier
from pagbank_pix.models import IntentState, PaymentIntent, can_transition, is_at_or_past, utcnow
from pagbank_pix.pagbank_client import PagBankClient
from pagbank_pix.store import IntentStore

INVALID_SIGNATURE = "invalid_signature"
MALFORMED_PAYLOAD = "malformed_payload"
UNKNOWN_INTENT = "unknown_intent"

MAX_CAS_ATTEMPTS = 3

AWAITING_STATUSES = {"WAITING", "CREATED", "AWAITING", "IN_ANALYSIS"}
PAID_STATUSES = {"PAID", "AUTHORIZED"}
FAILED_STATUSES = {"DECLINED"}
CANCELED = "CANCELED"


@dataclass(frozen=True)
class Ack:
    intent_id: Optional[str] = None
    changed: bool = False


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class Notification:
    provider_id: str
    status: str
    timestamp: Optional[str] = None
    refunded_amount: Optional[int] = None


def parse_notification(raw_payload: bytes) -> Notification:
    """Accepts ``{providerId, status, timestamp}`` or a PagBank order body.

    Raises ``ValueError`` when neither shape matches.
    """
    try:
        body = json.loads(raw_payload)
        if "providerId" in body:
            return Notification(
                provider_id=str(body["providerId"]),
                status=str(body["status"]).upper(),
                timestamp=body.get("timestamp"),
            )
        charges = body.get("charges") or []
        if not charges:
            return Notification(provider_id=str(body["id"]), status="WAITING")
        charge = charges[0]
        summary = (charge.get("amount") or {}).get("summary") or {}
        return Notification(
            provider_id=str(body["id"]),
            status=str(charge["status"]).upper(),
            timestamp=charge.get("paid_at") or body.get("created_at"),
            refunded_amount=summary.get("refunded"),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Unrecognised notification: {e!r}")


def target_state(current: IntentState, status: str) -> Optional[IntentState]:
    if status in AWAITING_STATUSES:
        return IntentState.AWAITING_PAYMENT
    if status in PAID_STATUSES:
        return IntentState.PAID
    if status in FAILED_STATUSES:
        return IntentState.FAILED
    if status == CANCELED:
        # PagBank reports both a completed refund and a cancelled unpaid QR as CANCELED.
        if current is IntentState.REFUND_REQUESTED:
            return IntentState.REFUNDED
        if current is IntentState.AWAITING_PAYMENT:
            return IntentState.EXPIRED
    return None


class WebhookReconciler:
    def __init__(self, settings: Settings, store: IntentStore, provider: PagBankClient,
                 notifier: HostNotifier, clock=utcnow):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.clock = clock

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self.settings.webhook_secret:
            logger.error("PAGBANK_WEBHOOK_SECRET is not set, every notification is rejected")
            return False
        if not signature_header:
            return False
        expected = hmac.new(
            self.settings.webhook_secret.encode(),
            raw_payload,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature_header.strip().lower())

    def handle_notification(self, raw_payload: bytes,
                            signature_header: Optional[str]) -> Union[Ack, Rejected]:
        if not self.verify_signature(raw_payload, signature_header):
            logger.warning("Rejected PagBank notification with an invalid signature")
            return Rejected(INVALID_SIGNATURE)

        try:
            notification = parse_notification(raw_payload)
        except ValueError as e:
            logger.warning(f"Rejected malformed PagBank notification: {e}")
            return Rejected(MALFORMED_PAYLOAD)

        intent = self.store.get_by_provider_id(notification.provider_id)
        if intent is None:
            logger.warning(f"PagBank notification for unknown order {notification.provider_id}")
            return Rejected(UNKNOWN_INTENT)

        updated = self.apply(intent, notification.status, notification.refunded_amount)
        return Ack(intent_id=intent.id, changed=updated is not None)

    def apply(self, intent: PaymentIntent, status: str,
              refunded_amount: Optional[int] = None) -> Optional[PaymentIntent]:
        """Move ``intent`` toward ``status``. Returns the updated intent, or None for a no-op."""
        for _ in range(MAX_CAS_ATTEMPTS):
            target = target_state(intent.state, status)
            if target is None:
                logger.debug(f"Status {status} means nothing for intent {intent.id} in {intent.state.value}")
                return None
            if is_at_or_past(intent.state, target):
                if target is IntentState.PAID and intent.state in (IntentState.EXPIRED, IntentState.FAILED):
                    logger.warning(
                        f"Order {intent.order_reference} reported {status} after the intent "
                        f"became {intent.state.value}; needs manual review"
                    )
                else:
                    logger.debug(f"Intent {intent.id} already {intent.state.value}, ignoring {status}")
                return None
            if not can_transition(intent.state, target):
                logger.warning(f"Ignoring {status} for intent {intent.id}: "
                               f"{intent.state.value} -> {target.value} is not allowed")
                return None

            changes = {}
            if target is IntentState.REFUNDED:
                changes["refunded_amount"] = refunded_amount if refunded_amount else intent.amount
            elif target in (IntentState.FAILED, IntentState.EXPIRED):
                changes["failure_reason"] = f"PagBank reported {status}"

            try:
                updated = self.store.update_state(intent.id, intent.state, target, **changes)
            except StaleState:
                intent = self.store.get_by_id(intent.id)
                continue

            logger.info(f"Intent {intent.id} for order {intent.order_reference} is now {target.value}")
            if target is IntentState.PAID:
                self.notifier.order_paid(intent.order_reference)
            elif target in (IntentState.FAILED, IntentState.EXPIRED):
                self.notifier.order_payment_failed(intent.order_reference, changes["failure_reason"])
            return updated

        logger.warning(f"Gave up applying {status} to intent {intent.id} after {MAX_CAS_ATTEMPTS} races")
        return None

    def reconcile_pending(self) -> int:
        """Ask PagBank about every intent still waiting on it, for missed webhooks."""
        checked = 0
        for intent in self.store.list_in_state(IntentState.AWAITING_PAYMENT):
            checked += 1
            try:
                status = self.provider.query_status(intent.provider_id)
            except TransientError as e:
                logger.warning(f"Could not query PagBank order {intent.provider_id}: {e}")
                continue
            except PermanentError as e:
                self._fail(intent, str(e))
                continue
            self.apply(intent, status.status.upper())

        # A refund younger than one full provider round trip may still be in flight.
        settle_before = self.clock() - timedelta(seconds=self.settings.refund_settle_after)
        for intent in self.store.list_in_state(IntentState.REFUND_REQUESTED, updated_before=settle_before):
            checked += 1
            try:
                status = self.provider.query_status(intent.provider_id)
            except (TransientError, PermanentError) as e:
                logger.warning(f"Could not query refund of PagBank order {intent.provider_id}: {e}")
                continue
            self._settle_refund(intent, status.status.upper(), status.refunded_amount)
        return checked

    def _fail(self, intent: PaymentIntent, reason: str) -> None:
        try:
            self.store.update_state(intent.id, intent.state, IntentState.FAILED, failure_reason=reason)
        except StaleState:
            return
        logger.error(f"Intent {intent.id} failed on status query: {reason}")
        self.notifier.order_payment_failed(intent.order_reference, reason)

    def _settle_refund(self, intent: PaymentIntent, status: str, refunded_amount: int) -> None:
        if status == CANCELED or refunded_amount > intent.refunded_amount:
            self.apply(intent, CANCELED, refunded_amount)
            return
        try:
            self.store.update_state(
                intent.id, IntentState.REFUND_REQUESTED, IntentState.PAID,
                failure_reason="Refund not confirmed by PagBank",
            )
        except StaleState:
            return
        logger.warning(f"Refund for order {intent.order_reference} never reached PagBank, back to PAID")

    def retry_host_callbacks(self) -> int:
        return self.notifier.retry()
