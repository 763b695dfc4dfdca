"""Callbacks into the Commerce Host, which owns the orders."""
from typing import Optional, Protocol

import httpx
from loguru import logger

from pagbank_pix.config import Settings
from pagbank_pix.store import IntentStore

ORDER_PAID = "order_paid"
ORDER_PAYMENT_FAILED = "order_payment_failed"
ORDER_AWAITING_PAYMENT = "order_awaiting_payment"


class CommerceHost(Protocol):
    def on_order_awaiting_payment(self, order_id: str, note: str) -> None:
        ...

    def on_order_paid(self, order_id: str) -> None:
        ...

    def on_order_payment_failed(self, order_id: str, reason: str) -> None:
        ...


class HttpCommerceHost:
    """Posts order events as JSON to the host's callback URL."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        if not settings.host_callback_url:
            raise ValueError("HOST_CALLBACK_URL is required for HttpCommerceHost")
        self.url = settings.host_callback_url
        self._http = httpx.Client(timeout=settings.request_timeout, transport=transport)

    def _post(self, payload: dict) -> None:
        response = self._http.post(self.url, json=payload)
        response.raise_for_status()

    def on_order_awaiting_payment(self, order_id: str, note: str) -> None:
        self._post({"event": ORDER_AWAITING_PAYMENT, "order_id": order_id, "note": note})

    def on_order_paid(self, order_id: str) -> None:
        self._post({"event": ORDER_PAID, "order_id": order_id})

    def on_order_payment_failed(self, order_id: str, reason: str) -> None:
        self._post({"event": ORDER_PAYMENT_FAILED, "order_id": order_id, "reason": reason})


class HostNotifier:
    """Delivers callbacks without letting host failures reach intent state.

    Callers only notify after winning the state transition, so each
    transition produces one delivery attempt. Failed ``order_paid`` and
    ``order_payment_failed`` deliveries are queued for ``retry``.
    """

    def __init__(self, host: CommerceHost, store: IntentStore):
        self.host = host
        self.store = store

    def awaiting_payment(self, order_id: str, note: str) -> bool:
        try:
            self.host.on_order_awaiting_payment(order_id, note)
        except Exception as e:
            # The host re-reads the intent on its thank-you page anyway.
            logger.warning(f"Host could not put order {order_id} on hold: {e}")
            return False
        return True

    def order_paid(self, order_id: str) -> bool:
        return self._deliver(ORDER_PAID, order_id, None)

    def order_payment_failed(self, order_id: str, reason: str) -> bool:
        return self._deliver(ORDER_PAYMENT_FAILED, order_id, reason)

    def _call(self, event: str, order_id: str, reason: Optional[str]) -> None:
        if event == ORDER_PAID:
            self.host.on_order_paid(order_id)
        else:
            self.host.on_order_payment_failed(order_id, reason)

    def _deliver(self, event: str, order_id: str, reason: Optional[str]) -> bool:
        try:
            self._call(event, order_id, reason)
        except Exception as e:
            logger.error(f"Host callback {event} for order {order_id} failed, queued for retry: {e}")
            self.store.enqueue_callback(order_id, event, reason, str(e))
            return False
        logger.info(f"Host notified: {event} for order {order_id}")
        return True

    def retry(self) -> int:
        delivered = 0
        for callback in self.store.pending_callbacks():
            try:
                self._call(callback.event, callback.order_reference, callback.reason)
            except Exception as e:
                logger.warning(
                    f"Host callback {callback.event} for order {callback.order_reference} "
                    f"failed again (attempt {callback.attempts + 1}): {e}"
                )
                self.store.mark_callback_failed(callback.id, str(e))
                continue
            self.store.mark_callback_delivered(callback.id)
            delivered += 1
        return delivered
