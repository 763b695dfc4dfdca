"""PagBank Orders API client used for Pix charges."""
import time
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from pagbank_pix.config import Settings
from pagbank_pix.errors import InvalidAmount, PermanentError, TransientError
from pagbank_pix.models import PaymentMethod

REFUND_ACCEPTED_STATUS = "CANCELED"
PAID_CHARGE_STATUSES = ("PAID", "AUTHORIZED")

# PagBank shows the Pix expiration in Brasília time.
BRT = timezone(timedelta(hours=-3))


@dataclass
class ProviderChargeResult:
    provider_id: str
    qr_text: Optional[str]
    qr_image_url: Optional[str]
    expiration_date: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        return {
            "qr_text": self.qr_text,
            "qr_image_url": self.qr_image_url,
            "expiration_date": self.expiration_date,
            "response": self.raw,
        }


@dataclass
class RefundResult:
    status: str
    accepted: bool
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    provider_id: str
    status: str
    charge_id: Optional[str] = None
    refunded_amount: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


def _error_messages(response: httpx.Response) -> list:
    try:
        body = response.json()
    except ValueError:
        return [response.text]
    if not isinstance(body, dict):
        return [response.text]
    return [
        item.get("description") or item.get("code") or str(item)
        for item in body.get("error_messages", [])
    ] or [response.text]


def _json_object(response: httpx.Response, method: str, path: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        logger.error(f"PagBank {method} {path} returned {response.status_code} with an unreadable body")
        raise PermanentError(
            f"PagBank {method} {path} returned an unreadable body",
            status_code=response.status_code,
            details=[response.text],
        )
    return body


def _first_charge(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    charges = order.get("charges") or []
    return charges[0] if charges else None


def _refunded(charge: Dict[str, Any]) -> int:
    amount = charge.get("amount") or {}
    return (amount.get("summary") or {}).get("refunded", 0)


class PagBankClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None,
                 sleep=time.sleep):
        self.settings = settings
        self._sleep = sleep
        self._http = httpx.Client(
            base_url=settings.api_url,
            timeout=settings.request_timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.pagbank_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def close(self):
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        attempts = self.settings.max_retries
        for attempt in range(attempts):
            try:
                response = self._http.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                error = TransientError(f"PagBank {method} {path} timed out: {e}")
            except httpx.TransportError as e:
                error = TransientError(f"PagBank {method} {path} failed: {e}")
            else:
                if response.status_code < 400:
                    return _json_object(response, method, path)
                messages = _error_messages(response)
                if response.status_code >= 500 or response.status_code == 429:
                    error = TransientError(
                        f"PagBank {method} {path} returned {response.status_code}",
                        status_code=response.status_code,
                        details=messages,
                    )
                else:
                    logger.error(f"PagBank {method} {path} rejected ({response.status_code}): {messages}")
                    raise PermanentError(
                        "; ".join(messages),
                        status_code=response.status_code,
                        details=messages,
                    )

            if attempt < attempts - 1:
                delay = self.settings.retry_backoff * (2 ** attempt)
                logger.warning(f"{error} (attempt {attempt + 1}/{attempts}, retrying in {delay:.1f}s)")
                self._sleep(delay)
            else:
                logger.error(f"{error} (giving up after {attempts} attempts)")
                raise error

    def create_charge(self, order_reference: str, amount: int, method: PaymentMethod,
                      metadata: Dict[str, Any]) -> ProviderChargeResult:
        if method is not PaymentMethod.PIX:
            raise PermanentError(f"Payment method {method} is not supported")

        expires_at = metadata["expires_at"].replace(tzinfo=timezone.utc).astimezone(BRT)
        body = {
            "reference_id": order_reference,
            "items": [
                {
                    "reference_id": order_reference,
                    "name": metadata.get("description") or f"Pedido {order_reference}",
                    "quantity": 1,
                    "unit_amount": amount,
                }
            ],
            "qr_codes": [
                {
                    "amount": {"value": amount},
                    "expiration_date": expires_at.isoformat(timespec="seconds"),
                }
            ],
        }
        if metadata.get("customer"):
            body["customer"] = metadata["customer"]
        if self.settings.notification_url:
            body["notification_urls"] = [self.settings.notification_url]

        logger.info(f"Creating Pix charge for order {order_reference} ({amount} centavos)")
        order = self._request(
            "POST", "/orders", json=body,
            headers={"x-idempotency-key": metadata["idempotency_key"]},
        )

        if not order.get("id"):
            raise PermanentError(f"PagBank answered without an order id for {order_reference}")
        qr_codes = order.get("qr_codes") or [{}]
        links = qr_codes[0].get("links") or [{}]
        return ProviderChargeResult(
            provider_id=order["id"],
            qr_text=qr_codes[0].get("text"),
            qr_image_url=links[0].get("href"),
            expiration_date=qr_codes[0].get("expiration_date"),
            raw=order,
        )

    def query_status(self, provider_id: str) -> ProviderStatus:
        order = self._request("GET", f"/orders/{provider_id}")
        charge = _first_charge(order)
        if charge is None:
            return ProviderStatus(provider_id=provider_id, status="WAITING", raw=order)
        return ProviderStatus(
            provider_id=provider_id,
            status=charge.get("status", "WAITING"),
            charge_id=charge.get("id"),
            refunded_amount=_refunded(charge),
            raw=order,
        )

    def refund(self, provider_id: str, amount: int) -> RefundResult:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount("O valor para reembolso deve ser maior que zero")

        status = self.query_status(provider_id)
        charge = _first_charge(status.raw)
        if charge is None or charge.get("status") not in PAID_CHARGE_STATUSES:
            raise PermanentError(f"Order {provider_id} has no paid charge to refund")

        remaining = (charge.get("amount") or {}).get("value", 0) - status.refunded_amount
        if amount > remaining:
            raise InvalidAmount(
                f"Refund of {amount} exceeds the refundable balance of {remaining}"
            )

        logger.info(f"Refunding {amount} centavos of charge {charge['id']} (order {provider_id})")
        result = self._request(
            "POST", f"/charges/{charge['id']}/cancel",
            json={"amount": {"value": amount}},
        )
        refund_status = result.get("status", "")
        # A partial refund leaves the charge PAID with a larger refunded summary.
        accepted = (
            refund_status == REFUND_ACCEPTED_STATUS
            or _refunded(result) >= status.refunded_amount + amount
        )
        return RefundResult(status=refund_status, accepted=accepted, raw=result)
