import json
from dataclasses import replace

import httpx
import pytest

from pagbank_pix.host import HttpCommerceHost


def test_http_host_posts_order_events(settings):
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(204)

    host = HttpCommerceHost(
        replace(settings, host_callback_url="https://shop.example/pix/events"),
        transport=httpx.MockTransport(handler),
    )
    host.on_order_awaiting_payment("O1", "Aguardando pagamento do Pix.")
    host.on_order_paid("O1")
    host.on_order_payment_failed("O1", "expired")

    assert received == [
        {"event": "order_awaiting_payment", "order_id": "O1", "note": "Aguardando pagamento do Pix."},
        {"event": "order_paid", "order_id": "O1"},
        {"event": "order_payment_failed", "order_id": "O1", "reason": "expired"},
    ]


def test_http_host_raises_on_error_status(settings):
    host = HttpCommerceHost(
        replace(settings, host_callback_url="https://shop.example/pix/events"),
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )

    with pytest.raises(httpx.HTTPStatusError):
        host.on_order_paid("O1")


def test_http_host_requires_url(settings):
    with pytest.raises(ValueError):
        HttpCommerceHost(settings)


def test_notifier_tolerates_host_failure_on_hold(notifier, host, store):
    host.on_order_awaiting_payment.side_effect = RuntimeError("host down")

    assert notifier.awaiting_payment("O1", "Aguardando pagamento do Pix.") is False
    assert store.pending_callbacks() == []


def test_failed_retry_increments_attempts(notifier, host, store):
    host.on_order_payment_failed.side_effect = RuntimeError("host down")

    assert notifier.order_payment_failed("O1", "expired") is False
    assert notifier.retry() == 0

    callback = store.pending_callbacks()[0]
    assert callback.attempts == 2
    assert callback.reason == "expired"
