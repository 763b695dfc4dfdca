import hashlib
import hmac
import json
from datetime import datetime, timedelta

import pytest

from pagbank_pix.config import Settings
from pagbank_pix.database import create_session_factory
from pagbank_pix.host import HostNotifier
from pagbank_pix.lifecycle import LifecycleManager
from pagbank_pix.pagbank_client import PagBankClient, ProviderChargeResult
from pagbank_pix.reconciler import WebhookReconciler
from pagbank_pix.store import IntentStore

WEBHOOK_SECRET = "whsec_test"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 10, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def notification(provider_id: str, status: str) -> bytes:
    return json.dumps({
        "providerId": provider_id,
        "status": status,
        "timestamp": "2024-05-10T12:01:00-03:00",
    }).encode()


def charge_result(provider_id="ORDE_123"):
    return ProviderChargeResult(
        provider_id=provider_id,
        qr_text="00020101021226830014br.gov.bcb.pix",
        qr_image_url=f"https://sandbox.api.pagseguro.com/qrcode/{provider_id}/png",
        expiration_date="2024-05-10T09:15:00-03:00",
        raw={"id": provider_id},
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        pagbank_token="token_test",
        webhook_secret=WEBHOOK_SECRET,
        jwt_secret="jwt_test",
        retry_backoff=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(settings, clock):
    return IntentStore(create_session_factory(settings), clock=clock)


@pytest.fixture
def provider(mocker):
    provider = mocker.Mock(spec=PagBankClient)
    provider.create_charge.return_value = charge_result()
    return provider


@pytest.fixture
def host(mocker):
    return mocker.Mock()


@pytest.fixture
def notifier(host, store):
    return HostNotifier(host, store)


@pytest.fixture
def lifecycle(settings, store, provider, notifier, clock):
    return LifecycleManager(settings, store, provider, notifier, clock=clock)


@pytest.fixture
def reconciler(settings, store, provider, notifier, clock):
    return WebhookReconciler(settings, store, provider, notifier, clock=clock)
