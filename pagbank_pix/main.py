from typing import Optional

from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.concurrency import run_in_threadpool

from pagbank_pix.config import Settings
from pagbank_pix.database import create_session_factory
from pagbank_pix.host import CommerceHost, HostNotifier, HttpCommerceHost
from pagbank_pix.lifecycle import LifecycleManager
from pagbank_pix.log import configure_logging
from pagbank_pix.pagbank_client import PagBankClient
from pagbank_pix.reconciler import UNKNOWN_INTENT, Rejected, WebhookReconciler
from pagbank_pix.routes import router
from pagbank_pix.store import IntentStore


def create_app(settings: Optional[Settings] = None, provider: Optional[PagBankClient] = None,
               host: Optional[CommerceHost] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    store = IntentStore(create_session_factory(settings))
    provider = provider or PagBankClient(settings)
    notifier = HostNotifier(host or HttpCommerceHost(settings), store)

    app = FastAPI(title="PagBank Pix Payment Service")
    app.state.settings = settings
    app.state.store = store
    app.state.lifecycle = LifecycleManager(settings, store, provider, notifier)
    app.state.reconciler = WebhookReconciler(settings, store, provider, notifier)

    app.include_router(router)

    @app.post("/webhook")
    async def pagbank_webhook(request: Request, x_authenticity_token: str = Header(None)):
        payload = await request.body()
        outcome = await run_in_threadpool(
            request.app.state.reconciler.handle_notification, payload, x_authenticity_token,
        )
        if isinstance(outcome, Rejected):
            if outcome.reason == UNKNOWN_INTENT:
                # Acknowledged so PagBank stops redelivering an order we never created.
                return {"ok": False, "detail": outcome.reason}
            raise HTTPException(status_code=400, detail=outcome.reason)
        return {"ok": True}

    return app
