from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from pagbank_pix.auth import verify_token
from pagbank_pix.errors import CheckoutFailed, GatewayUnavailable, IntentNotFound, RefundFailed, ValidationError

router = APIRouter(dependencies=[Depends(verify_token)])


class PaymentRequest(BaseModel):
    order_id: str
    amount: int
    currency: str = "BRL"
    expiration_minutes: Optional[int] = None


class RefundRequest(BaseModel):
    order_id: str
    amount: int
    reason: str = ""


@router.post("/payments")
def start_payment(payment: PaymentRequest, request: Request):
    lifecycle = request.app.state.lifecycle
    try:
        intent = lifecycle.start_payment(
            payment.order_id,
            payment.amount,
            currency=payment.currency,
            expiration_minutes=payment.expiration_minutes,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CheckoutFailed as e:
        raise HTTPException(status_code=502, detail=str(e))
    except GatewayUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return intent.display()


@router.get("/payments/{order_id}")
def payment_details(order_id: str, request: Request):
    details = request.app.state.lifecycle.payment_details(order_id)
    if details is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return details


@router.post("/refunds")
def refund(refund: RefundRequest, request: Request):
    lifecycle = request.app.state.lifecycle
    try:
        intent = lifecycle.request_refund(refund.order_id, refund.amount, refund.reason)
    except IntentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValidationError, RefundFailed) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "refunded", "refunded_amount": intent.refunded_amount}


@router.post("/maintenance/expire")
def expire(request: Request):
    expired = request.app.state.lifecycle.expire_stale_pending()
    return {"expired": len(expired)}


@router.post("/maintenance/reconcile")
def reconcile(request: Request):
    return {"checked": request.app.state.reconciler.reconcile_pending()}


@router.post("/maintenance/host-callbacks")
def retry_host_callbacks(request: Request):
    return {"delivered": request.app.state.reconciler.retry_host_callbacks()}
