from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from marketplace.auth import require_principal
from marketplace.models import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentPage,
    Principal,
    WebhookResult,
)
from marketplace.services.payment_service import payment_service

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(request: PaymentIntentRequest, principal: Principal = Depends(require_principal)):
    return payment_service.create_intent(principal, request)


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
def confirm_payment(request: ConfirmPaymentRequest, principal: Principal = Depends(require_principal)):
    return payment_service.confirm_payment(principal, request)


@router.get("/history", response_model=PaymentPage)
def payment_history(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
):
    return payment_service.payment_history(principal, page=page, limit=limit)


@router.post("/webhook", response_model=WebhookResult)
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
    payload = await request.body()
    return await run_in_threadpool(payment_service.handle_webhook, payload, stripe_signature)
