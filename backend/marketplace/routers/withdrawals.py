from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from marketplace.auth import require_principal
from marketplace.models import (
    BalanceEvent,
    EarningsPage,
    Principal,
    ProviderBalance,
    Withdrawal,
    WithdrawalCreateRequest,
    WithdrawalPage,
    WithdrawalStatusUpdateRequest,
)
from marketplace.services.ledger import balance_ledger

router = APIRouter(tags=["balance"])


@router.get("/balance", response_model=ProviderBalance)
def get_balance(
    owner_id: Optional[str] = Query(default=None),
    principal: Principal = Depends(require_principal),
):
    return balance_ledger.get_balance(principal, owner_id=owner_id)


@router.get("/balance/earnings", response_model=EarningsPage)
def earnings_history(
    owner_id: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
):
    return balance_ledger.earnings_history(principal, owner_id=owner_id, page=page, limit=limit)


@router.get("/balance/events", response_model=list[BalanceEvent])
def balance_events(
    owner_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50),
    principal: Principal = Depends(require_principal),
):
    return balance_ledger.balance_events(principal, owner_id=owner_id, limit=limit)


@router.post("/withdrawals", response_model=Withdrawal, status_code=status.HTTP_201_CREATED)
def request_withdrawal(request: WithdrawalCreateRequest, principal: Principal = Depends(require_principal)):
    return balance_ledger.request_withdrawal(principal, request)


@router.get("/withdrawals", response_model=WithdrawalPage)
def list_withdrawals(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    principal: Principal = Depends(require_principal),
):
    return balance_ledger.list_withdrawals(principal, status=status_filter, page=page, limit=limit)


@router.patch("/withdrawals/{withdrawal_id}/status", response_model=Withdrawal)
def update_withdrawal_status(
    withdrawal_id: str,
    request: WithdrawalStatusUpdateRequest,
    principal: Principal = Depends(require_principal),
):
    return balance_ledger.update_withdrawal_status(principal, withdrawal_id, request)
