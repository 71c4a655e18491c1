from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from typing import List

from leadscore.api.deps import get_account_id, get_services
from leadscore.core.limiter import limiter, CREDITS_LIMIT
from leadscore.services.factory import Services

router = APIRouter()


class TransactionView(BaseModel):
    amount: int
    balance_after: int
    transaction_type: str
    reference_id: str | None = None
    description: str
    created_at: str


class BalanceResponse(BaseModel):
    account_id: str
    credit_balance: int
    recent_transactions: List[TransactionView] = []


@router.get("/credits/balance", response_model=BalanceResponse)
@limiter.limit(CREDITS_LIMIT)
async def get_balance(
    request: Request,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    balance = await services.ledger.get_balance(account_id)
    transactions = await services.ledger.get_transactions(account_id, limit=20)
    return BalanceResponse(
        account_id=account_id,
        credit_balance=balance,
        recent_transactions=[
            TransactionView(
                amount=tx.amount,
                balance_after=tx.balance_after,
                transaction_type=tx.transaction_type,
                reference_id=tx.reference_id,
                description=tx.description,
                created_at=tx.created_at,
            )
            for tx in transactions
        ],
    )
