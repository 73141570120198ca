"""Wallet routes — withdrawals to connected accounts, escrow funding and balances."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_escrow_service, get_ledger_service, get_payout_service
from app.services.escrow_service import EscrowService
from app.services.idempotency_service import IdempotencyGuard, get_idempotency_guard, idempotent
from app.services.ledger_service import SqlLedgerService
from app.services.payout_service import PayoutService

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class WithdrawalRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount_cents: int = Field(gt=0)
    idempotency_key: str | None = Field(default=None, max_length=200)


class WithdrawalResponse(BaseModel):
    transaction_id: str
    transfer_id: str
    amount_cents: int


class EscrowRequest(BaseModel):
    bounty_id: str = Field(min_length=1)
    idempotency_key: str | None = Field(default=None, max_length=200)


class EscrowResponse(BaseModel):
    bounty_id: str
    transaction_id: str


class BalanceResponse(BaseModel):
    user_id: str
    balance_cents: int


# ── Routes ──────────────────────────────────────────────────────────


@router.post("/withdrawals", response_model=WithdrawalResponse)
async def request_withdrawal(
    body: WithdrawalRequest,
    service: PayoutService = Depends(get_payout_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
):
    """Transfer wallet balance to the user's connected account."""
    key = f"withdrawal:{body.idempotency_key}" if body.idempotency_key else None
    async with idempotent(guard, key):
        result = await service.request_withdrawal(body.user_id, body.amount_cents)

    return WithdrawalResponse(
        transaction_id=result.transaction_id,
        transfer_id=result.transfer_id,
        amount_cents=result.amount_cents,
    )


@router.post("/escrow", response_model=EscrowResponse)
async def fund_escrow(
    body: EscrowRequest,
    service: EscrowService = Depends(get_escrow_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
):
    key = f"escrow:{body.idempotency_key}" if body.idempotency_key else None
    async with idempotent(guard, key):
        tx_id = await service.fund(body.bounty_id)
    return EscrowResponse(bounty_id=body.bounty_id, transaction_id=tx_id)


@router.get("/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(user_id: str, ledger: SqlLedgerService = Depends(get_ledger_service)):
    return BalanceResponse(user_id=user_id, balance_cents=await ledger.get_balance(user_id))
