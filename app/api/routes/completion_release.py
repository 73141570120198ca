"""Completion release routes — pay out a finished bounty's escrow."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_completion_release_service
from app.services.completion_release_service import CompletionReleaseService, ReleaseRequest
from app.services.idempotency_service import IdempotencyGuard, get_idempotency_guard, idempotent

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class CompletionReleaseRequest(BaseModel):
    bounty_id: str = Field(min_length=1)
    hunter_id: str = Field(min_length=1)
    platform_fee_percentage: float | None = Field(default=None, ge=0, le=100)
    idempotency_key: str | None = Field(default=None, max_length=200)


class CompletionReleaseResponse(BaseModel):
    transaction_id: str
    release_amount_cents: int
    platform_fee_cents: int


class ReleaseTransaction(BaseModel):
    id: str
    user_id: str
    amount_cents: int
    status: str
    created_at: datetime | None = None


class ReleaseStatusResponse(BaseModel):
    bounty_id: str
    released: bool
    transaction: ReleaseTransaction | None = None


# ── Routes ──────────────────────────────────────────────────────────


@router.post("", response_model=CompletionReleaseResponse)
async def release_completed_bounty(
    body: CompletionReleaseRequest,
    service: CompletionReleaseService = Depends(get_completion_release_service),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
):
    """Release escrow to the hunter. A repeated idempotency key answers 409."""
    key = f"completion_release:{body.idempotency_key}" if body.idempotency_key else None
    async with idempotent(guard, key):
        result = await service.process(
            ReleaseRequest(
                bounty_id=body.bounty_id,
                hunter_id=body.hunter_id,
                platform_fee_percentage=body.platform_fee_percentage,
            )
        )

    return CompletionReleaseResponse(
        transaction_id=result.transaction_id,
        release_amount_cents=result.release_amount_cents,
        platform_fee_cents=result.platform_fee_cents,
    )


@router.get("/{bounty_id}/status", response_model=ReleaseStatusResponse)
async def get_release_status(
    bounty_id: str,
    service: CompletionReleaseService = Depends(get_completion_release_service),
):
    status = await service.get_status(bounty_id)
    transaction = None
    if status.transaction is not None:
        tx = status.transaction
        transaction = ReleaseTransaction(
            id=tx.id,
            user_id=tx.user_id,
            amount_cents=tx.amount_cents,
            status=tx.status.value,
            created_at=tx.created_at,
        )
    return ReleaseStatusResponse(bounty_id=status.bounty_id, released=status.released, transaction=transaction)
