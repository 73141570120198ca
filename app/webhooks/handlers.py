"""Webhook handlers — one per event kind.

Handlers receive a HandlerContext and the kind's payload. They raise to
signal a retryable failure; returning normally means the event's effects
are durable. Each handler is safe to run twice for the same event: the
ledger dedupes on the provider object ids it is given.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from app.core.exceptions import DepositNotFoundError, TransferNotFoundError
from app.db.models.wallet_transaction import TransactionStatus
from app.services.account_service import AccountService
from app.services.ledger_service import LedgerService, TransitionOutcome
from app.webhooks.events import (
    AccountUpdated,
    ChargeRefunded,
    EventKind,
    PaymentFailed,
    PaymentRequiresAction,
    PaymentSucceeded,
    PayoutFailed,
    PayoutPaid,
    TransferCreated,
    TransferFailed,
    TransferPaid,
    UnknownEvent,
    WebhookEvent,
)
from app.webhooks.store import EventStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HandlerContext:
    event: WebhookEvent
    ledger: LedgerService
    accounts: AccountService
    store: EventStore


Handler = Callable[[HandlerContext, Any], Awaitable[None]]


# ── Payments ────────────────────────────────────────────────────────


async def handle_payment_succeeded(ctx: HandlerContext, payment: PaymentSucceeded) -> None:
    if not payment.user_id:
        logger.warning("payment_succeeded_missing_user", event_id=ctx.event.event_id)
        return
    if payment.amount_cents <= 0:
        logger.warning("payment_succeeded_zero_amount", event_id=ctx.event.event_id)
        return

    tx_id = await ctx.ledger.create_deposit(payment.user_id, payment.amount_cents, payment.payment_intent_id)
    logger.info(
        "payment_deposit_applied",
        event_id=ctx.event.event_id,
        transaction_id=tx_id,
        amount_cents=payment.amount_cents,
    )


async def handle_payment_failed(ctx: HandlerContext, payment: PaymentFailed) -> None:
    reason = payment.failure_message or payment.failure_code or "unknown"
    await ctx.store.record_note(ctx.event.event_id, f"payment_failed: {reason}")
    logger.info(
        "payment_failed_recorded",
        event_id=ctx.event.event_id,
        payment_intent_id=payment.payment_intent_id,
        failure_code=payment.failure_code,
    )


async def handle_payment_requires_action(ctx: HandlerContext, payment: PaymentRequiresAction) -> None:
    logger.info(
        "payment_requires_action",
        event_id=ctx.event.event_id,
        payment_intent_id=payment.payment_intent_id,
    )


async def handle_charge_refunded(ctx: HandlerContext, charge: ChargeRefunded) -> None:
    """Debit each refund on the charge; refunds already applied are skipped.

    A refund can arrive before the deposit it reverses. That raises
    DepositNotFoundError so the event stays unprocessed and is redelivered.
    """
    if not charge.payment_intent_id:
        logger.warning("charge_refunded_no_payment_intent", event_id=ctx.event.event_id, charge_id=charge.charge_id)
        return

    deposit = await ctx.ledger.find_deposit(charge.payment_intent_id)
    if deposit is None:
        raise DepositNotFoundError(charge.payment_intent_id)

    for refund in charge.refunds:
        if refund.amount_cents <= 0:
            continue
        tx_id, created = await ctx.ledger.create_refund(
            deposit.user_id,
            refund.amount_cents,
            refund_id=refund.refund_id,
            charge_id=charge.charge_id,
            payment_ref=charge.payment_intent_id,
            reason=refund.reason,
        )
        if created:
            logger.info(
                "refund_applied",
                event_id=ctx.event.event_id,
                refund_id=refund.refund_id,
                transaction_id=tx_id,
                amount_cents=refund.amount_cents,
            )


# ── Transfers ───────────────────────────────────────────────────────


def unmatched_transfer_note(transfer_id: str) -> str:
    return f"unmatched_transfer:{transfer_id}"


async def handle_transfer_created(ctx: HandlerContext, transfer: TransferCreated) -> None:
    if not transfer.user_id:
        logger.warning("transfer_created_missing_user", event_id=ctx.event.event_id, transfer_id=transfer.transfer_id)
        return

    tx_id = await ctx.ledger.attach_transfer(
        transfer.user_id,
        transfer.amount_cents,
        transfer.transfer_id,
        withdrawal_id=transfer.withdrawal_id,
    )
    if tx_id is None:
        # Later transfer.paid / transfer.failed events look this note up and stop retrying
        await ctx.store.record_note(ctx.event.event_id, unmatched_transfer_note(transfer.transfer_id))
        logger.warning(
            "transfer_created_no_matching_withdrawal",
            event_id=ctx.event.event_id,
            transfer_id=transfer.transfer_id,
            amount_cents=transfer.amount_cents,
        )


async def _transition_transfer(
    ctx: HandlerContext,
    transfer_id: str,
    status: TransactionStatus,
    failure_code: str | None = None,
    failure_message: str | None = None,
) -> None:
    """Apply a transfer status change.

    An unknown transfer is retried (its transfer.created may not have been
    processed yet) unless transfer.created already ran and matched nothing.
    """
    try:
        transition = await ctx.ledger.update_transfer_status(transfer_id, status, failure_code, failure_message)
    except TransferNotFoundError:
        if not await ctx.store.has_processed_note(unmatched_transfer_note(transfer_id)):
            raise
        await ctx.store.record_note(ctx.event.event_id, unmatched_transfer_note(transfer_id))
        logger.error(
            "transfer_status_for_unmatched_transfer",
            event_id=ctx.event.event_id,
            transfer_id=transfer_id,
            requested_status=status.value,
        )
        return

    if transition.outcome is TransitionOutcome.ANOMALOUS:
        logger.error(
            "transfer_status_anomaly",
            event_id=ctx.event.event_id,
            transfer_id=transfer_id,
            current_status=transition.previous_status.value,
            requested_status=status.value,
        )
    elif transition.outcome is TransitionOutcome.UNCHANGED:
        logger.info("transfer_status_unchanged", event_id=ctx.event.event_id, transfer_id=transfer_id)


async def handle_transfer_paid(ctx: HandlerContext, transfer: TransferPaid) -> None:
    await _transition_transfer(ctx, transfer.transfer_id, TransactionStatus.COMPLETED)


async def handle_transfer_failed(ctx: HandlerContext, transfer: TransferFailed) -> None:
    await _transition_transfer(
        ctx,
        transfer.transfer_id,
        TransactionStatus.FAILED,
        failure_code=transfer.failure_code,
        failure_message=transfer.failure_message,
    )


# ── Accounts & payouts ──────────────────────────────────────────────


async def handle_account_updated(ctx: HandlerContext, account: AccountUpdated) -> None:
    if not account.user_id:
        logger.warning("account_updated_missing_user", event_id=ctx.event.event_id, account_id=account.account_id)
        return
    await ctx.accounts.update_connect_status(account.user_id, account.account_id, account.requirements_satisfied)


async def handle_payout_paid(ctx: HandlerContext, payout: PayoutPaid) -> None:
    logger.info("payout_paid", event_id=ctx.event.event_id, payout_id=payout.payout_id, amount_cents=payout.amount_cents)


async def handle_payout_failed(ctx: HandlerContext, payout: PayoutFailed) -> None:
    logger.warning(
        "payout_failed",
        event_id=ctx.event.event_id,
        payout_id=payout.payout_id,
        failure_code=payout.failure_code,
    )


async def handle_unknown(ctx: HandlerContext, payload: UnknownEvent) -> None:
    logger.info("webhook_event_unhandled", event_id=ctx.event.event_id, event_type=payload.event_type)


ROUTES: dict[EventKind, Handler] = {
    EventKind.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
    EventKind.PAYMENT_REQUIRES_ACTION: handle_payment_requires_action,
    EventKind.CHARGE_REFUNDED: handle_charge_refunded,
    EventKind.TRANSFER_CREATED: handle_transfer_created,
    EventKind.TRANSFER_PAID: handle_transfer_paid,
    EventKind.TRANSFER_FAILED: handle_transfer_failed,
    EventKind.ACCOUNT_UPDATED: handle_account_updated,
    EventKind.PAYOUT_PAID: handle_payout_paid,
    EventKind.PAYOUT_FAILED: handle_payout_failed,
    EventKind.UNKNOWN: handle_unknown,
}

_missing = set(EventKind) - set(ROUTES)
if _missing:
    raise RuntimeError(f"No webhook handler registered for: {sorted(k.value for k in _missing)}")
