"""PayoutService — move wallet balance to a hunter's connected Stripe account.

A withdrawal is held in the ledger first, then a Stripe transfer is created
for it. The transfer carries ``metadata.user_id`` and ``metadata.withdrawal_id``
so the ``transfer.*`` webhooks find the same withdrawal row. If Stripe rejects
the transfer the hold is released in the ledger.
"""

from dataclasses import dataclass

import stripe
import structlog

from app.core.exceptions import BusinessRuleError, ConfigurationError, PayoutFailedError
from app.services.account_service import SqlAccountService
from app.services.ledger_service import SqlLedgerService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WithdrawalResult:
    transaction_id: str
    transfer_id: str
    amount_cents: int


class PayoutService:
    def __init__(
        self,
        ledger: SqlLedgerService,
        accounts: SqlAccountService,
        stripe_secret_key: str,
        currency: str = "usd",
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.stripe_secret_key = stripe_secret_key
        self.currency = currency

    def _get_stripe(self) -> None:
        if not self.stripe_secret_key:
            raise ConfigurationError("Stripe secret key not configured")
        stripe.api_key = self.stripe_secret_key

    async def request_withdrawal(self, user_id: str, amount_cents: int) -> WithdrawalResult:
        """Hold ``amount_cents`` and transfer it to the user's connected account.

        Raises:
            BusinessRuleError: no onboarded connected account
            InsufficientFundsError: balance below the requested amount
            PayoutFailedError: Stripe rejected the transfer (the hold is credited back)
        """
        log = logger.bind(user_id=user_id, amount_cents=amount_cents)

        profile = await self.accounts.get_profile(user_id)
        if profile is None or not profile.stripe_account_id:
            raise BusinessRuleError("No connected payout account")
        if profile.stripe_connect_onboarded_at is None:
            raise BusinessRuleError("Connected account onboarding is not complete")
        self._get_stripe()

        tx_id = await self.ledger.create_withdrawal(user_id, amount_cents)

        try:
            transfer = await stripe.Transfer.create_async(
                amount=amount_cents,
                currency=self.currency,
                destination=profile.stripe_account_id,
                metadata={"user_id": user_id, "withdrawal_id": tx_id},
                idempotency_key=f"withdrawal:{tx_id}",
            )
        except stripe.StripeError as exc:
            reason = exc.user_message or str(exc)
            log.error("withdrawal_transfer_failed", transaction_id=tx_id, error_type=type(exc).__name__)
            await self.ledger.fail_withdrawal(tx_id, reason)
            raise PayoutFailedError(f"Transfer to connected account failed: {reason}") from exc

        # transfer.created may already have linked it; attaching again is a no-op
        await self.ledger.attach_transfer(user_id, amount_cents, transfer.id, withdrawal_id=tx_id)

        log.info("withdrawal_transfer_created", transaction_id=tx_id, transfer_id=transfer.id)
        return WithdrawalResult(transaction_id=tx_id, transfer_id=transfer.id, amount_cents=amount_cents)
