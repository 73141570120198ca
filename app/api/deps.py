"""FastAPI dependencies wiring routes to services."""

from fastapi import Request

from app.core.config import get_settings
from app.core.exceptions import ConfigurationError
from app.db.base import get_session_factory
from app.services.account_service import SqlAccountService
from app.services.completion_release_service import CompletionReleaseService
from app.services.escrow_service import EscrowService
from app.services.ledger_service import SqlLedgerService
from app.services.payout_service import PayoutService
from app.webhooks.dispatcher import EventDispatcher
from app.webhooks.store import SqlEventStore
from app.webhooks.verification import SignatureVerifier


def build_dispatcher() -> EventDispatcher:
    """Assemble the dispatcher from settings and the shared session factory.

    Raises:
        ConfigurationError: STRIPE_WEBHOOK_SECRET is not set
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise ConfigurationError("Webhook secret not configured")

    session_factory = get_session_factory()
    return EventDispatcher(
        verifier=SignatureVerifier(
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        ),
        store=SqlEventStore(session_factory, lease_seconds=settings.webhook_claim_lease_seconds),
        ledger=SqlLedgerService(session_factory),
        accounts=SqlAccountService(session_factory),
        handler_timeout=settings.webhook_handler_timeout_seconds,
    )


def get_dispatcher(request: Request) -> EventDispatcher:
    """App-scoped dispatcher so timed-out handlers can be drained at shutdown."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = build_dispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher


def get_completion_release_service() -> CompletionReleaseService:
    session_factory = get_session_factory()
    return CompletionReleaseService(
        ledger=SqlLedgerService(session_factory),
        accounts=SqlAccountService(session_factory),
        session_factory=session_factory,
        default_fee_percentage=get_settings().platform_fee_percentage,
    )


def get_payout_service() -> PayoutService:
    session_factory = get_session_factory()
    return PayoutService(
        ledger=SqlLedgerService(session_factory),
        accounts=SqlAccountService(session_factory),
        stripe_secret_key=get_settings().stripe_secret_key,
    )


def get_escrow_service() -> EscrowService:
    session_factory = get_session_factory()
    return EscrowService(ledger=SqlLedgerService(session_factory), session_factory=session_factory)


def get_ledger_service() -> SqlLedgerService:
    return SqlLedgerService(get_session_factory())
