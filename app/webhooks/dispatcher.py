"""Event Dispatcher — verify, claim, route and record one provider event.

Flow for every delivery:
    verify signature -> claim event id -> run handler (bounded) -> mark processed

The provider retries anything that is not answered with a 2xx, so every
failure after a successful claim leaves the event unprocessed and releases
the claim. A handler that outlives the timeout is shielded: the response
reports failure while the handler finishes and records its own outcome.
"""

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import structlog

from app.core.exceptions import InvalidSignatureError, ValidationError
from app.db.models.provider_event import ProviderEvent
from app.services.account_service import AccountService
from app.services.ledger_service import LedgerService
from app.webhooks.events import EventKind, WebhookEvent, parse_event
from app.webhooks.handlers import ROUTES, Handler, HandlerContext
from app.webhooks.store import ClaimStatus, EventStore
from app.webhooks.verification import SignatureVerifier

logger = structlog.get_logger(__name__)


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE_IGNORED = "duplicate_ignored"
    REJECTED_BAD_SIGNATURE = "rejected_bad_signature"
    PROCESSING_FAILED = "processing_failed"


@dataclass(frozen=True)
class DispatchResult:
    outcome: Outcome
    event_id: str | None = None
    event_type: str | None = None
    detail: str | None = None


class EventDispatcher:
    def __init__(
        self,
        verifier: SignatureVerifier,
        store: EventStore,
        ledger: LedgerService,
        accounts: AccountService,
        handler_timeout: float = 10.0,
        routes: Mapping[EventKind, Handler] | None = None,
    ):
        self.verifier = verifier
        self.store = store
        self.ledger = ledger
        self.accounts = accounts
        self.handler_timeout = handler_timeout
        self.routes = {**ROUTES, **(routes or {})}
        self._inflight: set[asyncio.Task] = set()

    async def handle(self, raw_body: bytes, signature_header: str | None) -> DispatchResult:
        """Process one raw webhook delivery."""
        try:
            event = self.verifier.verify(raw_body, signature_header)
        except (InvalidSignatureError, ValidationError) as exc:
            logger.warning("webhook_rejected", reason=exc.message)
            return DispatchResult(Outcome.REJECTED_BAD_SIGNATURE, detail=exc.message)

        return await self.dispatch(event)

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """Claim and process an already verified event."""
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        try:
            status = await self.store.claim(event)
        except Exception as exc:
            log.error("webhook_claim_failed", exc_info=True)
            return DispatchResult(Outcome.PROCESSING_FAILED, event.event_id, event.event_type, type(exc).__name__)

        if status is ClaimStatus.ALREADY_PROCESSED:
            log.info("webhook_duplicate_event_ignored")
            return DispatchResult(Outcome.DUPLICATE_IGNORED, event.event_id, event.event_type)
        if status is ClaimStatus.IN_FLIGHT:
            log.info("webhook_event_in_flight")
            return DispatchResult(Outcome.PROCESSING_FAILED, event.event_id, event.event_type, "in_flight")
        if status is ClaimStatus.RECLAIMED:
            log.info("webhook_event_retry")

        task = asyncio.create_task(self._process(event))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        try:
            ok = await asyncio.wait_for(asyncio.shield(task), timeout=self.handler_timeout)
        except TimeoutError:
            log.warning("webhook_handler_timeout", timeout_seconds=self.handler_timeout)
            return DispatchResult(Outcome.PROCESSING_FAILED, event.event_id, event.event_type, "timeout")

        if not ok:
            return DispatchResult(Outcome.PROCESSING_FAILED, event.event_id, event.event_type, "handler_failed")
        return DispatchResult(Outcome.ACCEPTED, event.event_id, event.event_type)

    async def _process(self, event: WebhookEvent) -> bool:
        log = logger.bind(event_id=event.event_id, event_type=event.event_type, kind=event.kind.value)
        ctx = HandlerContext(event=event, ledger=self.ledger, accounts=self.accounts, store=self.store)

        try:
            await self.routes[event.kind](ctx, event.payload)
        except Exception as exc:
            log.error("webhook_handler_failed", error_type=type(exc).__name__, exc_info=True)
            try:
                await self.store.release(event.event_id, f"{type(exc).__name__}: {exc}")
            except Exception:
                log.error("webhook_claim_release_failed", exc_info=True)
            return False

        try:
            await self.store.mark_processed(event.event_id)
        except Exception:
            # Lease expires and the next delivery re-runs the (idempotent) handler
            log.error("webhook_mark_processed_failed", exc_info=True)
            return False

        log.info("webhook_event_processed")
        return True

    async def replay(self, row: ProviderEvent) -> DispatchResult:
        """Re-dispatch a stored event; its signature was verified when received."""
        event = parse_event(json.loads(row.raw_payload), row.raw_payload)
        return await self.dispatch(event)

    async def drain(self) -> None:
        """Wait for handlers still running after their request timed out."""
        if self._inflight:
            logger.info("webhook_dispatcher_draining", inflight=len(self._inflight))
            await asyncio.gather(*self._inflight, return_exceptions=True)
