"""Tests for the event dispatcher: dedupe, failure boundary, timeouts and replay."""

import asyncio

import pytest

from app.services.account_service import SqlAccountService
from app.services.ledger_service import SqlLedgerService
from app.webhooks.dispatcher import EventDispatcher, Outcome
from app.webhooks.events import EventKind
from app.webhooks.handlers import handle_payment_succeeded
from app.webhooks.store import SqlEventStore
from app.webhooks.verification import SignatureVerifier

pytestmark = pytest.mark.unit

PAYMENT = {"id": "pi_1", "amount": 5000, "amount_received": 5000, "currency": "usd", "metadata": {"user_id": "u1"}}


@pytest.fixture
def store(session_factory):
    return SqlEventStore(session_factory, lease_seconds=120)


@pytest.fixture
def ledger(session_factory):
    return SqlLedgerService(session_factory)


@pytest.fixture
def make_dispatcher(session_factory, store, ledger, webhook_secret):
    def _make(routes=None, handler_timeout: float = 5.0) -> EventDispatcher:
        return EventDispatcher(
            verifier=SignatureVerifier(webhook_secret),
            store=store,
            ledger=ledger,
            accounts=SqlAccountService(session_factory),
            handler_timeout=handler_timeout,
            routes=routes,
        )

    return _make


async def test_event_is_accepted_then_duplicate_ignored(make_dispatcher, signed_event, ledger, store):
    dispatcher = make_dispatcher()
    body, header = signed_event("evt_1", "payment_intent.succeeded", PAYMENT)

    first = await dispatcher.handle(body, header)
    second = await dispatcher.handle(body, header)

    assert first.outcome is Outcome.ACCEPTED
    assert first.event_id == "evt_1"
    assert second.outcome is Outcome.DUPLICATE_IGNORED
    assert await ledger.get_balance("u1") == 5000
    assert (await store.get("evt_1")).processed is True


async def test_bad_signature_writes_nothing(make_dispatcher, signed_event, store):
    dispatcher = make_dispatcher()
    body, _ = signed_event("evt_1", "payment_intent.succeeded", PAYMENT)

    result = await dispatcher.handle(body, "t=1,v1=deadbeef")

    assert result.outcome is Outcome.REJECTED_BAD_SIGNATURE
    assert await store.get("evt_1") is None


async def test_malformed_signed_payload_is_rejected(make_dispatcher, sign):
    result = await make_dispatcher().handle(b'{"id": "evt_1"}', sign('{"id": "evt_1"}'))

    assert result.outcome is Outcome.REJECTED_BAD_SIGNATURE


async def test_handler_failure_leaves_event_retryable(make_dispatcher, signed_event, ledger, store):
    calls = []

    async def flaky(ctx, payload):
        calls.append(ctx.event.event_id)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        await handle_payment_succeeded(ctx, payload)

    dispatcher = make_dispatcher(routes={EventKind.PAYMENT_SUCCEEDED: flaky})
    body, header = signed_event("evt_1", "payment_intent.succeeded", PAYMENT)

    failed = await dispatcher.handle(body, header)
    row = await store.get("evt_1")
    assert failed.outcome is Outcome.PROCESSING_FAILED
    assert row.processed is False
    assert "database unavailable" in row.last_error
    assert await ledger.get_balance("u1") == 0

    retried = await dispatcher.handle(body, header)
    assert retried.outcome is Outcome.ACCEPTED
    assert await ledger.get_balance("u1") == 5000
    assert (await store.get("evt_1")).attempts == 2


async def test_unknown_event_type_is_accepted(make_dispatcher, signed_event, store):
    body, header = signed_event("evt_unknown", "customer.created", {"id": "cus_1"})

    result = await make_dispatcher().handle(body, header)

    assert result.outcome is Outcome.ACCEPTED
    assert (await store.get("evt_unknown")).processed is True


async def test_timeout_reports_failure_but_handler_finishes(make_dispatcher, signed_event, store):
    finished = asyncio.Event()

    async def slow(ctx, payload):
        await asyncio.sleep(0.2)
        finished.set()

    dispatcher = make_dispatcher(routes={EventKind.PAYMENT_SUCCEEDED: slow}, handler_timeout=0.05)
    body, header = signed_event("evt_slow", "payment_intent.succeeded", PAYMENT)

    result = await dispatcher.handle(body, header)
    assert result.outcome is Outcome.PROCESSING_FAILED
    assert result.detail == "timeout"

    await dispatcher.drain()
    assert finished.is_set()
    assert (await store.get("evt_slow")).processed is True


async def test_concurrent_deliveries_run_handler_once(make_dispatcher, signed_event):
    calls = []

    async def slow(ctx, payload):
        calls.append(ctx.event.event_id)
        await asyncio.sleep(0.1)

    dispatcher = make_dispatcher(routes={EventKind.PAYMENT_SUCCEEDED: slow})
    body, header = signed_event("evt_race", "payment_intent.succeeded", PAYMENT)

    results = await asyncio.gather(*(dispatcher.handle(body, header) for _ in range(3)))

    assert len(calls) == 1
    assert [r.outcome for r in results].count(Outcome.ACCEPTED) == 1
    assert all(r.outcome is not Outcome.REJECTED_BAD_SIGNATURE for r in results)


async def test_replay_processes_stored_event(make_dispatcher, signed_event, store, ledger):
    async def broken(ctx, payload):
        raise RuntimeError("down")

    body, header = signed_event("evt_1", "payment_intent.succeeded", PAYMENT)
    await make_dispatcher(routes={EventKind.PAYMENT_SUCCEEDED: broken}).handle(body, header)

    backlog = await store.list_backlog()
    assert [row.provider_event_id for row in backlog] == ["evt_1"]

    result = await make_dispatcher().replay(backlog[0])

    assert result.outcome is Outcome.ACCEPTED
    assert await ledger.get_balance("u1") == 5000
    assert await store.list_backlog() == []
