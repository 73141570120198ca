"""Typed provider events.

Stripe event types are mapped onto a closed set of ``EventKind`` values and the
event's ``data.object`` is parsed into a payload dataclass for that kind.
Types with no mapping become ``UnknownEvent`` so new provider event types are
accepted without a deploy.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.core.exceptions import ValidationError


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REQUIRES_ACTION = "payment.requires_action"
    CHARGE_REFUNDED = "charge.refunded"
    TRANSFER_CREATED = "transfer.created"
    TRANSFER_PAID = "transfer.paid"
    TRANSFER_FAILED = "transfer.failed"
    ACCOUNT_UPDATED = "account.updated"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"
    UNKNOWN = "unknown"


# Stripe event type -> kind. Types that already use the kind's name
# (charge.refunded, transfer.*, account.updated, payout.*) resolve directly.
STRIPE_EVENT_KINDS: dict[str, EventKind] = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_intent.requires_action": EventKind.PAYMENT_REQUIRES_ACTION,
}


# ── Payloads ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PaymentSucceeded:
    payment_intent_id: str
    user_id: str | None
    amount_cents: int
    currency: str = "usd"


@dataclass(frozen=True)
class PaymentFailed:
    payment_intent_id: str
    user_id: str | None
    failure_code: str | None = None
    failure_message: str | None = None


@dataclass(frozen=True)
class PaymentRequiresAction:
    payment_intent_id: str
    user_id: str | None


@dataclass(frozen=True)
class Refund:
    refund_id: str
    amount_cents: int
    reason: str | None = None


@dataclass(frozen=True)
class ChargeRefunded:
    charge_id: str
    payment_intent_id: str | None
    refunds: tuple[Refund, ...] = ()


@dataclass(frozen=True)
class TransferCreated:
    transfer_id: str
    user_id: str | None
    amount_cents: int
    destination: str | None = None
    withdrawal_id: str | None = None  # set on transfers this service created


@dataclass(frozen=True)
class TransferPaid:
    transfer_id: str
    amount_cents: int
    destination: str | None = None


@dataclass(frozen=True)
class TransferFailed:
    transfer_id: str
    failure_code: str | None = None
    failure_message: str | None = None


@dataclass(frozen=True)
class AccountUpdated:
    account_id: str
    user_id: str | None
    details_submitted: bool = False
    payouts_enabled: bool = False

    @property
    def requirements_satisfied(self) -> bool:
        return self.details_submitted and self.payouts_enabled


@dataclass(frozen=True)
class PayoutPaid:
    payout_id: str
    amount_cents: int
    destination: str | None = None


@dataclass(frozen=True)
class PayoutFailed:
    payout_id: str
    amount_cents: int
    failure_code: str | None = None
    failure_message: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str


EventPayload = (
    PaymentSucceeded
    | PaymentFailed
    | PaymentRequiresAction
    | ChargeRefunded
    | TransferCreated
    | TransferPaid
    | TransferFailed
    | AccountUpdated
    | PayoutPaid
    | PayoutFailed
    | UnknownEvent
)


@dataclass(frozen=True)
class WebhookEvent:
    """A verified provider event ready for dispatch."""

    event_id: str
    event_type: str
    kind: EventKind
    payload: EventPayload
    raw_body: str = field(repr=False)
    created_at: datetime | None = None


# ── Parsing ─────────────────────────────────────────────────────────


def kind_for(event_type: str) -> EventKind:
    """Resolve a provider event type to its kind (UNKNOWN when unmapped)."""
    if event_type in STRIPE_EVENT_KINDS:
        return STRIPE_EVENT_KINDS[event_type]
    try:
        kind = EventKind(event_type)
    except ValueError:
        return EventKind.UNKNOWN
    return kind


def _cents(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"Field '{name}' must be an integer amount in cents")
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"Field '{name}' must be an integer amount in cents") from exc


def _metadata_value(obj: dict, key: str) -> str | None:
    metadata = obj.get("metadata") or {}
    value = metadata.get(key) if isinstance(metadata, dict) else None
    return str(value) if value else None


def _user_id(obj: dict) -> str | None:
    return _metadata_value(obj, "user_id")


def _last_payment_error(obj: dict) -> dict:
    error = obj.get("last_payment_error")
    return error if isinstance(error, dict) else {}


def _parse_refunds(obj: dict) -> tuple[Refund, ...]:
    container = obj.get("refunds")
    refunds = container.get("data") if isinstance(container, dict) else None
    if not isinstance(refunds, list):
        return ()
    return tuple(
        Refund(
            refund_id=str(refund["id"]),
            amount_cents=_cents(refund.get("amount"), "refund.amount"),
            reason=refund.get("reason"),
        )
        for refund in refunds
        if isinstance(refund, dict) and refund.get("id")
    )


def _parse_payload(kind: EventKind, event_type: str, obj: dict) -> EventPayload:
    obj_id = str(obj.get("id") or "")

    if kind is EventKind.PAYMENT_SUCCEEDED:
        return PaymentSucceeded(
            payment_intent_id=obj_id,
            user_id=_user_id(obj),
            amount_cents=_cents(obj.get("amount_received", obj.get("amount")), "amount"),
            currency=str(obj.get("currency") or "usd"),
        )
    if kind is EventKind.PAYMENT_FAILED:
        error = _last_payment_error(obj)
        return PaymentFailed(
            payment_intent_id=obj_id,
            user_id=_user_id(obj),
            failure_code=error.get("code"),
            failure_message=error.get("message"),
        )
    if kind is EventKind.PAYMENT_REQUIRES_ACTION:
        return PaymentRequiresAction(payment_intent_id=obj_id, user_id=_user_id(obj))
    if kind is EventKind.CHARGE_REFUNDED:
        payment_intent = obj.get("payment_intent")
        return ChargeRefunded(
            charge_id=obj_id,
            payment_intent_id=str(payment_intent) if payment_intent else None,
            refunds=_parse_refunds(obj),
        )
    if kind is EventKind.TRANSFER_CREATED:
        return TransferCreated(
            transfer_id=obj_id,
            user_id=_user_id(obj),
            amount_cents=_cents(obj.get("amount"), "amount"),
            destination=obj.get("destination"),
            withdrawal_id=_metadata_value(obj, "withdrawal_id"),
        )
    if kind is EventKind.TRANSFER_PAID:
        return TransferPaid(
            transfer_id=obj_id,
            amount_cents=_cents(obj.get("amount"), "amount"),
            destination=obj.get("destination"),
        )
    if kind is EventKind.TRANSFER_FAILED:
        return TransferFailed(
            transfer_id=obj_id,
            failure_code=obj.get("failure_code"),
            failure_message=obj.get("failure_message"),
        )
    if kind is EventKind.ACCOUNT_UPDATED:
        return AccountUpdated(
            account_id=obj_id,
            user_id=_user_id(obj),
            details_submitted=bool(obj.get("details_submitted")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
        )
    if kind is EventKind.PAYOUT_PAID:
        return PayoutPaid(
            payout_id=obj_id,
            amount_cents=_cents(obj.get("amount"), "amount"),
            destination=obj.get("destination"),
        )
    if kind is EventKind.PAYOUT_FAILED:
        return PayoutFailed(
            payout_id=obj_id,
            amount_cents=_cents(obj.get("amount"), "amount"),
            failure_code=obj.get("failure_code"),
            failure_message=obj.get("failure_message"),
        )
    return UnknownEvent(event_type=event_type)


def parse_event(data: Any, raw_body: str) -> WebhookEvent:
    """Build a WebhookEvent from a decoded provider envelope.

    Raises:
        ValidationError: the envelope lacks an id, a type, or a data object
    """
    if not isinstance(data, dict):
        raise ValidationError("Event payload must be a JSON object")

    event_id = data.get("id")
    event_type = data.get("type")
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Event payload is missing 'id'")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Event payload is missing 'type'")

    obj = (data.get("data") or {}).get("object") if isinstance(data.get("data"), dict) else None
    if not isinstance(obj, dict):
        raise ValidationError("Event payload is missing 'data.object'")

    created = data.get("created")
    created_at = datetime.fromtimestamp(created, UTC) if isinstance(created, int) else None

    kind = kind_for(event_type)
    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        payload=_parse_payload(kind, event_type, obj),
        raw_body=raw_body,
        created_at=created_at,
    )
