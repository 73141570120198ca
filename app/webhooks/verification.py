"""Stripe webhook signature verification.

Security contract:
- Verification runs on the exact raw body bytes, before any JSON parsing
- Missing secret, missing header, stale timestamp or mismatched signature
  all raise InvalidSignatureError (fail-closed)
- Verification has no side effects
"""

import json

import stripe

from app.core.exceptions import InvalidSignatureError, ValidationError
from app.webhooks.events import WebhookEvent, parse_event

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerifier:
    """Verifies ``Stripe-Signature`` headers against one endpoint secret."""

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, raw_body: bytes, signature_header: str | None) -> WebhookEvent:
        """Verify the signature and return the parsed event.

        Args:
            raw_body: Request body exactly as received
            signature_header: Value of the Stripe-Signature header

        Returns:
            WebhookEvent built from the verified payload

        Raises:
            InvalidSignatureError: secret/header missing or signature invalid
            ValidationError: signature valid but the payload is not a usable event
        """
        if not self._secret:
            raise InvalidSignatureError("Webhook secret not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignatureError("Payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(f"Signature verification failed: {exc}") from exc

        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Invalid JSON payload") from exc

        return parse_event(data, payload)
