class PaymentsError(Exception):
    """Base exception for the payments backend.

    ``status_code`` is what the API layer answers with when the error
    reaches a route unhandled.
    """

    status_code: int = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class InvalidSignatureError(PaymentsError):
    """Raised when a provider payload fails signature verification."""

    status_code = 400


class ValidationError(PaymentsError):
    """Raised when a request or payload is malformed."""

    status_code = 400


class BusinessRuleError(PaymentsError):
    """Raised when a well-formed request violates a business rule."""

    status_code = 422


class DuplicateRequestError(PaymentsError):
    """Raised when an idempotency key has already been used."""

    status_code = 409

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Duplicate request for idempotency key '{key}'")


class NotFoundError(PaymentsError):
    """Raised when a referenced resource does not exist."""

    status_code = 404

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} '{identifier}' not found")


class ConfigurationError(PaymentsError):
    """Raised when a required secret or setting is missing."""

    status_code = 500


class LedgerError(PaymentsError):
    """Raised when a ledger operation cannot be applied."""

    pass


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take a balance below zero."""

    status_code = 422

    def __init__(self, user_id: str, balance_cents: int, requested_cents: int):
        self.user_id = user_id
        self.balance_cents = balance_cents
        self.requested_cents = requested_cents
        super().__init__(
            f"Insufficient balance for user '{user_id}': has {balance_cents}, needs {requested_cents}"
        )


class TransferNotFoundError(LedgerError):
    """Raised when no wallet transaction is linked to a provider transfer."""

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"No wallet transaction linked to transfer '{transfer_id}'")


class DepositNotFoundError(LedgerError):
    """Raised when a refund references a payment with no recorded deposit yet."""

    def __init__(self, payment_ref: str):
        self.payment_ref = payment_ref
        super().__init__(f"No deposit recorded for payment '{payment_ref}'")


class PayoutFailedError(PaymentsError):
    """Raised when the provider rejects a transfer to a connected account."""

    status_code = 502
