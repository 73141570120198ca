"""Re-export all models so Base.metadata sees them."""

from app.db.models.bounty import Bounty
from app.db.models.idempotency_key import IdempotencyKey
from app.db.models.profile import Profile
from app.db.models.provider_event import ProviderEvent
from app.db.models.wallet_transaction import TransactionKind, TransactionStatus, WalletTransaction

__all__ = [
    "Bounty",
    "IdempotencyKey",
    "Profile",
    "ProviderEvent",
    "TransactionKind",
    "TransactionStatus",
    "WalletTransaction",
]
