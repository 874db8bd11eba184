"""NutZap Wallet - self-custodial Cashu ecash wallet over Nostr.

One ``WalletSession`` per identity holds the proofs locally, moves value in
and out over Lightning, and sends or claims nutzaps through Nostr relays.
"""

__version__ = "0.1.0"

from .config import WalletSettings
from .session import WalletSession
from .signer import IdentityProvider, LocalSigner, Signer, WatchOnlySigner
from .types import (
    AlreadyProcessedError,
    InsufficientFundsError,
    OfflineError,
    SessionStatus,
    ValidationError,
    WalletError,
)

__all__ = [
    # Main entry point
    "WalletSession",
    "WalletSettings",
    # Identities
    "Signer",
    "LocalSigner",
    "WatchOnlySigner",
    "IdentityProvider",
    # Errors
    "WalletError",
    "ValidationError",
    "InsufficientFundsError",
    "OfflineError",
    "AlreadyProcessedError",
    "SessionStatus",
]
