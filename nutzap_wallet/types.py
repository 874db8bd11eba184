"""Type definitions for the nutzap-wallet package following NUT-00 specifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypedDict


class Proof(TypedDict):
    """Cashu proof as held by the wallet.

    ``id`` is the keyset id and ``C`` the unblinded mint signature.
    """

    id: str
    amount: int
    secret: str
    C: str


def sum_proofs(proofs: list[Proof]) -> int:
    return sum(p["amount"] for p in proofs)


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────

ErrorKind = Literal[
    "validation",
    "insufficient_funds",
    "offline",
    "already_processed",
    "unknown",
]


class WalletError(Exception):
    """Base class for caller-facing wallet errors."""

    kind: ErrorKind = "unknown"

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ValidationError(WalletError):
    """Bad amount, malformed token, address or key. Rejected locally."""

    kind: ErrorKind = "validation"


class InsufficientFundsError(WalletError):
    kind: ErrorKind = "insufficient_funds"

    def __init__(self, need: int, have: int) -> None:
        super().__init__(f"insufficient balance: need {need}, have {have}")
        self.need = need
        self.have = have


class OfflineError(WalletError):
    """Mint or relays unreachable, or the session is not ready."""

    kind: ErrorKind = "offline"


class AlreadyProcessedError(WalletError):
    kind: ErrorKind = "already_processed"


class SigningUnavailableError(ValidationError):
    """The identity can not sign events (watch-only)."""


class StorageCorruptionError(WalletError):
    """Local storage could not be read back."""


class MintError(Exception):
    """Base exception for mint errors."""

    pass


class MintTimeoutError(MintError):
    """Mint did not answer within the configured timeout."""


class MintUnavailableError(MintError):
    """Mint could not be reached (connection refused, DNS, TLS...)."""


class TokenAlreadySpentError(MintError):
    """Mint reports the inputs as already spent (NUT error 11001)."""


class RelayError(Exception):
    """Base exception for relay errors."""

    pass


class LNURLError(Exception):
    """Base exception for LNURL errors."""

    pass


# ──────────────────────────────────────────────────────────────────────────────
# Nostr
# ──────────────────────────────────────────────────────────────────────────────


class EventKind:
    """Nostr event kinds used by the wallet."""

    ProofBackup = 7375  # NIP-60 token event, encrypted to self
    Nutzap = 9321  # NIP-61 nutzap
    WalletDescriptor = 37375  # parameterized replaceable wallet info


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class UnsignedEvent(TypedDict):
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions. Tag filters use ``#<tag>`` keys."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int


# ──────────────────────────────────────────────────────────────────────────────
# Mint responses
# ──────────────────────────────────────────────────────────────────────────────


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


@dataclass
class KeysetInfo:
    """Active keyset used by the wallet."""

    id: str
    unit: str
    keys: dict[str, str] = field(default_factory=dict)  # amount -> pubkey
    input_fee_ppk: int = 0
    active: bool = True


@dataclass
class MintQuote:
    """Pending Lightning deposit."""

    quote_id: str
    invoice: str
    amount: int
    created_at: float
    memo: str = ""
    legacy: bool = False  # pre-v1 ``/mint?hash=`` quote


@dataclass
class MeltQuote:
    quote_id: str
    amount: int
    fee_reserve: int
    invoice: str = ""


@dataclass
class MeltResult:
    paid: bool
    change_proofs: list[Proof]
    fee_paid: int
    state: str = "PAID"
    preimage: str | None = None


@dataclass
class SplitResult:
    send_proofs: list[Proof]
    change_proofs: list[Proof]


# ──────────────────────────────────────────────────────────────────────────────
# Wallet records
# ──────────────────────────────────────────────────────────────────────────────

TransactionKind = Literal[
    "nutzap_sent",
    "nutzap_received",
    "lightning_sent",
    "lightning_received",
    "cashu_sent",
    "cashu_received",
]


@dataclass(frozen=True)
class Transaction:
    id: str
    kind: TransactionKind
    amount: int
    timestamp: float
    counterparty: str | None = None
    memo: str | None = None
    fee: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "counterparty": self.counterparty,
            "memo": self.memo,
            "fee": self.fee,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        return cls(
            id=str(data["id"]),
            kind=data["kind"],
            amount=int(data["amount"]),
            timestamp=float(data["timestamp"]),
            counterparty=data.get("counterparty"),
            memo=data.get("memo"),
            fee=data.get("fee"),
        )


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED_OFFLINE = "degraded_offline"


@dataclass
class WalletState:
    """Wallet state derived from the proof store."""

    proofs: list[Proof]
    mint_url: str
    owner_pubkey: str
    status: SessionStatus = SessionStatus.UNINITIALIZED

    @property
    def balance(self) -> int:
        return sum_proofs(self.proofs)

    @property
    def online(self) -> bool:
        return self.status is SessionStatus.READY

    @property
    def proofs_by_keyset(self) -> dict[str, list[Proof]]:
        """Group proofs by keyset ID."""
        grouped: dict[str, list[Proof]] = {}
        for proof in self.proofs:
            grouped.setdefault(proof["id"], []).append(proof)
        return grouped


@dataclass
class WalletDescriptor:
    """Public wallet metadata published under the fixed wallet tag."""

    owner_pubkey: str
    tag: str
    mint_url: str
    name: str
    balance_hint: int
    event_id: str
    created_at: int


@dataclass
class Deposit:
    invoice: str
    quote_id: str
    amount: int


@dataclass
class PaymentResult:
    success: bool
    fee: int | None = None
    preimage: str | None = None
    error: str | None = None


@dataclass
class SendResult:
    amount: int
    token: str
    published: bool
    event_id: str | None = None
    error: str | None = None


@dataclass
class ClaimResult:
    claimed: int = 0
    total: int = 0


@dataclass
class ReceiveResult:
    amount: int
    error: str | None = None
    error_kind: ErrorKind | None = None
