"""Shared fakes: an in-memory mint and an in-memory relay network."""

import math
import re
import secrets
import time
import uuid
from typing import Any

import pytest

from nutzap_wallet import lightning
from nutzap_wallet.config import WalletSettings
from nutzap_wallet.crypto import split_amount
from nutzap_wallet.signer import LocalSigner
from nutzap_wallet.token import encode_token
from nutzap_wallet.types import (
    KeysetInfo,
    MeltQuote,
    MeltResult,
    MintError,
    MintQuote,
    MintUnavailableError,
    NostrEvent,
    NostrFilter,
    Proof,
    RelayError,
    SplitResult,
    TokenAlreadySpentError,
    sum_proofs,
)

MINT_URL = "https://mint.test"
KEYSET_ID = "009a1f293253e41e"

_INVOICE_RE = re.compile(r"^lnbcfake(\d+)x")


def fake_invoice(amount: int) -> str:
    """Invoice-looking string that carries its own amount."""
    return f"lnbcfake{amount}x{uuid.uuid4().hex}"


def fake_invoice_amount(invoice: str) -> int | None:
    match = _INVOICE_RE.match(invoice)
    return int(match.group(1)) if match else None


class FakeMint:
    """``MintCapability`` keeping issued and spent proofs in memory.

    Proofs carry random secrets and random curve-looking signatures; the
    fake never does blind-signature math.
    """

    def __init__(
        self,
        url: str = MINT_URL,
        *,
        keyset_id: str = KEYSET_ID,
        input_fee_ppk: int = 0,
    ) -> None:
        self.url = url
        self.keyset_id = keyset_id
        self.input_fee_ppk = input_fee_ppk
        self.unreachable = False
        self.legacy_only = False
        self.melt_paid = True
        self.fee_reserve = 0
        self.melt_fee = 0
        self.melt_change_lost = False
        self.closed = False
        self.issued: dict[str, Proof] = {}
        self.spent: set[str] = set()
        self.quotes: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}

    # ───────────────────────── Test controls ─────────────────────────────────

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of ``operation``."""
        self.failures.setdefault(operation, []).extend(errors)

    def pay(self, quote_id: str) -> None:
        self.quotes[quote_id]["state"] = "PAID"

    def issue(self, amount: int) -> list[Proof]:
        proofs = []
        for part in split_amount(amount):
            proof = Proof(
                id=self.keyset_id,
                amount=part,
                secret=secrets.token_hex(32),
                C="02" + secrets.token_hex(32),
            )
            self.issued[proof["secret"]] = proof
            proofs.append(proof)
        return proofs

    def token(self, amount: int, memo: str | None = None) -> str:
        """A token someone else minted here."""
        return encode_token(self.issue(amount), self.url, memo=memo)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # ───────────────────────── MintCapability ─────────────────────────────────

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self.unreachable:
            raise MintUnavailableError(f"{self.url} unreachable")
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _spend(self, proofs: list[Proof]) -> None:
        for proof in proofs:
            if proof["secret"] in self.spent:
                raise TokenAlreadySpentError("Token already spent")
            if proof["secret"] not in self.issued:
                raise MintError("Mint returned 400: unknown proof")
        for proof in proofs:
            self.spent.add(proof["secret"])

    async def load_keyset(self) -> KeysetInfo:
        self._enter("load_keyset")
        return KeysetInfo(
            id=self.keyset_id,
            unit="sat",
            keys={str(2**i): "02" + "11" * 32 for i in range(20)},
            input_fee_ppk=self.input_fee_ppk,
        )

    def input_fee(self, proofs: list[Proof]) -> int:
        return math.ceil(len(proofs) * self.input_fee_ppk / 1000)

    async def create_quote(
        self, amount: int, memo: str | None = None, *, legacy: bool = False
    ) -> MintQuote:
        self._enter("create_quote_legacy" if legacy else "create_quote")
        if self.legacy_only and not legacy:
            raise MintError("Mint returned 404: Not Found")
        quote_id = uuid.uuid4().hex
        self.quotes[quote_id] = {"amount": amount, "state": "UNPAID"}
        return MintQuote(
            quote_id=quote_id,
            invoice=fake_invoice(amount),
            amount=amount,
            created_at=time.time(),
            memo=memo or "",
            legacy=legacy,
        )

    async def check_quote(self, quote_id: str) -> str:
        self._enter("check_quote")
        return self.quotes[quote_id]["state"]

    async def mint_from_quote(
        self, quote_id: str, amount: int, *, legacy: bool = False
    ) -> list[Proof]:
        self._enter("mint_legacy" if legacy else "mint")
        quote = self.quotes.get(quote_id)
        if quote is None or quote["state"] != "PAID":
            raise MintError("Mint returned 400: quote not paid")
        quote["state"] = "ISSUED"
        return self.issue(amount)

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        self._enter("create_melt_quote")
        amount = fake_invoice_amount(invoice)
        if amount is None:
            raise MintError("Mint returned 400: bad invoice")
        return MeltQuote(
            quote_id=uuid.uuid4().hex,
            amount=amount,
            fee_reserve=self.fee_reserve,
            invoice=invoice,
        )

    async def melt(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        self._enter("melt")
        if not self.melt_paid:
            return MeltResult(paid=False, change_proofs=[], fee_paid=0, state="UNPAID")
        self._spend(proofs)
        change = self.issue(sum_proofs(proofs) - quote.amount - self.melt_fee)
        if self.melt_change_lost:
            change = []
        return MeltResult(
            paid=True,
            change_proofs=change,
            fee_paid=sum_proofs(proofs) - quote.amount - sum_proofs(change),
            preimage="00" * 32,
        )

    async def send(self, amount: int, proofs: list[Proof]) -> SplitResult:
        self._enter("send")
        change = sum_proofs(proofs) - amount - self.input_fee(proofs)
        if change < 0:
            raise MintError("Inputs do not cover amount plus input fee")
        self._spend(proofs)
        return SplitResult(send_proofs=self.issue(amount), change_proofs=self.issue(change))

    async def receive(self, proofs: list[Proof]) -> list[Proof]:
        self._enter("receive")
        amount = sum_proofs(proofs) - self.input_fee(proofs)
        self._spend(proofs)
        return self.issue(amount)

    async def check_spent(self, proofs: list[Proof]) -> set[str]:
        self._enter("check_spent")
        return {p["secret"] for p in proofs if p["secret"] in self.spent}

    async def aclose(self) -> None:
        self.closed = True


def _matches(event: NostrEvent, flt: NostrFilter) -> bool:
    if "ids" in flt and event["id"] not in flt["ids"]:
        return False
    if "kinds" in flt and event["kind"] not in flt["kinds"]:
        return False
    if "authors" in flt and event["pubkey"] not in flt["authors"]:
        return False
    if "since" in flt and event["created_at"] < flt["since"]:
        return False
    if "until" in flt and event["created_at"] > flt["until"]:
        return False
    for key, values in flt.items():
        if key.startswith("#"):
            name = key[1:]
            if not any(
                len(tag) >= 2 and tag[0] == name and tag[1] in values
                for tag in event["tags"]
            ):
                return False
    return True


class FakeNetwork:
    """``BroadcastNetwork`` storing every accepted event in a list."""

    def __init__(self) -> None:
        self.events: list[NostrEvent] = []
        self.publish_fails = False
        self.unreachable = False

    async def publish(self, event: NostrEvent) -> bool:
        if self.unreachable:
            raise RelayError("All relays failed")
        if self.publish_fails:
            return False
        self.events.append(event)
        return True

    async def query(
        self, filters: list[NostrFilter], timeout: float = 5.0
    ) -> list[NostrEvent]:
        if self.unreachable:
            raise RelayError("All relays failed")
        return [
            NostrEvent(**event)
            for event in self.events
            if any(_matches(event, flt) for flt in filters)
        ]

    def of_kind(self, kind: int) -> list[NostrEvent]:
        return [e for e in self.events if e["kind"] == kind]


# ───────────────────────── Fixtures ─────────────────────────────────


@pytest.fixture
def mint() -> FakeMint:
    return FakeMint()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def signer() -> LocalSigner:
    return LocalSigner.generate()


@pytest.fixture
def settings(tmp_path) -> WalletSettings:
    return WalletSettings(
        data_dir=tmp_path,
        mint_urls=[MINT_URL],
        relay_urls=[],
        mint_timeout=1.0,
        relay_timeout=0.5,
        handshake_budget=0.5,
        mint_retries=0,
        retry_base_delay=0.0,
    )


@pytest.fixture
def fake_invoices(monkeypatch) -> None:
    """Make BOLT11 amount decoding understand ``fake_invoice`` strings."""
    monkeypatch.setattr(lightning, "invoice_amount_sat", fake_invoice_amount)
