"""Transaction history, pending quotes and processed-token bookkeeping."""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any

from .store import ProofStore, quarantine, read_json, write_json_atomic
from .types import MintQuote, StorageCorruptionError, Transaction, TransactionKind

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
PROCESSED_TOKENS_LIMIT = 2000


def _load_document(path: Path, expected: type) -> Any:
    """Read a document of the expected JSON type; quarantine it if it's not."""
    try:
        data = read_json(path)
        if data is not None and not isinstance(data, expected):
            raise StorageCorruptionError(f"{path.name} has unexpected shape")
    except StorageCorruptionError as e:
        moved = quarantine(path)
        logger.error("Discarding corrupt %s (%s); moved to %s", path.name, e, moved)
        return None
    return data


class TransactionLedger:
    """Append-only history capped at the newest ``HISTORY_LIMIT`` entries."""

    def __init__(self, path: Path, *, limit: int = HISTORY_LIMIT) -> None:
        self.path = path
        self.limit = limit

    def _load(self) -> list[Transaction]:
        data = _load_document(self.path, list) or []
        transactions = []
        for entry in data:
            try:
                transactions.append(Transaction.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed history entry")
        return transactions

    def record(
        self,
        kind: TransactionKind,
        amount: int,
        *,
        counterparty: str | None = None,
        memo: str | None = None,
        fee: int | None = None,
    ) -> Transaction:
        tx = Transaction(
            id=uuid.uuid4().hex,
            kind=kind,
            amount=amount,
            timestamp=time.time(),
            counterparty=counterparty,
            memo=memo,
            fee=fee,
        )
        # newest first; the oldest entries fall off the end
        history = [tx, *self._load()][: self.limit]
        write_json_atomic(self.path, [t.to_dict() for t in history])
        logger.info("Recorded %s of %d sat", kind, amount)
        return tx

    def history(self, limit: int = 50) -> list[Transaction]:
        """Most recent transactions first."""
        return self._load()[: max(limit, 0)]


class QuoteBook:
    """Pending Lightning deposit quotes keyed by quote id."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, dict[str, Any]]:
        return _load_document(self.path, dict) or {}

    def _save(self, quotes: dict[str, dict[str, Any]]) -> None:
        write_json_atomic(self.path, quotes)

    def add(self, quote: MintQuote) -> None:
        quotes = self._load()
        quotes[quote.quote_id] = {
            "amount": quote.amount,
            "created_at": quote.created_at,
            "memo": quote.memo,
            "invoice": quote.invoice,
            "legacy": quote.legacy,
        }
        self._save(quotes)

    def get(self, quote_id: str) -> MintQuote | None:
        entry = self._load().get(quote_id)
        if not isinstance(entry, dict):
            return None
        try:
            return MintQuote(
                quote_id=quote_id,
                invoice=str(entry.get("invoice", "")),
                amount=int(entry["amount"]),
                created_at=float(entry["created_at"]),
                memo=str(entry.get("memo") or ""),
                legacy=bool(entry.get("legacy", False)),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed stored quote %s", quote_id)
            return None

    def remove(self, quote_id: str) -> None:
        quotes = self._load()
        if quotes.pop(quote_id, None) is not None:
            self._save(quotes)

    def all(self) -> list[MintQuote]:
        return [q for qid in self._load() if (q := self.get(qid)) is not None]

    def expired(self, retention: float, now: float | None = None) -> list[MintQuote]:
        now = time.time() if now is None else now
        return [q for q in self.all() if now - q.created_at > retention]


class ProcessedTokens:
    """Fingerprints of tokens already redeemed, oldest dropped past the cap."""

    def __init__(self, path: Path, *, limit: int = PROCESSED_TOKENS_LIMIT) -> None:
        self.path = path
        self.limit = limit

    def _load(self) -> list[str]:
        return [fp for fp in _load_document(self.path, list) or [] if isinstance(fp, str)]

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._load()

    def add(self, fingerprint: str) -> None:
        fingerprints = self._load()
        if fingerprint in fingerprints:
            return
        fingerprints.append(fingerprint)
        write_json_atomic(self.path, fingerprints[-self.limit :])


class LocalStorage:
    """All persisted state of one identity, under its own directory."""

    DOCUMENTS = (
        "proofs.json",
        "mint.json",
        "history.json",
        "quotes.json",
        "processed_tokens.json",
    )

    def __init__(self, root: Path, owner_pubkey: str) -> None:
        self.directory = Path(root) / owner_pubkey
        self.proofs = ProofStore(self.directory / "proofs.json")
        self.history = TransactionLedger(self.directory / "history.json")
        self.quotes = QuoteBook(self.directory / "quotes.json")
        self.processed = ProcessedTokens(self.directory / "processed_tokens.json")
        self._mint_path = self.directory / "mint.json"

    @property
    def preferred_mint(self) -> str | None:
        data = _load_document(self._mint_path, dict) or {}
        url = data.get("mint_url")
        return url if isinstance(url, str) and url else None

    @preferred_mint.setter
    def preferred_mint(self, url: str) -> None:
        write_json_atomic(self._mint_path, {"mint_url": url})

    def clear(self) -> None:
        for name in self.DOCUMENTS:
            (self.directory / name).unlink(missing_ok=True)
        logger.info("Cleared local wallet storage in %s", self.directory)
