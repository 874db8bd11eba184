"""Durable proof storage and the per-wallet reservation vault."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

from .types import InsufficientFundsError, Proof, StorageCorruptionError, sum_proofs

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# JSON documents
# ──────────────────────────────────────────────────────────────────────────────


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON so readers see either the old or the new document, never half."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, separators=(",", ":"))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any:
    """Return the parsed document, or None if the file does not exist.

    Raises:
        StorageCorruptionError: File exists but is not valid JSON
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageCorruptionError(f"Could not read {path.name}: {e}") from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageCorruptionError(f"{path.name} is not valid JSON: {e}") from e


def quarantine(path: Path) -> Path | None:
    """Move a corrupt file aside so later writes can't destroy it."""
    target = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
    try:
        os.replace(path, target)
    except FileNotFoundError:
        return None
    return target


def is_valid_proof(entry: Any) -> bool:
    return (
        isinstance(entry, dict)
        and isinstance(entry.get("id"), str)
        and isinstance(entry.get("amount"), int)
        and not isinstance(entry.get("amount"), bool)
        and entry["amount"] > 0
        and isinstance(entry.get("secret"), str)
        and isinstance(entry.get("C"), str)
    )


# ──────────────────────────────────────────────────────────────────────────────
# Proof store
# ──────────────────────────────────────────────────────────────────────────────


class ProofStore:
    """Proof set persisted as one JSON document.

    The balance is always the sum of what is on disk; nothing is cached.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.corruption: StorageCorruptionError | None = None

    def load_proofs(self) -> list[Proof]:
        """Load the stored proofs.

        A corrupt document yields an empty list. The error is logged and kept
        on ``self.corruption``, and the file is quarantined next to the original.
        """
        try:
            data = read_json(self.path)
            if data is None:
                return []
            if not isinstance(data, list):
                raise StorageCorruptionError("Proof store is not a list")
            if not all(is_valid_proof(entry) for entry in data):
                raise StorageCorruptionError("Proof store holds invalid entries")
        except StorageCorruptionError as e:
            moved = quarantine(self.path)
            logger.error("Proof store corrupt (%s); moved to %s", e, moved)
            self.corruption = e
            return []
        return [
            Proof(id=p["id"], amount=p["amount"], secret=p["secret"], C=p["C"])
            for p in data
        ]

    def save_proofs(self, proofs: list[Proof]) -> None:
        """Replace the stored set atomically."""
        write_json_atomic(
            self.path,
            [
                {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
                for p in proofs
            ],
        )

    def balance(self) -> int:
        return sum_proofs(self.load_proofs())


# ──────────────────────────────────────────────────────────────────────────────
# Proof selection
# ──────────────────────────────────────────────────────────────────────────────


def select_proofs(
    available: list[Proof],
    amount: int,
    fee_for: Callable[[list[Proof]], int] | None = None,
) -> list[Proof] | None:
    """Pick proofs covering ``amount`` plus the input fee of the pick itself.

    Prefers a single exact match, otherwise takes largest proofs first.
    Returns None if the available proofs can't cover it.
    """
    fee_for = fee_for or (lambda _: 0)
    for proof in available:
        if proof["amount"] == amount + fee_for([proof]):
            return [proof]

    selected: list[Proof] = []
    total = 0
    for proof in sorted(available, key=lambda p: p["amount"], reverse=True):
        if total >= amount + fee_for(selected):
            break
        selected.append(proof)
        total += proof["amount"]
    if total < amount + fee_for(selected):
        return None
    return selected


class ProofVault:
    """Serializes read-modify-write of the proof set for one wallet.

    Proofs handed out by ``reserve`` stay in the store but are invisible to
    other operations until ``commit`` removes them or ``release`` returns them.
    """

    def __init__(self, store: ProofStore) -> None:
        self.store = store
        self.lock = asyncio.Lock()
        self._reserved: set[str] = set()

    @property
    def reserved_secrets(self) -> frozenset[str]:
        return frozenset(self._reserved)

    def available(self) -> list[Proof]:
        return [p for p in self.store.load_proofs() if p["secret"] not in self._reserved]

    def available_balance(self) -> int:
        return sum_proofs(self.available())

    async def reserve(
        self,
        amount: int,
        fee_for: Callable[[list[Proof]], int] | None = None,
    ) -> list[Proof]:
        """Reserve proofs worth at least ``amount`` plus their input fee.

        Raises:
            InsufficientFundsError: Unreserved proofs do not cover it
        """
        async with self.lock:
            available = self.available()
            selected = select_proofs(available, amount, fee_for)
            if selected is None:
                fee = fee_for(available) if fee_for else 0
                raise InsufficientFundsError(amount + fee, sum_proofs(available))
            self._reserved.update(p["secret"] for p in selected)
            return [Proof(**p) for p in selected]

    def release(self, proofs: list[Proof]) -> None:
        """Return reserved proofs to the spendable pool."""
        self._reserved.difference_update(p["secret"] for p in proofs)

    async def commit(self, spent: list[Proof], added: list[Proof]) -> list[Proof]:
        """Remove ``spent`` and add ``added`` (deduplicated by secret).

        Re-reads the store under the lock so concurrent commits never lose
        each other's proofs. Returns the resulting proof set.
        """
        async with self.lock:
            spent_secrets = {p["secret"] for p in spent}
            proofs = [p for p in self.store.load_proofs() if p["secret"] not in spent_secrets]
            seen = {p["secret"] for p in proofs}
            for proof in added:
                if proof["secret"] not in seen:
                    proofs.append(Proof(**proof))
                    seen.add(proof["secret"])
            self.store.save_proofs(proofs)
            self._reserved.difference_update(spent_secrets)
            return proofs

    async def add(self, proofs: list[Proof]) -> list[Proof]:
        return await self.commit([], proofs)
