#!/usr/bin/env python3
"""Test proof persistence, corruption handling, selection and reservations."""

import asyncio
import json

import pytest

from nutzap_wallet.store import ProofStore, ProofVault, select_proofs
from nutzap_wallet.types import InsufficientFundsError, Proof


def proof(amount: int, secret: str) -> Proof:
    return Proof(id="009a1f293253e41e", amount=amount, secret=secret, C="02" + "00" * 32)


@pytest.fixture
def store(tmp_path) -> ProofStore:
    return ProofStore(tmp_path / "proofs.json")


class TestProofStore:
    def test_missing_file_is_empty(self, store: ProofStore) -> None:
        assert store.load_proofs() == []
        assert store.balance() == 0
        assert store.corruption is None

    def test_save_and_load(self, store: ProofStore) -> None:
        store.save_proofs([proof(8, "a"), proof(2, "b")])
        assert store.load_proofs() == [proof(8, "a"), proof(2, "b")]
        assert store.balance() == 10
        # no temp files left next to the document
        assert [p.name for p in store.path.parent.iterdir()] == ["proofs.json"]

    def test_invalid_json_is_quarantined(self, store: ProofStore) -> None:
        store.path.write_text("[{not json")

        assert store.load_proofs() == []
        assert store.corruption is not None
        assert not store.path.exists()
        quarantined = list(store.path.parent.glob("proofs.json.corrupt-*"))
        assert len(quarantined) == 1
        assert quarantined[0].read_text() == "[{not json"

    def test_invalid_entries_are_quarantined(self, store: ProofStore) -> None:
        store.path.write_text(json.dumps([{"id": "x", "amount": -1, "secret": "s", "C": "c"}]))
        assert store.load_proofs() == []
        assert store.corruption is not None

    def test_save_after_corruption_keeps_the_quarantined_copy(
        self, store: ProofStore
    ) -> None:
        store.path.write_text("garbage")
        store.load_proofs()
        store.save_proofs([proof(4, "new")])
        assert store.balance() == 4
        assert len(list(store.path.parent.glob("proofs.json.corrupt-*"))) == 1


class TestSelectProofs:
    def test_exact_single_match_preferred(self) -> None:
        available = [proof(64, "big"), proof(8, "exact"), proof(4, "small")]
        assert select_proofs(available, 8) == [proof(8, "exact")]

    def test_largest_first(self) -> None:
        available = [proof(1, "a"), proof(16, "b"), proof(4, "c"), proof(2, "d")]
        selected = select_proofs(available, 18)
        assert [p["amount"] for p in selected] == [16, 4]

    def test_fee_is_covered(self) -> None:
        available = [proof(8, "a"), proof(2, "b"), proof(1, "c")]
        # one sat per input
        selected = select_proofs(available, 8, lambda ps: len(ps))
        assert [p["amount"] for p in selected] == [8, 2]

    def test_not_enough(self) -> None:
        assert select_proofs([proof(4, "a")], 5) is None


class TestProofVault:
    @pytest.mark.asyncio
    async def test_reserved_proofs_are_hidden(self, store: ProofStore) -> None:
        store.save_proofs([proof(8, "a"), proof(4, "b")])
        vault = ProofVault(store)

        reserved = await vault.reserve(8)
        assert reserved == [proof(8, "a")]
        assert vault.available_balance() == 4
        # still on disk until committed
        assert store.balance() == 12

        vault.release(reserved)
        assert vault.available_balance() == 12

    @pytest.mark.asyncio
    async def test_reserve_insufficient(self, store: ProofStore) -> None:
        store.save_proofs([proof(4, "a")])
        vault = ProofVault(store)
        with pytest.raises(InsufficientFundsError) as exc:
            await vault.reserve(5)
        assert exc.value.need == 5
        assert exc.value.have == 4
        assert exc.value.kind == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_commit_removes_spent_and_dedups_added(self, store: ProofStore) -> None:
        store.save_proofs([proof(8, "a"), proof(4, "b")])
        vault = ProofVault(store)
        spent = await vault.reserve(8)

        await vault.commit(spent, [proof(2, "c"), proof(2, "c"), proof(4, "b")])

        assert sorted(p["secret"] for p in store.load_proofs()) == ["b", "c"]
        assert store.balance() == 6
        assert vault.reserved_secrets == frozenset()

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overlap(self, store: ProofStore) -> None:
        store.save_proofs([proof(4, str(i)) for i in range(4)])
        vault = ProofVault(store)

        first, second = await asyncio.gather(vault.reserve(8), vault.reserve(8))

        assert not {p["secret"] for p in first} & {p["secret"] for p in second}
        with pytest.raises(InsufficientFundsError):
            await vault.reserve(1)

    @pytest.mark.asyncio
    async def test_concurrent_adds_are_all_kept(self, store: ProofStore) -> None:
        vault = ProofVault(store)
        await asyncio.gather(*(vault.add([proof(1, f"s{i}")]) for i in range(10)))
        assert store.balance() == 10
