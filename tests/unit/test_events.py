#!/usr/bin/env python3
"""Test event ids, signature checks, tag parsing and signers."""

import pytest

from nutzap_wallet.events import (
    EventTags,
    build_event,
    compute_event_id,
    nutzap_tags,
    verify_event,
)
from nutzap_wallet.signer import (
    LocalSigner,
    WatchOnlySigner,
    resolve_signer,
)
from nutzap_wallet.types import EventKind, SigningUnavailableError, ValidationError


class TestEventIds:
    def test_id_is_canonical_sha256(self) -> None:
        event = build_event("ab" * 32, 1, [["p", "cd" * 32]], "hi", created_at=1700000000)
        # same input, same id; any field change gives a new id
        assert compute_event_id(event) == compute_event_id(dict(event))
        changed = dict(event, content="hi!")
        assert compute_event_id(changed) != compute_event_id(event)

    def test_non_ascii_content_is_not_escaped(self) -> None:
        a = build_event("ab" * 32, 1, [], "⚡", created_at=1)
        b = build_event("ab" * 32, 1, [], "\\u26a1", created_at=1)
        assert compute_event_id(a) != compute_event_id(b)


class TestVerifyEvent:
    @pytest.mark.asyncio
    async def test_signed_event_verifies(self) -> None:
        signer = LocalSigner.generate()
        event = await signer.sign_event(
            build_event(signer.pubkey, EventKind.Nutzap, [["p", "cd" * 32]], "zap")
        )
        assert verify_event(event)

    @pytest.mark.asyncio
    async def test_tampering_is_detected(self) -> None:
        signer = LocalSigner.generate()
        event = await signer.sign_event(build_event(signer.pubkey, 1, [], "original"))

        assert not verify_event(dict(event, content="changed"))
        assert not verify_event(dict(event, sig="00" * 64))
        other = LocalSigner.generate()
        assert not verify_event(dict(event, pubkey=other.pubkey))

    @pytest.mark.parametrize(
        "event",
        [None, "event", {}, {"id": "zz", "pubkey": "ab", "sig": "cd"}],
    )
    def test_malformed_events_rejected(self, event) -> None:
        assert not verify_event(event)


class TestEventTags:
    def test_first_occurrence_wins(self) -> None:
        tags = EventTags.parse([["p", "first"], ["p", "second"], ["amount", "21"]])
        assert tags.p == "first"
        assert tags.amount == 21

    def test_bad_numbers_become_none(self) -> None:
        tags = EventTags.parse([["amount", "lots"], ["balance", "1e3"]])
        assert tags.amount is None
        assert tags.balance is None

    def test_short_and_unknown_tags_ignored(self) -> None:
        tags = EventTags.parse([["p"], ["e", "x"], ["unit", "sat", "extra"]])
        assert tags.p is None
        assert tags.unit == "sat"

    def test_nutzap_tags_roundtrip(self) -> None:
        tags = EventTags.parse(nutzap_tags("cd" * 32, 200, "cashuBxyz", "https://m"))
        assert tags.p == "cd" * 32
        assert tags.amount == 200
        assert tags.unit == "sat"
        assert tags.proof == "cashuBxyz"
        assert tags.mint == "https://m"


class TestSigners:
    @pytest.mark.asyncio
    async def test_signer_refuses_foreign_pubkey(self) -> None:
        signer = LocalSigner.generate()
        with pytest.raises(ValidationError):
            await signer.sign_event(build_event("ab" * 32, 1, []))

    @pytest.mark.asyncio
    async def test_watch_only_can_not_sign(self) -> None:
        watcher = WatchOnlySigner("ab" * 32)
        assert not watcher.can_sign
        with pytest.raises(SigningUnavailableError):
            await watcher.sign_event(build_event("ab" * 32, 1, []))
        with pytest.raises(SigningUnavailableError):
            await watcher.nip44_decrypt("ab" * 32, "payload")

    @pytest.mark.asyncio
    async def test_resolve_from_key_string(self) -> None:
        signer = LocalSigner.generate()
        resolved = await resolve_signer(signer._privkey.secret.hex())
        assert await resolved.get_public_key() == signer.pubkey
        assert resolved.can_sign

    @pytest.mark.asyncio
    async def test_resolve_passes_signers_through(self) -> None:
        signer = LocalSigner.generate()
        assert await resolve_signer(signer) is signer

    @pytest.mark.asyncio
    async def test_provider_without_key_is_watch_only(self) -> None:
        class Provider:
            async def get_signing_key(self):
                return None

            async def get_public_key(self):
                return "ef" * 32

        resolved = await resolve_signer(Provider())
        assert isinstance(resolved, WatchOnlySigner)
        assert await resolved.get_public_key() == "ef" * 32

    @pytest.mark.asyncio
    async def test_resolve_rejects_bad_key(self) -> None:
        with pytest.raises(ValidationError):
            await resolve_signer("not a key")
