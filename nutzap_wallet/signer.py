"""Signing identities: local keys, watch-only pubkeys and caller-supplied providers."""

from __future__ import annotations

from typing import Protocol, Union, runtime_checkable

from coincurve import PrivateKey

from .crypto import (
    decode_nsec,
    get_pubkey,
    nip44_decrypt,
    nip44_encrypt,
    normalize_pubkey,
    schnorr_sign,
)
from .events import compute_event_id
from .types import NostrEvent, SigningUnavailableError, UnsignedEvent, ValidationError


@runtime_checkable
class Signer(Protocol):
    """Anything that can act for a Nostr identity (local key, NIP-46 bunker...)."""

    @property
    def can_sign(self) -> bool: ...

    async def get_public_key(self) -> str: ...

    async def sign_event(self, event: UnsignedEvent) -> NostrEvent: ...

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str: ...

    async def nip44_decrypt(self, pubkey: str, payload: str) -> str: ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Host application's key store. Returns nsec/hex, or None for watch-only."""

    async def get_signing_key(self) -> str | None: ...

    async def get_public_key(self) -> str: ...


class LocalSigner:
    """BIP-340 signer holding the private key in memory."""

    def __init__(self, privkey: PrivateKey) -> None:
        self._privkey = privkey
        self.pubkey = get_pubkey(privkey)

    @classmethod
    def from_key(cls, key: str) -> LocalSigner:
        """Build from ``nsec1...`` or hex."""
        try:
            return cls(decode_nsec(key))
        except ValueError as e:
            raise ValidationError(f"Invalid private key: {e}") from e

    @classmethod
    def generate(cls) -> LocalSigner:
        return cls(PrivateKey())

    @property
    def can_sign(self) -> bool:
        return True

    async def get_public_key(self) -> str:
        return self.pubkey

    async def sign_event(self, event: UnsignedEvent) -> NostrEvent:
        if event["pubkey"] != self.pubkey:
            raise ValidationError("Event pubkey does not match signer")
        event_id = compute_event_id(event)
        return NostrEvent(
            id=event_id,
            pubkey=event["pubkey"],
            created_at=event["created_at"],
            kind=event["kind"],
            tags=event["tags"],
            content=event["content"],
            sig=schnorr_sign(self._privkey, bytes.fromhex(event_id)),
        )

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        return nip44_encrypt(plaintext, self._privkey, pubkey)

    async def nip44_decrypt(self, pubkey: str, payload: str) -> str:
        return nip44_decrypt(payload, self._privkey, pubkey)


class WatchOnlySigner:
    """Receive-only identity: knows the pubkey, can not sign or decrypt."""

    def __init__(self, pubkey: str) -> None:
        try:
            self.pubkey = normalize_pubkey(pubkey)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    @property
    def can_sign(self) -> bool:
        return False

    async def get_public_key(self) -> str:
        return self.pubkey

    async def sign_event(self, event: UnsignedEvent) -> NostrEvent:
        raise SigningUnavailableError("Watch-only identity can not sign events")

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        raise SigningUnavailableError("Watch-only identity can not encrypt")

    async def nip44_decrypt(self, pubkey: str, payload: str) -> str:
        raise SigningUnavailableError("Watch-only identity can not decrypt")


Identity = Union[Signer, IdentityProvider, str]


async def resolve_signer(identity: Identity) -> Signer:
    """Turn whatever the caller handed in into a ``Signer``.

    Raises:
        ValidationError: Key material is malformed
    """
    if isinstance(identity, str):
        return LocalSigner.from_key(identity)
    if isinstance(identity, Signer):
        return identity
    if isinstance(identity, IdentityProvider):
        key = await identity.get_signing_key()
        if key:
            return LocalSigner.from_key(key)
        return WatchOnlySigner(await identity.get_public_key())
    raise ValidationError(f"Unsupported identity type: {type(identity).__name__}")
