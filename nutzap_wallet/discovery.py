"""Public wallet descriptor: one replaceable event per user under a fixed tag."""

from __future__ import annotations

import logging

from .config import DEFAULT_WALLET_TAG
from .crypto import normalize_pubkey
from .events import EventTags, build_event, descriptor_tags, verify_event
from .relay import BroadcastNetwork
from .signer import Signer
from .types import (
    EventKind,
    NostrEvent,
    RelayError,
    ValidationError,
    WalletDescriptor,
)

logger = logging.getLogger(__name__)


def parse_descriptor(event: NostrEvent, tag: str) -> WalletDescriptor | None:
    """Descriptor from an already verified event, or None if it isn't one."""
    tags = EventTags.parse(event["tags"])
    if event["kind"] != EventKind.WalletDescriptor or tags.d != tag or not tags.mint:
        return None
    return WalletDescriptor(
        owner_pubkey=event["pubkey"],
        tag=tag,
        mint_url=tags.mint,
        name=tags.name or "",
        balance_hint=tags.balance if tags.balance is not None else 0,
        event_id=event["id"],
        created_at=event["created_at"],
    )


class WalletDiscovery:
    def __init__(
        self,
        signer: Signer,
        network: BroadcastNetwork,
        *,
        tag: str = DEFAULT_WALLET_TAG,
        query_timeout: float = 5.0,
    ) -> None:
        self.signer = signer
        self.network = network
        self.tag = tag
        self.query_timeout = query_timeout

    async def publish(
        self, mint_url: str, name: str, balance_hint: int = 0
    ) -> NostrEvent:
        """Publish (replace) this identity's descriptor. Carries no secrets.

        Raises:
            SigningUnavailableError: Watch-only identity
            RelayError: No relay accepted the event
        """
        pubkey = await self.signer.get_public_key()
        event = await self.signer.sign_event(
            build_event(
                pubkey,
                EventKind.WalletDescriptor,
                descriptor_tags(self.tag, mint_url, name, max(balance_hint, 0)),
            )
        )
        if not await self.network.publish(event):
            raise RelayError("No relay accepted the wallet descriptor")
        logger.info("Published wallet descriptor %s for mint %s", event["id"][:8], mint_url)
        return event

    async def find(self, owner_pubkey: str | None = None) -> WalletDescriptor | None:
        """Most recent valid descriptor of ``owner_pubkey`` (default: self).

        The newest ``created_at`` wins; equal timestamps fall back to the
        larger event id so every query picks the same event.
        """
        if owner_pubkey is None:
            owner = await self.signer.get_public_key()
        else:
            try:
                owner = normalize_pubkey(owner_pubkey)
            except ValueError as e:
                raise ValidationError(f"Invalid owner key: {e}") from e

        events = await self.network.query(
            [
                {
                    "kinds": [EventKind.WalletDescriptor],
                    "authors": [owner],
                    "#d": [self.tag],
                }
            ],
            timeout=self.query_timeout,
        )

        best: WalletDescriptor | None = None
        for event in events:
            if not verify_event(event) or event["pubkey"] != owner:
                continue
            descriptor = parse_descriptor(event, self.tag)
            if descriptor is None:
                continue
            if best is None or (descriptor.created_at, descriptor.event_id) > (
                best.created_at,
                best.event_id,
            ):
                best = descriptor
        return best
