"""Encrypted proof snapshots on relays, for recovery on another device."""

from __future__ import annotations

import json
import logging

from .crypto import NIP44Error
from .events import build_event, verify_event
from .relay import BroadcastNetwork
from .signer import Signer
from .store import is_valid_proof
from .types import EventKind, NostrEvent, Proof, RelayError

logger = logging.getLogger(__name__)


class ProofBackup:
    """Publishes the proof set NIP-44 encrypted to self, and reads it back."""

    def __init__(
        self, signer: Signer, network: BroadcastNetwork, *, query_timeout: float = 5.0
    ) -> None:
        self.signer = signer
        self.network = network
        self.query_timeout = query_timeout

    async def publish(self, proofs: list[Proof], mint_url: str) -> NostrEvent:
        pubkey = await self.signer.get_public_key()
        content = await self.signer.nip44_encrypt(
            pubkey, json.dumps({"mint": mint_url, "proofs": proofs})
        )
        event = await self.signer.sign_event(
            build_event(pubkey, EventKind.ProofBackup, [["mint", mint_url]], content)
        )
        if not await self.network.publish(event):
            raise RelayError("No relay accepted the proof backup")
        logger.debug("Published proof backup %s (%d proofs)", event["id"][:8], len(proofs))
        return event

    async def restore(self, mint_url: str) -> list[Proof]:
        """Proofs for ``mint_url`` from the newest backup that decrypts cleanly, or [].

        Snapshots taken while the wallet used another mint are ignored.
        """
        pubkey = await self.signer.get_public_key()
        events = await self.network.query(
            [{"kinds": [EventKind.ProofBackup], "authors": [pubkey]}],
            timeout=self.query_timeout,
        )
        events = [e for e in events if verify_event(e) and e["pubkey"] == pubkey]
        events.sort(key=lambda e: (e["created_at"], e["id"]), reverse=True)

        for event in events:
            try:
                payload = json.loads(await self.signer.nip44_decrypt(pubkey, event["content"]))
            except (NIP44Error, ValueError) as e:
                logger.warning("Unreadable proof backup %s: %s", event["id"][:8], e)
                continue
            if not isinstance(payload, dict) or not isinstance(payload.get("proofs"), list):
                logger.warning("Proof backup %s has no proof list", event["id"][:8])
                continue
            if str(payload.get("mint", "")).rstrip("/") != mint_url.rstrip("/"):
                continue
            proofs = payload["proofs"]
            return [
                Proof(id=p["id"], amount=p["amount"], secret=p["secret"], C=p["C"])
                for p in proofs
                if is_valid_proof(p)
            ]
        return []
