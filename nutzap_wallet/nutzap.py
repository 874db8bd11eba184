"""Peer-to-peer ecash over Nostr: sending and claiming nutzap events."""

from __future__ import annotations

import logging
import time

from .crypto import normalize_pubkey
from .events import EventTags, build_event, nutzap_tags, verify_event
from .gateway import MintGateway
from .ledger import ProcessedTokens, TransactionLedger
from .lightning import validate_amount
from .relay import BroadcastNetwork
from .signer import Signer
from .store import ProofVault
from .token import decode_token, encode_token, token_fingerprint
from .types import (
    AlreadyProcessedError,
    ClaimResult,
    EventKind,
    InsufficientFundsError,
    MintError,
    MintTimeoutError,
    MintUnavailableError,
    NostrEvent,
    Proof,
    RelayError,
    SendResult,
    SigningUnavailableError,
    TokenAlreadySpentError,
    ValidationError,
    WalletError,
    sum_proofs,
)

logger = logging.getLogger(__name__)

CLAIM_LOOKBACK = 7 * 24 * 60 * 60


class NutzapEngine:
    def __init__(
        self,
        gateway: MintGateway,
        vault: ProofVault,
        signer: Signer,
        network: BroadcastNetwork,
        history: TransactionLedger,
        processed: ProcessedTokens,
        *,
        query_timeout: float = 5.0,
    ) -> None:
        self.gateway = gateway
        self.vault = vault
        self.signer = signer
        self.network = network
        self.history = history
        self.processed = processed
        self.query_timeout = query_timeout
        # fingerprints currently being redeemed
        self._redeeming: set[str] = set()

    # ───────────────────────── Outgoing ─────────────────────────────────

    async def split_for_send(self, amount: int) -> list[Proof]:
        """Carve fresh proofs worth exactly ``amount`` out of the wallet.

        Always swaps at the mint, even when stored proofs already match, so
        no secret handed out was ever part of the stored (and backed up)
        proof set. The change is committed before this returns.
        """
        validate_amount(amount)
        have = self.vault.available_balance()
        if have < amount:
            raise InsufficientFundsError(amount, have)

        proofs = await self.vault.reserve(amount, self.gateway.input_fee)
        try:
            split = await self.gateway.send(amount, proofs)
        except MintError:
            self.vault.release(proofs)
            raise
        await self.vault.commit(proofs, split.change_proofs)
        return split.send_proofs

    async def create_token(self, amount: int, memo: str | None = None) -> str:
        """Portable CashuB token for out-of-band hand-over."""
        mint_url = self.gateway.require().url
        send_proofs = await self.split_for_send(amount)
        token = encode_token(send_proofs, mint_url, memo=memo)
        self.history.record("cashu_sent", amount, memo=memo)
        return token

    async def send(
        self, recipient: str, amount: int, memo: str | None = None
    ) -> SendResult:
        """Send ``amount`` sats to ``recipient`` (hex or npub) as a nutzap.

        A failed publish is not retried. The token is returned so the
        caller can hand it over another way.
        """
        try:
            recipient_hex = normalize_pubkey(recipient)
        except ValueError as e:
            raise ValidationError(f"Invalid recipient: {e}") from e
        validate_amount(amount)
        if not self.signer.can_sign:
            raise SigningUnavailableError("Watch-only identity can not send nutzaps")

        mint_url = self.gateway.require().url
        send_proofs = await self.split_for_send(amount)
        token = encode_token(send_proofs, mint_url, memo=memo)

        sender = await self.signer.get_public_key()
        unsigned = build_event(
            sender,
            EventKind.Nutzap,
            nutzap_tags(recipient_hex, amount, token, mint_url),
            memo or "",
        )
        error = None
        event_id = None
        try:
            event = await self.signer.sign_event(unsigned)
            event_id = event["id"]
            if not await self.network.publish(event):
                error = "No relay accepted the nutzap"
        except (RelayError, WalletError) as e:
            error = f"Nutzap not published: {e}"

        if error is not None:
            logger.warning(
                "Nutzap of %d sat to %s not published: %s",
                amount,
                recipient_hex[:8],
                error,
            )
            self.history.record(
                "cashu_sent", amount, counterparty=recipient_hex, memo=memo
            )
            return SendResult(
                amount=amount,
                token=token,
                published=False,
                event_id=event_id,
                error=error,
            )

        self.history.record("nutzap_sent", amount, counterparty=recipient_hex, memo=memo)
        logger.info("Sent nutzap of %d sat to %s", amount, recipient_hex[:8])
        return SendResult(amount=amount, token=token, published=True, event_id=event_id)

    # ───────────────────────── Incoming ─────────────────────────────────

    async def _redeem(self, token: str, fingerprint: str) -> list[Proof]:
        """Swap a token into the wallet, at most once per fingerprint.

        Raises:
            AlreadyProcessedError: Redeemed before, in flight, or spent at the mint
        """
        if fingerprint in self._redeeming or fingerprint in self.processed:
            raise AlreadyProcessedError("already claimed")
        self._redeeming.add(fingerprint)
        try:
            try:
                proofs = await self.gateway.receive(token)
            except TokenAlreadySpentError as e:
                self.processed.add(fingerprint)
                raise AlreadyProcessedError("already claimed") from e
            await self.vault.add(proofs)
            self.processed.add(fingerprint)
            return proofs
        finally:
            self._redeeming.discard(fingerprint)

    async def receive_token(self, token: str) -> int:
        """Redeem a token handed over out of band. Returns sats received."""
        fingerprint = token_fingerprint(token)
        if fingerprint in self.processed:
            raise AlreadyProcessedError("already claimed")
        decoded = decode_token(token)
        proofs = await self._redeem(token, fingerprint)
        amount = sum_proofs(proofs)
        self.history.record("cashu_received", amount, memo=decoded.memo)
        return amount

    async def fetch_incoming(self, since: int | None = None) -> list[NostrEvent]:
        me = await self.signer.get_public_key()
        if since is None:
            since = int(time.time()) - CLAIM_LOOKBACK
        return await self.network.query(
            [{"kinds": [EventKind.Nutzap], "#p": [me], "since": since}],
            timeout=self.query_timeout,
        )

    async def claim(self) -> ClaimResult:
        """Redeem every unseen nutzap addressed to this identity.

        Spent tokens are marked processed silently. Tokens that fail for any
        other reason stay unmarked and are retried on the next claim.
        """
        me = await self.signer.get_public_key()
        events = await self.fetch_incoming()
        result = ClaimResult()

        events = sorted(events, key=lambda e: (e.get("created_at", 0), e.get("id", "")))
        for event in events:
            if not verify_event(event):
                logger.debug("Ignoring nutzap with invalid signature")
                continue
            tags = EventTags.parse(event["tags"])
            if tags.p != me or not tags.proof or tags.unit not in (None, "sat"):
                continue
            fingerprint = token_fingerprint(tags.proof)
            if fingerprint in self.processed or fingerprint in self._redeeming:
                continue
            try:
                decoded = decode_token(tags.proof)
            except ValidationError as e:
                logger.warning("Skipping malformed nutzap %s: %s", event["id"][:8], e)
                continue

            result.total += decoded.amount
            try:
                proofs = await self._redeem(tags.proof, fingerprint)
            except AlreadyProcessedError:
                logger.info("Nutzap %s already spent", event["id"][:8])
                continue
            except (MintTimeoutError, MintUnavailableError) as e:
                logger.info("Mint unavailable for nutzap %s, will retry: %s", event["id"][:8], e)
                continue
            except (ValidationError, MintError) as e:
                logger.warning("Could not redeem nutzap %s, will retry: %s", event["id"][:8], e)
                continue

            amount = sum_proofs(proofs)
            result.claimed += amount
            self.history.record(
                "nutzap_received",
                amount,
                counterparty=event["pubkey"],
                memo=event["content"] or decoded.memo,
            )
            logger.info("Claimed nutzap of %d sat from %s", amount, event["pubkey"][:8])

        return result
