"""The mint operations the wallet relies on, and their Cashu HTTP implementation."""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Protocol, runtime_checkable

import httpx
from coincurve import PublicKey

from .crypto import (
    blank_outputs_needed,
    create_blinded_messages,
    get_mint_pubkey_for_amount,
    is_valid_compressed_pubkey,
    secret_to_point,
    split_amount,
    unblind_signature,
)
from .mint import Keyset, Mint
from .types import (
    BlindedSignature,
    KeysetInfo,
    MeltQuote,
    MeltResult,
    MintError,
    MintQuote,
    Proof,
    SplitResult,
    sum_proofs,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class MintCapability(Protocol):
    """One connected mint. Blind-signature math lives behind this boundary."""

    url: str

    async def load_keyset(self) -> KeysetInfo:
        """Fetch and remember the active ``sat`` keyset (the handshake)."""
        ...

    def input_fee(self, proofs: list[Proof]) -> int: ...

    async def create_quote(
        self, amount: int, memo: str | None = None, *, legacy: bool = False
    ) -> MintQuote: ...

    async def check_quote(self, quote_id: str) -> str:
        """Return ``UNPAID``, ``PAID`` or ``ISSUED``."""
        ...

    async def mint_from_quote(
        self, quote_id: str, amount: int, *, legacy: bool = False
    ) -> list[Proof]: ...

    async def create_melt_quote(self, invoice: str) -> MeltQuote: ...

    async def melt(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult: ...

    async def send(self, amount: int, proofs: list[Proof]) -> SplitResult: ...

    async def receive(self, proofs: list[Proof]) -> list[Proof]: ...

    async def check_spent(self, proofs: list[Proof]) -> set[str]:
        """Secrets of the given proofs the mint reports as spent."""
        ...

    async def aclose(self) -> None: ...


class CashuMint:
    """``MintCapability`` over the Cashu v1 HTTP API with BDHKE blinding."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.api = Mint(self.url, timeout=timeout, client=client)
        self.keyset: KeysetInfo | None = None
        self._keys_by_id: dict[str, dict[str, str]] = {}
        self._fee_by_id: dict[str, int] = {}

    async def aclose(self) -> None:
        await self.api.aclose()

    # ───────────────────────── Keys ─────────────────────────────────

    async def load_keyset(self) -> KeysetInfo:
        infos = await self.api.get_keysets_info()
        for info in infos:
            if isinstance(info, dict) and "id" in info:
                self._fee_by_id[info["id"]] = int(info.get("input_fee_ppk") or 0)

        keysets: list[Keyset] = await self.api.get_keys()
        for ks in keysets:
            self._keys_by_id[ks["id"]] = ks["keys"]

        for info in infos:
            if info.get("unit") != "sat" or not info.get("active", True):
                continue
            keys = self._keys_by_id.get(info["id"])
            if keys is None:
                keys = await self._keys_for(info["id"])
            if keys:
                self.keyset = KeysetInfo(
                    id=info["id"],
                    unit="sat",
                    keys=keys,
                    input_fee_ppk=self._fee_by_id.get(info["id"], 0),
                )
                logger.info("Mint %s active sat keyset %s", self.url, info["id"])
                return self.keyset
        raise MintError(f"Mint {self.url} has no active sat keyset")

    async def _keys_for(self, keyset_id: str) -> dict[str, str]:
        if keyset_id not in self._keys_by_id:
            keysets = await self.api.get_keys(keyset_id)
            for ks in keysets:
                self._keys_by_id[ks["id"]] = ks["keys"]
        return self._keys_by_id.get(keyset_id, {})

    def _require_keyset(self) -> KeysetInfo:
        if self.keyset is None:
            raise MintError(f"Mint {self.url} not connected: no keyset loaded")
        return self.keyset

    def input_fee(self, proofs: list[Proof]) -> int:
        """NUT-02 input fee: ceil(sum of per-proof ppk / 1000)."""
        default = self.keyset.input_fee_ppk if self.keyset else 0
        total_ppk = sum(self._fee_by_id.get(p["id"], default) for p in proofs)
        return math.ceil(total_ppk / 1000)

    # ───────────────────────── Blinding ─────────────────────────────────

    def _outputs_for(self, amount: int) -> tuple[list[Any], list[str], list[bytes]]:
        keyset = self._require_keyset()
        amounts = split_amount(amount)
        missing = [a for a in amounts if str(a) not in keyset.keys]
        if missing:
            raise MintError(f"Keyset {keyset.id} has no key for amounts {missing}")
        return create_blinded_messages(amounts, keyset.id)

    async def _unblind(
        self,
        signatures: Any,
        secrets: list[str],
        factors: list[bytes],
        expected_amounts: list[int] | None = None,
    ) -> list[Proof]:
        """Turn blind signatures into proofs. Anything unverifiable is a MintError."""
        if not isinstance(signatures, list) or len(signatures) > len(secrets):
            raise MintError("Mint returned an unexpected number of signatures")
        if expected_amounts is not None and len(signatures) != len(expected_amounts):
            raise MintError("Mint returned an unexpected number of signatures")

        proofs: list[Proof] = []
        for i, sig in enumerate(signatures):
            if not isinstance(sig, dict):
                raise MintError("Malformed blind signature")
            amount, keyset_id, C_hex = sig.get("amount"), sig.get("id"), sig.get("C_")
            if not isinstance(amount, int) or not isinstance(keyset_id, str):
                raise MintError("Malformed blind signature")
            if expected_amounts is not None and amount != expected_amounts[i]:
                raise MintError("Blind signature amount does not match output")
            if not isinstance(C_hex, str) or not is_valid_compressed_pubkey(C_hex):
                raise MintError("Blind signature is not a valid point")
            K = get_mint_pubkey_for_amount(await self._keys_for(keyset_id), amount)
            if K is None:
                raise MintError(f"No mint key for amount {amount} in keyset {keyset_id}")
            C = unblind_signature(PublicKey(bytes.fromhex(C_hex)), factors[i], K)
            proofs.append(
                Proof(
                    id=keyset_id,
                    amount=amount,
                    secret=secrets[i],
                    C=C.format(compressed=True).hex(),
                )
            )
        return proofs

    # ───────────────────────── Minting ─────────────────────────────────

    async def create_quote(
        self, amount: int, memo: str | None = None, *, legacy: bool = False
    ) -> MintQuote:
        if legacy:
            legacy_quote = await self.api.legacy_request_mint(amount)
            return MintQuote(
                quote_id=legacy_quote["hash"],
                invoice=legacy_quote["pr"],
                amount=amount,
                created_at=time.time(),
                memo=memo or "",
                legacy=True,
            )
        quote = await self.api.create_mint_quote(amount=amount, description=memo)
        if not quote.get("quote") or not quote.get("request"):
            raise MintError("Mint quote response missing 'quote' or 'request'")
        return MintQuote(
            quote_id=quote["quote"],
            invoice=quote["request"],
            amount=amount,
            created_at=time.time(),
            memo=memo or "",
        )

    async def check_quote(self, quote_id: str) -> str:
        quote = await self.api.get_mint_quote(quote_id)
        state = quote.get("state")
        if isinstance(state, str):
            return state.upper()
        return "PAID" if quote.get("paid") else "UNPAID"

    async def mint_from_quote(
        self, quote_id: str, amount: int, *, legacy: bool = False
    ) -> list[Proof]:
        outputs, secrets, factors = self._outputs_for(amount)
        if legacy:
            signatures: Any = await self.api.legacy_mint(
                payment_hash=quote_id, outputs=outputs
            )
        else:
            signatures = (await self.api.mint(quote=quote_id, outputs=outputs)).get(
                "signatures"
            )
        proofs = await self._unblind(
            signatures, secrets, factors, [o["amount"] for o in outputs]
        )
        if sum_proofs(proofs) != amount:
            raise MintError("Minted proofs do not add up to the quoted amount")
        return proofs

    # ───────────────────────── Melting ─────────────────────────────────

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        quote = await self.api.create_melt_quote(invoice)
        if not quote.get("quote") or not isinstance(quote.get("amount"), int):
            raise MintError("Melt quote response missing 'quote' or 'amount'")
        return MeltQuote(
            quote_id=quote["quote"],
            amount=quote["amount"],
            fee_reserve=int(quote.get("fee_reserve") or 0),
            invoice=invoice,
        )

    async def melt(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        """Pay the quoted invoice, returning unused fee reserve via NUT-08 blank outputs."""
        keyset = self._require_keyset()
        blank_count = blank_outputs_needed(quote.fee_reserve)
        outputs, secrets, factors = create_blinded_messages([1] * blank_count, keyset.id)

        response = await self.api.melt(
            quote=quote.quote_id, inputs=proofs, outputs=outputs or None
        )
        state = str(response.get("state") or "").upper()
        paid = state == "PAID" or (not state and response.get("paid") is True)
        if not paid:
            return MeltResult(
                paid=False, change_proofs=[], fee_paid=0, state=state or "UNPAID"
            )

        change_signatures: list[BlindedSignature] = response.get("change") or []
        try:
            change = await self._unblind(change_signatures, secrets, factors)
        except MintError as e:
            # the invoice is paid and the inputs are gone; only the change is lost
            logger.warning("Melt %s paid but change unusable: %s", quote.quote_id, e)
            change = []
        return MeltResult(
            paid=True,
            change_proofs=change,
            fee_paid=sum_proofs(proofs) - quote.amount - sum_proofs(change),
            state="PAID",
            preimage=response.get("payment_preimage"),
        )

    # ───────────────────────── Swaps ─────────────────────────────────

    async def send(self, amount: int, proofs: list[Proof]) -> SplitResult:
        change_amount = sum_proofs(proofs) - amount - self.input_fee(proofs)
        if change_amount < 0:
            raise MintError("Inputs do not cover amount plus input fee")
        send_outputs, send_secrets, send_factors = self._outputs_for(amount)
        keep_outputs, keep_secrets, keep_factors = self._outputs_for(change_amount)

        outputs = send_outputs + keep_outputs
        response = await self.api.swap(inputs=proofs, outputs=outputs)
        new_proofs = await self._unblind(
            response.get("signatures"),
            send_secrets + keep_secrets,
            send_factors + keep_factors,
            [o["amount"] for o in outputs],
        )
        return SplitResult(
            send_proofs=new_proofs[: len(send_outputs)],
            change_proofs=new_proofs[len(send_outputs) :],
        )

    async def receive(self, proofs: list[Proof]) -> list[Proof]:
        """Swap someone else's proofs for fresh ones only this wallet knows."""
        for keyset_id in {p["id"] for p in proofs}:
            await self._keys_for(keyset_id)
        amount = sum_proofs(proofs) - self.input_fee(proofs)
        if amount <= 0:
            raise MintError("Token value does not cover the mint's input fee")
        outputs, secrets, factors = self._outputs_for(amount)
        response = await self.api.swap(inputs=proofs, outputs=outputs)
        return await self._unblind(
            response.get("signatures"), secrets, factors, [o["amount"] for o in outputs]
        )

    async def check_spent(self, proofs: list[Proof]) -> set[str]:
        if not proofs:
            return set()
        y_by_secret = {
            p["secret"]: secret_to_point(p["secret"]).format(compressed=True).hex()
            for p in proofs
        }
        response = await self.api.check_state(Ys=list(y_by_secret.values()))
        spent_ys = {
            entry.get("Y")
            for entry in response.get("states", [])
            if isinstance(entry, dict) and entry.get("state") == "SPENT"
        }
        return {secret for secret, y in y_by_secret.items() if y in spent_ys}
