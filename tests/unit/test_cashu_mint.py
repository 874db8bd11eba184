#!/usr/bin/env python3
"""Test the Cashu HTTP mint capability against a mocked mint that really signs."""

import json
import math

import httpx
import pytest
from coincurve import PrivateKey, PublicKey

from nutzap_wallet.capability import CashuMint
from nutzap_wallet.crypto import blank_outputs_needed, secret_to_point, split_amount
from nutzap_wallet.types import MintError, MintUnavailableError, TokenAlreadySpentError

MINT_URL = "https://mint.test"


class MockMintServer:
    """Minimal Cashu v1 mint: one sat keyset, real blind signatures."""

    keyset_id = "00ffd48b8f5ecf80"

    def __init__(self, input_fee_ppk: int = 0) -> None:
        self.keys = {2**i: PrivateKey() for i in range(12)}
        self.input_fee_ppk = input_fee_ppk
        self.quote_state = "PAID"
        self.melt_amount = 100
        self.fee_reserve = 4
        self.lightning_fee = 1
        self.short_signatures = False
        self.malformed_change = False
        self.spent_ys: set[str] = set()
        self.requests: list[tuple[str, str, dict]] = []

    # ───────────────────────── Mint side crypto ─────────────────────────────────

    def sign(self, outputs: list[dict], amounts: list[int] | None = None) -> list[dict]:
        signatures = []
        for i, output in enumerate(outputs):
            amount = amounts[i] if amounts else output["amount"]
            B_ = PublicKey(bytes.fromhex(output["B_"]))
            C_ = B_.multiply(self.keys[amount].secret)
            signatures.append(
                {"amount": amount, "id": self.keyset_id, "C_": C_.format().hex()}
            )
        return signatures[:-1] if self.short_signatures else signatures

    def verify(self, proof: dict) -> bool:
        expected = secret_to_point(proof["secret"]).multiply(self.keys[proof["amount"]].secret)
        return expected.format().hex() == proof["C"]

    def _y(self, proof: dict) -> str:
        return secret_to_point(proof["secret"]).format().hex()

    def _spend(self, inputs: list[dict]) -> httpx.Response | None:
        for proof in inputs:
            if self._y(proof) in self.spent_ys:
                return httpx.Response(
                    400, json={"detail": "Token already spent.", "code": 11001}
                )
            if not self.verify(proof):
                return httpx.Response(400, json={"detail": "invalid proof", "code": 10003})
        self.spent_ys.update(self._y(p) for p in inputs)
        return None

    # ───────────────────────── HTTP ─────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append((request.method, path, body))

        if path == "/v1/keysets":
            return httpx.Response(
                200,
                json={
                    "keysets": [
                        {"id": "00aaaaaaaaaaaaaa", "unit": "usd", "active": True},
                        {
                            "id": self.keyset_id,
                            "unit": "sat",
                            "active": True,
                            "input_fee_ppk": self.input_fee_ppk,
                        },
                    ]
                },
            )
        if path.startswith("/v1/keys"):
            keys = {str(a): k.public_key.format().hex() for a, k in self.keys.items()}
            return httpx.Response(
                200,
                json={"keysets": [{"id": self.keyset_id, "unit": "sat", "keys": keys}]},
            )
        if path == "/v1/mint/quote/bolt11" and request.method == "POST":
            return httpx.Response(
                200, json={"quote": "q1", "request": "lnbc1000n1mock", "state": "UNPAID"}
            )
        if path.startswith("/v1/mint/quote/bolt11/"):
            return httpx.Response(200, json={"quote": "q1", "state": self.quote_state})
        if path == "/v1/mint/bolt11":
            return httpx.Response(200, json={"signatures": self.sign(body["outputs"])})
        if path == "/mint" and request.method == "GET":
            return httpx.Response(200, json={"pr": "lnbc1000n1legacy", "hash": "h1"})
        if path == "/mint":
            assert request.url.params["hash"] == "h1"
            return httpx.Response(200, json={"promises": self.sign(body["outputs"])})
        if path == "/v1/melt/quote/bolt11":
            return httpx.Response(
                200,
                json={
                    "quote": "m1",
                    "amount": self.melt_amount,
                    "fee_reserve": self.fee_reserve,
                    "state": "UNPAID",
                },
            )
        if path == "/v1/melt/bolt11":
            error = self._spend(body["inputs"])
            if error is not None:
                return error
            change = sum(p["amount"] for p in body["inputs"]) - self.melt_amount - self.lightning_fee
            outputs = body.get("outputs", [])
            amounts = split_amount(change)[: len(outputs)]
            signatures = self.sign(outputs[: len(amounts)], amounts)
            if self.malformed_change:
                signatures = [{"amount": 1, "id": self.keyset_id, "C_": "00" * 33}]
            return httpx.Response(
                200,
                json={
                    "state": "PAID",
                    "payment_preimage": "ab" * 32,
                    "change": signatures,
                },
            )
        if path == "/v1/swap":
            error = self._spend(body["inputs"])
            if error is not None:
                return error
            return httpx.Response(200, json={"signatures": self.sign(body["outputs"])})
        if path == "/v1/checkstate":
            return httpx.Response(
                200,
                json={
                    "states": [
                        {"Y": y, "state": "SPENT" if y in self.spent_ys else "UNSPENT"}
                        for y in body["Ys"]
                    ]
                },
            )
        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def server() -> MockMintServer:
    return MockMintServer()


@pytest.fixture
async def cashu_mint(server: MockMintServer):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    mint = CashuMint(MINT_URL, client=client)
    await mint.load_keyset()
    yield mint
    await client.aclose()


async def minted(cashu_mint: CashuMint, amount: int) -> list:
    quote = await cashu_mint.create_quote(amount)
    return await cashu_mint.mint_from_quote(quote.quote_id, amount)


class TestHandshake:
    @pytest.mark.asyncio
    async def test_picks_active_sat_keyset(self, cashu_mint: CashuMint, server) -> None:
        assert cashu_mint.keyset.id == server.keyset_id
        assert cashu_mint.keyset.unit == "sat"
        assert len(cashu_mint.keyset.keys) == 12

    @pytest.mark.asyncio
    async def test_unreachable_mint(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(MintUnavailableError):
                await CashuMint(MINT_URL, client=client).load_keyset()

    @pytest.mark.asyncio
    async def test_input_fee(self) -> None:
        server = MockMintServer(input_fee_ppk=100)
        async with httpx.AsyncClient(transport=httpx.MockTransport(server.handler)) as client:
            mint = CashuMint(MINT_URL, client=client)
            await mint.load_keyset()
            proofs = [{"id": server.keyset_id, "amount": 1, "secret": "s", "C": ""}] * 3
            assert mint.input_fee(proofs) == 1
            assert mint.input_fee(proofs * 4) == 2


class TestMinting:
    @pytest.mark.asyncio
    async def test_minted_proofs_verify(self, cashu_mint: CashuMint, server) -> None:
        quote = await cashu_mint.create_quote(13, "memo")
        assert await cashu_mint.check_quote(quote.quote_id) == "PAID"

        proofs = await cashu_mint.mint_from_quote(quote.quote_id, 13)

        assert [p["amount"] for p in proofs] == [1, 4, 8]
        assert all(server.verify(p) for p in proofs)
        assert len({p["secret"] for p in proofs}) == 3

    @pytest.mark.asyncio
    async def test_legacy_endpoints(self, cashu_mint: CashuMint, server) -> None:
        quote = await cashu_mint.create_quote(5, legacy=True)
        assert quote.quote_id == "h1"
        assert quote.legacy

        proofs = await cashu_mint.mint_from_quote("h1", 5, legacy=True)

        assert sum(p["amount"] for p in proofs) == 5
        assert all(server.verify(p) for p in proofs)

    @pytest.mark.asyncio
    async def test_missing_signatures_are_an_error(
        self, cashu_mint: CashuMint, server
    ) -> None:
        """Never store fewer proofs than the quoted amount."""
        server.short_signatures = True
        with pytest.raises(MintError):
            await minted(cashu_mint, 13)


class TestSwaps:
    @pytest.mark.asyncio
    async def test_send_splits_into_send_and_change(
        self, cashu_mint: CashuMint, server
    ) -> None:
        proofs = await minted(cashu_mint, 64)

        split = await cashu_mint.send(20, proofs)

        assert sum(p["amount"] for p in split.send_proofs) == 20
        assert sum(p["amount"] for p in split.change_proofs) == 44
        assert all(server.verify(p) for p in split.send_proofs + split.change_proofs)
        assert await cashu_mint.check_spent(proofs) == {p["secret"] for p in proofs}
        assert await cashu_mint.check_spent(split.send_proofs) == set()

    @pytest.mark.asyncio
    async def test_double_spend_is_reported(self, cashu_mint: CashuMint) -> None:
        proofs = await minted(cashu_mint, 8)
        await cashu_mint.receive(proofs)
        with pytest.raises(TokenAlreadySpentError):
            await cashu_mint.receive(proofs)


class TestMelt:
    @pytest.mark.asyncio
    async def test_fee_reserve_returned_as_change(
        self, cashu_mint: CashuMint, server
    ) -> None:
        proofs = await minted(cashu_mint, 104)
        quote = await cashu_mint.create_melt_quote("lnbc1u1mock")
        assert quote.amount == 100
        assert quote.fee_reserve == 4

        result = await cashu_mint.melt(quote, proofs)

        assert result.paid
        assert result.fee_paid == 1
        assert sum(p["amount"] for p in result.change_proofs) == 3
        assert all(server.verify(p) for p in result.change_proofs)
        melt_body = server.requests[-1][2]
        assert len(melt_body["outputs"]) == blank_outputs_needed(4)
        assert all(o["amount"] == 1 for o in melt_body["outputs"])

    @pytest.mark.asyncio
    async def test_no_blank_outputs_without_fee_reserve(
        self, cashu_mint: CashuMint, server
    ) -> None:
        server.fee_reserve = 0
        server.lightning_fee = 0
        proofs = await minted(cashu_mint, 100)

        result = await cashu_mint.melt(await cashu_mint.create_melt_quote("ln"), proofs)

        assert result.paid
        assert result.change_proofs == []
        assert "outputs" not in server.requests[-1][2]

    @pytest.mark.asyncio
    async def test_paid_melt_survives_unusable_change(
        self, cashu_mint: CashuMint, server
    ) -> None:
        """A settled payment stays settled even if the change can't be unblinded."""
        proofs = await minted(cashu_mint, 104)
        server.malformed_change = True

        result = await cashu_mint.melt(await cashu_mint.create_melt_quote("ln"), proofs)

        assert result.paid
        assert result.change_proofs == []
        assert result.fee_paid == 4
        assert result.preimage == "ab" * 32
        assert await cashu_mint.check_spent(proofs) == {p["secret"] for p in proofs}


class TestBlankOutputs:
    """NUT-08 blank output count: max(ceil(log2(fee_reserve)), 1), 0 without reserve."""

    @pytest.mark.parametrize(
        "fee_reserve,expected",
        [(0, 0), (1, 1), (2, 1), (4, 2), (8, 3), (16, 4), (100, 7), (1000, 10)],
    )
    def test_known_values(self, fee_reserve: int, expected: int) -> None:
        assert blank_outputs_needed(fee_reserve) == expected

    def test_negative_reserve(self) -> None:
        assert blank_outputs_needed(-1) == 0

    def test_matches_formula(self) -> None:
        for fee_reserve in range(1, 2049):
            assert blank_outputs_needed(fee_reserve) == max(
                math.ceil(math.log2(fee_reserve)), 1
            )
