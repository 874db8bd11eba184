"""
Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
from typing import Any, TypedDict, cast

import httpx

from .crypto import is_valid_compressed_pubkey
from .types import (
    BlindedMessage,
    BlindedSignature,
    MintError,
    MintTimeoutError,
    MintUnavailableError,
    Proof,
    TokenAlreadySpentError,
)

logger = logging.getLogger(__name__)

# NUT error code for "Token already spent"
ALREADY_SPENT_CODE = 11001


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class InvalidKeysetError(MintError):
    """Raised when keyset structure is invalid per NUT-01."""


def _error_from_response(response: httpx.Response) -> MintError:
    text = response.text
    detail = text
    code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = str(body.get("detail") or body.get("error") or text)
        code = body.get("code")
    message = f"Mint returned {response.status_code}: {detail}"
    if code == ALREADY_SPENT_CODE or "already spent" in detail.lower():
        return TokenAlreadySpentError(message)
    return MintError(message)


class Mint:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint.

        Raises:
            MintTimeoutError: No answer within ``self.timeout``
            MintUnavailableError: Connection could not be established
            TokenAlreadySpentError: Mint reports inputs as spent
            MintError: Any other non-2xx answer or malformed body
        """
        logger.debug("%s %s%s", method, self.url, path)
        try:
            response = await self.client.request(
                method,
                f"{self.url}{path}",
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise MintTimeoutError(f"Mint {self.url} timed out on {path}") from e
        except httpx.TransportError as e:
            raise MintUnavailableError(f"Mint {self.url} unreachable: {e}") from e

        if response.status_code >= 400:
            raise _error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise MintError(f"Mint returned invalid JSON on {path}") from e
        if not isinstance(data, dict):
            raise MintError(f"Mint returned unexpected body on {path}")
        return data

    # ───────────────────────── Info & Keys ─────────────────────────────────

    def _validate_keys_response(self, response: dict[str, Any]) -> KeysResponse:
        """Validate and cast response to NUT-01 compliant KeysResponse.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01 specification
        """
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")

        for i, keyset in enumerate(keysets):
            if not isinstance(keyset, dict) or not all(
                f in keyset for f in ("id", "unit", "keys")
            ):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")
            keys = keyset["keys"]
            if not isinstance(keys, dict) or not all(
                is_valid_compressed_pubkey(pk) for pk in keys.values()
            ):
                raise InvalidKeysetError(f"Invalid keys in keyset {keyset['id']}")

        return cast(KeysResponse, response)

    async def get_keys(self, keyset_id: str | None = None) -> list[Keyset]:
        """Get mint public keys for the active keysets, or one keyset by id."""
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path)
        return list(self._validate_keys_response(response)["keysets"])

    async def get_keysets_info(self) -> list[KeysetInfoResponse]:
        """Get all keyset ids with active flag and input fee."""
        response = await self._request("GET", "/v1/keysets")
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise MintError("Response missing 'keysets' list")
        return cast(list[KeysetInfoResponse], keysets)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: str = "sat",
        description: str | None = None,
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        if description:
            body["description"] = description
        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"),
        )

    async def mint(
        self, *, quote: str, outputs: list[BlindedMessage]
    ) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "outputs": outputs}
        return cast(
            PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body)
        )

    # Pre-v1 endpoint shapes still served by older mints.

    async def legacy_request_mint(self, amount: int) -> LegacyMintQuoteResponse:
        """``GET /mint?amount=`` returning ``{pr, hash}``."""
        response = await self._request("GET", "/mint", params={"amount": amount})
        if "pr" not in response or "hash" not in response:
            raise MintError("Legacy mint quote response missing 'pr' or 'hash'")
        return cast(LegacyMintQuoteResponse, response)

    async def legacy_mint(
        self, *, payment_hash: str, outputs: list[BlindedMessage]
    ) -> list[BlindedSignature]:
        """``POST /mint?hash=`` returning ``{promises}``."""
        response = await self._request(
            "POST", "/mint", json={"outputs": outputs}, params={"hash": payment_hash}
        )
        promises = response.get("promises")
        if not isinstance(promises, list):
            raise MintError("Legacy mint response missing 'promises'")
        return cast(list[BlindedSignature], promises)

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(
        self, request: str, *, unit: str = "sat"
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "inputs": inputs}
        if outputs:
            body["outputs"] = outputs
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self, *, inputs: list[Proof], outputs: list[BlindedMessage]
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {"inputs": inputs, "outputs": outputs}
        return cast(
            PostSwapResponse, await self._request("POST", "/v1/swap", json=body)
        )

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json={"Ys": Ys}),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and OpenAPI spec
# ──────────────────────────────────────────────────────────────────────────────


class Keyset(TypedDict):
    """Individual keyset per NUT-01 specification."""

    id: str
    unit: str
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey mapping


class KeysResponse(TypedDict):
    keysets: list[Keyset]


class KeysetInfoResponse(TypedDict, total=False):
    """Entry of GET /v1/keysets."""

    id: str
    unit: str
    active: bool
    input_fee_ppk: int


class PostMintQuoteResponse(TypedDict, total=False):
    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: str
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int
    paid: bool


class LegacyMintQuoteResponse(TypedDict):
    pr: str
    hash: str


class PostMintResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    quote: str
    amount: int
    fee_reserve: int
    unit: str
    request: str
    paid: bool
    state: str
    expiry: int
    payment_preimage: str
    change: list[BlindedSignature]


class PostSwapResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    states: list[dict[str, str]]  # [{"Y": ..., "state": "UNSPENT" | "SPENT" | "PENDING"}]
