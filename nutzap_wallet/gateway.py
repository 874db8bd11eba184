"""Mint selection with fallback, time-boxed calls and retry policy."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .capability import CashuMint, MintCapability
from .token import decode_token
from .types import (
    MeltQuote,
    MeltResult,
    MintError,
    MintQuote,
    MintTimeoutError,
    MintUnavailableError,
    Proof,
    SplitResult,
    TokenAlreadySpentError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_mint_url(url: str) -> str:
    return url.strip().rstrip("/")


class MintGateway:
    """Holds the one mint this wallet talks to.

    Reads (handshake, quotes, quote status, melt quotes, checkstate) are
    retried with exponential backoff. Anything that moves value (mint, melt,
    swap) is attempted once: a retry could double-spend or double-issue.
    """

    def __init__(
        self,
        fallback_urls: list[str],
        *,
        factory: Callable[[str], MintCapability] | None = None,
        timeout: float = 10.0,
        retries: int = 2,
        base_delay: float = 2.0,
        on_connected: Callable[[str], None] | None = None,
    ) -> None:
        self.fallback_urls = [normalize_mint_url(u) for u in fallback_urls]
        self.timeout = timeout
        self.retries = retries
        self.base_delay = base_delay
        self._factory = factory or (lambda url: CashuMint(url, timeout=timeout))
        self._on_connected = on_connected
        self.mint: MintCapability | None = None

    @property
    def connected(self) -> bool:
        return self.mint is not None

    @property
    def url(self) -> str | None:
        return self.mint.url if self.mint else None

    def require(self) -> MintCapability:
        if self.mint is None:
            raise MintUnavailableError("Not connected to a mint")
        return self.mint

    async def aclose(self) -> None:
        if self.mint is not None:
            await self.mint.aclose()
            self.mint = None

    # ───────────────────────── Call policy ─────────────────────────────────

    async def _call(self, fn: Callable[[], Awaitable[T]], what: str) -> T:
        """One attempt bounded by ``self.timeout``."""
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout)
        except TimeoutError as e:
            raise MintTimeoutError(f"{what} timed out after {self.timeout}s") from e

    async def _with_retry(self, fn: Callable[[], Awaitable[T]], what: str) -> T:
        """Up to ``retries`` extra attempts, waiting base_delay, 2*base_delay, ..."""
        for attempt in range(self.retries + 1):
            try:
                return await self._call(fn, what)
            except TokenAlreadySpentError:
                raise
            except MintError as e:
                if attempt >= self.retries:
                    raise
                delay = self.base_delay * 2**attempt
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    what,
                    attempt + 1,
                    self.retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    # ───────────────────────── Connection ─────────────────────────────────

    async def connect(self, preferred_mint_url: str | None = None) -> MintCapability:
        """Connect to the preferred mint, else the first working fallback.

        Raises:
            MintUnavailableError: No candidate answered with an active sat keyset
        """
        candidates = [preferred_mint_url] if preferred_mint_url else []
        candidates += self.fallback_urls
        candidates = list(dict.fromkeys(normalize_mint_url(u) for u in candidates))

        failures: list[str] = []
        for url in candidates:
            mint = self._factory(url)
            try:
                keyset = await self._with_retry(mint.load_keyset, f"Handshake with {url}")
            except MintError as e:
                logger.warning("Mint %s unusable: %s", url, e)
                failures.append(f"{url}: {e}")
                await mint.aclose()
                continue
            if keyset.unit != "sat" or not keyset.active or not keyset.keys:
                logger.warning("Mint %s returned no usable sat keyset", url)
                failures.append(f"{url}: no usable sat keyset")
                await mint.aclose()
                continue

            if self.mint is not None and self.mint is not mint:
                await self.mint.aclose()
            self.mint = mint
            logger.info("Connected to mint %s", url)
            if self._on_connected is not None:
                self._on_connected(url)
            return mint

        raise MintUnavailableError("No mint reachable: " + "; ".join(failures))

    # ───────────────────────── Operations ─────────────────────────────────

    def input_fee(self, proofs: list[Proof]) -> int:
        return self.require().input_fee(proofs)

    async def create_quote(self, amount: int, memo: str | None = None) -> MintQuote:
        mint = self.require()
        try:
            return await self._with_retry(
                lambda: mint.create_quote(amount, memo), "Mint quote"
            )
        except MintError as primary_error:
            logger.warning("Mint quote failed, trying legacy endpoint: %s", primary_error)
            try:
                return await self._call(
                    lambda: mint.create_quote(amount, memo, legacy=True),
                    "Legacy mint quote",
                )
            except MintError as e:
                raise primary_error from e

    async def check_quote(self, quote_id: str) -> str:
        mint = self.require()
        return await self._with_retry(lambda: mint.check_quote(quote_id), "Quote status")

    async def mint_from_quote(
        self, quote_id: str, amount: int, *, legacy: bool = False
    ) -> list[Proof]:
        """Issue proofs for a paid quote. Never retried; one legacy fallback.

        Raises:
            MintError: Neither endpoint returned signatures that unblind into
                proofs for the full amount
        """
        mint = self.require()
        if legacy:
            return await self._call(
                lambda: mint.mint_from_quote(quote_id, amount, legacy=True),
                "Legacy mint",
            )
        try:
            return await self._call(
                lambda: mint.mint_from_quote(quote_id, amount), "Mint"
            )
        except MintError as primary_error:
            logger.warning("Minting failed, trying legacy endpoint: %s", primary_error)
            try:
                return await self._call(
                    lambda: mint.mint_from_quote(quote_id, amount, legacy=True),
                    "Legacy mint",
                )
            except MintError as e:
                raise primary_error from e

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        mint = self.require()
        return await self._with_retry(lambda: mint.create_melt_quote(invoice), "Melt quote")

    async def melt(self, quote: MeltQuote, proofs: list[Proof]) -> MeltResult:
        mint = self.require()
        return await self._call(lambda: mint.melt(quote, proofs), "Melt")

    async def send(self, amount: int, proofs: list[Proof]) -> SplitResult:
        mint = self.require()
        return await self._call(lambda: mint.send(amount, proofs), "Swap")

    async def receive(self, token: str) -> list[Proof]:
        """Redeem an encoded token at the connected mint.

        Raises:
            ValidationError: Malformed token, wrong unit, or another mint's token
        """
        mint = self.require()
        decoded = decode_token(token)
        if decoded.unit != "sat":
            raise ValidationError(f"Unsupported token unit: {decoded.unit}")
        if normalize_mint_url(decoded.mint_url) != normalize_mint_url(mint.url):
            raise ValidationError(
                f"Token is from mint {decoded.mint_url}, wallet uses {mint.url}"
            )
        return await self._call(lambda: mint.receive(decoded.proofs), "Receive swap")

    async def check_spent(self, proofs: list[Proof]) -> set[str]:
        mint = self.require()
        return await self._with_retry(lambda: mint.check_spent(proofs), "Checkstate")
