"""Lightning deposits (mint quotes) and payments (melts)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from .gateway import MintGateway
from .ledger import QuoteBook, TransactionLedger
from .lnurl import (
    invoice_amount_sat,
    is_bolt11,
    is_lightning_address,
    is_lnurl,
    resolve_invoice,
    strip_lightning_prefix,
)
from .store import ProofVault
from .types import (
    Deposit,
    InsufficientFundsError,
    MintError,
    MintQuote,
    MintTimeoutError,
    PaymentResult,
    ValidationError,
)

logger = logging.getLogger(__name__)


def validate_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Amount must be a positive whole number of sats, got {amount!r}")
    return amount


class LightningBridge:
    """Deposit state machine and invoice payment.

    A deposit moves REQUESTED -> PAID -> MINTED, or is dropped as EXPIRED when
    still unpaid after the retention window. Paid quotes are always minted,
    even past the window.
    """

    def __init__(
        self,
        gateway: MintGateway,
        vault: ProofVault,
        quotes: QuoteBook,
        history: TransactionLedger,
        *,
        quote_retention: float = 600.0,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self.gateway = gateway
        self.vault = vault
        self.quotes = quotes
        self.history = history
        self.quote_retention = quote_retention
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=10.0, follow_redirects=True)
        )
        # Track quotes being (or already) minted so concurrent checks mint once
        self._in_flight: set[str] = set()
        self._minted: set[str] = set()

    # ───────────────────────── Deposits ─────────────────────────────────

    async def create_deposit(self, amount: int, memo: str | None = None) -> Deposit:
        validate_amount(amount)
        quote = await self.gateway.create_quote(amount, memo)
        self.quotes.add(quote)
        logger.info("Created deposit quote %s for %d sat", quote.quote_id[:8], amount)
        return Deposit(invoice=quote.invoice, quote_id=quote.quote_id, amount=amount)

    def is_minted(self, quote_id: str) -> bool:
        return quote_id in self._minted

    def is_pending(self, quote_id: str) -> bool:
        return quote_id in self._in_flight or self.quotes.get(quote_id) is not None

    def _is_expired(self, quote: MintQuote) -> bool:
        return time.time() - quote.created_at > self.quote_retention

    def _discard_if_expired(self, quote: MintQuote) -> None:
        if self._is_expired(quote):
            logger.info("Deposit quote %s expired unpaid", quote.quote_id[:8])
            self.quotes.remove(quote.quote_id)

    async def check_deposit(self, quote_id: str) -> bool:
        """Mint the deposit if its invoice was paid.

        Returns:
            True once the proofs for this quote are in the store
        """
        if quote_id in self._minted:
            return True
        if quote_id in self._in_flight:
            return False
        quote = self.quotes.get(quote_id)
        if quote is None:
            return False

        self._in_flight.add(quote_id)
        try:
            if not quote.legacy:
                state = await self.gateway.check_quote(quote_id)
                if state == "ISSUED":
                    logger.warning(
                        "Quote %s already issued by the mint; dropping it", quote_id[:8]
                    )
                    self.quotes.remove(quote_id)
                    return False
                if state != "PAID":
                    self._discard_if_expired(quote)
                    return False
                proofs = await self.gateway.mint_from_quote(quote_id, quote.amount)
            else:
                # legacy mints have no status endpoint; minting fails until paid
                try:
                    proofs = await self.gateway.mint_from_quote(
                        quote_id, quote.amount, legacy=True
                    )
                except MintError as e:
                    logger.debug("Legacy quote %s not minted yet: %s", quote_id[:8], e)
                    self._discard_if_expired(quote)
                    return False

            await self.vault.add(proofs)
            self.quotes.remove(quote_id)
            self._minted.add(quote_id)
            self.history.record("lightning_received", quote.amount, memo=quote.memo or None)
            logger.info("Deposit %s minted: %d sat", quote_id[:8], quote.amount)
            return True
        finally:
            self._in_flight.discard(quote_id)

    def watch_deposit(
        self, quote_id: str, *, interval: float = 2.0, timeout: float | None = None
    ) -> DepositWatcher:
        """Poll ``quote_id`` in the background.

        Without ``timeout`` the watcher stops when the quote's retention
        window, counted from its creation, runs out.
        """
        if timeout is None:
            quote = self.quotes.get(quote_id)
            age = time.time() - quote.created_at if quote is not None else 0.0
            timeout = max(self.quote_retention - age, 0.0)
        return DepositWatcher(self, quote_id, interval=interval, timeout=timeout)

    async def sweep_pending(self) -> int:
        """Check every stored quote once. Returns the amount minted."""
        minted = 0
        for quote in self.quotes.all():
            try:
                if await self.check_deposit(quote.quote_id):
                    minted += quote.amount
            except MintError as e:
                logger.warning("Could not check deposit %s: %s", quote.quote_id[:8], e)
        return minted

    # ───────────────────────── Payments ─────────────────────────────────

    def _require_balance(self, amount: int) -> None:
        have = self.vault.available_balance()
        if have < amount:
            raise InsufficientFundsError(amount, have)

    async def _resolve_target(
        self, target: str, amount: int | None, memo: str | None
    ) -> str:
        if is_lightning_address(target) or is_lnurl(target):
            if amount is None:
                raise ValidationError("Amount is required for Lightning addresses")
            validate_amount(amount)
            self._require_balance(amount)
            async with self._http_client_factory() as client:
                return await resolve_invoice(target, amount, client, memo)
        if is_bolt11(target):
            invoice_amount = invoice_amount_sat(target)
            if invoice_amount is None:
                raise ValidationError("Invoices without an amount are not supported")
            if amount is not None and amount != invoice_amount:
                raise ValidationError(
                    f"Invoice is for {invoice_amount} sat, not {amount} sat"
                )
            self._require_balance(invoice_amount)
            return target
        raise ValidationError("Expected a BOLT11 invoice, Lightning address or LNURL")

    async def pay_invoice(
        self, target: str, amount: int | None = None, memo: str | None = None
    ) -> PaymentResult:
        """Pay an invoice or Lightning address by melting proofs.

        Raises:
            ValidationError: Unusable target or amount
            InsufficientFundsError: Balance can't cover amount plus fees
            LNURLError: Address resolution failed
            MintError: The mint refused or could not be reached
        """
        target = strip_lightning_prefix(target)
        invoice = await self._resolve_target(target, amount, memo)

        quote = await self.gateway.create_melt_quote(invoice)
        proofs = await self.vault.reserve(
            quote.amount + quote.fee_reserve, self.gateway.input_fee
        )
        try:
            result = await self.gateway.melt(quote, proofs)
        except MintTimeoutError:
            logger.warning(
                "Melt %s timed out; proofs kept until the mint reports them spent",
                quote.quote_id[:8],
            )
            self.vault.release(proofs)
            raise
        except MintError:
            self.vault.release(proofs)
            raise

        if not result.paid:
            self.vault.release(proofs)
            return PaymentResult(
                success=False, error=f"Payment not completed (state {result.state})"
            )

        await self.vault.commit(proofs, result.change_proofs)
        self.history.record(
            "lightning_sent",
            quote.amount,
            counterparty=None if is_bolt11(target) else target,
            memo=memo,
            fee=result.fee_paid,
        )
        logger.info("Paid %d sat (fee %d)", quote.amount, result.fee_paid)
        return PaymentResult(success=True, fee=result.fee_paid, preimage=result.preimage)


class DepositWatcher:
    """Background poll of one deposit quote. Await it for the outcome."""

    def __init__(
        self,
        bridge: LightningBridge,
        quote_id: str,
        *,
        interval: float = 2.0,
        timeout: float = 600.0,
    ) -> None:
        self.bridge = bridge
        self.quote_id = quote_id
        self.interval = interval
        self.timeout = timeout
        self.task: asyncio.Task[bool] = asyncio.create_task(
            self._run(), name=f"deposit-watch-{quote_id[:8]}"
        )

    async def _run(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        # at least one check, so a quote paid late is still picked up
        while True:
            try:
                if await self.bridge.check_deposit(self.quote_id):
                    return True
            except MintError as e:
                logger.warning("Deposit check for %s failed: %s", self.quote_id[:8], e)
            if self.bridge.is_minted(self.quote_id):
                return True
            if not self.bridge.is_pending(self.quote_id):
                # expired or never known
                return False
            if loop.time() + self.interval > deadline:
                break
            await asyncio.sleep(self.interval)
        logger.info("Stopped watching deposit %s after %.0fs", self.quote_id[:8], self.timeout)
        return False

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        self.task.cancel()

    def __await__(self):
        return self.task.__await__()
