"""Wallet session: the one object a host application talks to."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

import httpx

from .backup import ProofBackup
from .capability import MintCapability
from .config import WalletSettings
from .discovery import WalletDiscovery
from .gateway import MintGateway
from .ledger import LocalStorage
from .lightning import DepositWatcher, LightningBridge
from .nutzap import NutzapEngine
from .relay import BroadcastNetwork, RelayPool
from .signer import Identity, Signer, resolve_signer
from .store import ProofVault
from .types import (
    AlreadyProcessedError,
    ClaimResult,
    Deposit,
    LNURLError,
    MintError,
    MintTimeoutError,
    MintUnavailableError,
    OfflineError,
    PaymentResult,
    ReceiveResult,
    RelayError,
    SendResult,
    SessionStatus,
    StorageCorruptionError,
    TokenAlreadySpentError,
    Transaction,
    ValidationError,
    WalletDescriptor,
    WalletError,
    WalletState,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

BACKUP_DEBOUNCE = 2.0


def translate_errors(fn: F) -> F:
    """Re-raise component and library failures as ``WalletError`` kinds."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(*args, **kwargs)
        except WalletError:
            raise
        except TokenAlreadySpentError as e:
            raise AlreadyProcessedError(str(e)) from e
        except (MintTimeoutError, MintUnavailableError, RelayError) as e:
            raise OfflineError(str(e)) from e
        except httpx.TransportError as e:
            raise OfflineError(f"Network error: {e}") from e
        except (MintError, LNURLError, httpx.HTTPError) as e:
            raise WalletError(str(e), kind="unknown") from e
        except OSError as e:
            raise WalletError(f"Local storage error: {e}", kind="unknown") from e

    return wrapper  # type: ignore[return-value]


class WalletSession:
    """One wallet per identity.

    ``initialize`` loads the local proofs first, then gives the mint a
    bounded handshake budget. If the mint isn't ready in time the session
    starts DEGRADED_OFFLINE: reads work, network operations raise
    ``OfflineError`` until the background connect succeeds or
    ``reconnect()`` is called.
    """

    def __init__(
        self,
        settings: WalletSettings | None = None,
        *,
        network: BroadcastNetwork | None = None,
        mint_factory: Callable[[str], MintCapability] | None = None,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self.settings = settings or WalletSettings.from_env()
        self._network = network
        self._owns_network = network is None
        self._mint_factory = mint_factory
        self._http_client_factory = http_client_factory

        self.status = SessionStatus.UNINITIALIZED
        self.pubkey: str | None = None
        self.signer: Signer | None = None
        self.storage: LocalStorage | None = None
        self.vault: ProofVault | None = None
        self.gateway: MintGateway | None = None
        self.lightning: LightningBridge | None = None
        self.nutzaps: NutzapEngine | None = None
        self.discovery: WalletDiscovery | None = None
        self.backup: ProofBackup | None = None

        self._tasks: set[asyncio.Task[Any]] = set()
        self._connect_task: asyncio.Task[bool] | None = None
        self._backup_task: asyncio.Task[None] | None = None
        self._auto_claim_task: asyncio.Task[None] | None = None
        self._fresh_device = False
        self.reconciliation: asyncio.Task[None] | None = None

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def __aenter__(self) -> WalletSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        # failures were already logged inside the tasks
        await asyncio.gather(*tasks, return_exceptions=True)

    async def initialize(self, identity: Identity) -> WalletState:
        """Bring the wallet up for ``identity`` (Signer, IdentityProvider or nsec/hex).

        Returns the local state immediately after the handshake budget,
        whether or not the mint answered.
        """
        if self.status is not SessionStatus.UNINITIALIZED:
            raise ValidationError("Wallet session already initialized")
        self.status = SessionStatus.INITIALIZING
        try:
            self.signer = await resolve_signer(identity)
            self.pubkey = await self.signer.get_public_key()
        except WalletError:
            self.status = SessionStatus.UNINITIALIZED
            raise

        settings = self.settings
        self.storage = LocalStorage(settings.data_dir, self.pubkey)
        self.vault = ProofVault(self.storage.proofs)
        local_balance = self.storage.proofs.balance()
        # only a device that never held value may pull proofs from a backup
        self._fresh_device = (
            not self.storage.proofs.load_proofs() and not self.storage.history.history(1)
        )
        logger.info(
            "Loaded wallet %s with %d sat from local storage", self.pubkey[:8], local_balance
        )

        if self._network is None:
            self._network = RelayPool(settings.relay_urls, timeout=settings.relay_timeout)
        storage = self.storage
        self.gateway = MintGateway(
            settings.mint_urls,
            factory=self._mint_factory,
            timeout=settings.mint_timeout,
            retries=settings.mint_retries,
            base_delay=settings.retry_base_delay,
            on_connected=lambda url: setattr(storage, "preferred_mint", url),
        )
        self.lightning = LightningBridge(
            self.gateway,
            self.vault,
            self.storage.quotes,
            self.storage.history,
            quote_retention=settings.quote_retention,
            http_client_factory=self._http_client_factory,
        )
        self.nutzaps = NutzapEngine(
            self.gateway,
            self.vault,
            self.signer,
            self._network,
            self.storage.history,
            self.storage.processed,
            query_timeout=settings.relay_timeout,
        )
        self.discovery = WalletDiscovery(
            self.signer,
            self._network,
            tag=settings.wallet_tag,
            query_timeout=settings.relay_timeout,
        )
        self.backup = ProofBackup(
            self.signer, self._network, query_timeout=settings.relay_timeout
        )

        self._connect_task = self._spawn(self._connect(), "mint-connect")
        await asyncio.wait({self._connect_task}, timeout=settings.handshake_budget)
        if self.status is SessionStatus.INITIALIZING:
            logger.warning(
                "Mint not ready within %.1fs; starting offline", settings.handshake_budget
            )
            self.status = SessionStatus.DEGRADED_OFFLINE

        self.reconciliation = self._spawn(self._reconcile(), "reconciliation")
        return self.get_state()

    async def _connect(self) -> bool:
        assert self.gateway is not None and self.storage is not None
        try:
            await self.gateway.connect(self.storage.preferred_mint)
        except MintError as e:
            logger.warning("Mint connection failed: %s", e)
            self.status = SessionStatus.DEGRADED_OFFLINE
            return False
        self.status = SessionStatus.READY
        return True

    async def reconnect(self) -> bool:
        """Retry the mint connection now. True if the session is READY."""
        self._require_initialized()
        if self.status is SessionStatus.READY:
            return True
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = self._spawn(self._connect(), "mint-connect")
        return await asyncio.shield(self._connect_task)

    async def _reconcile(self) -> None:
        """Descriptor sync and backup restore, once the mint is known."""
        assert self._connect_task is not None
        if not await self._connect_task:
            return
        assert self.signer is not None and self.gateway is not None
        if not self.signer.can_sign:
            return
        try:
            await self._sync_descriptor()
            await self._restore_backup()
        except (WalletError, MintError, RelayError) as e:
            logger.warning("Background reconciliation incomplete: %s", e)

    async def _sync_descriptor(self) -> None:
        assert self.discovery is not None and self.gateway is not None
        mint_url = self.gateway.url
        if mint_url is None:
            return
        descriptor = await self.discovery.find()
        if descriptor is not None and descriptor.mint_url.rstrip("/") == mint_url:
            return
        await self.discovery.publish(
            mint_url, self.settings.wallet_name, self.get_balance()
        )

    async def _restore_backup(self) -> None:
        assert self.backup is not None and self.gateway is not None
        assert self.vault is not None and self.gateway.url is not None
        if not self._fresh_device:
            return
        restored = await self.backup.restore(self.gateway.url)
        self._fresh_device = False
        local = {p["secret"] for p in self.vault.store.load_proofs()}
        missing = [p for p in restored if p["secret"] not in local]
        if not missing:
            return
        spent = await self.gateway.check_spent(missing)
        unspent = [p for p in missing if p["secret"] not in spent]
        if unspent:
            await self.vault.add(unspent)
            logger.info(
                "Restored %d sat from relay backup", sum(p["amount"] for p in unspent)
            )

    def _schedule_backup(self) -> None:
        """Publish an encrypted snapshot shortly after the last change."""
        if self.signer is None or not self.signer.can_sign or self.gateway is None:
            return
        if not self.gateway.connected:
            return
        if self._backup_task is not None and not self._backup_task.done():
            self._backup_task.cancel()
        self._backup_task = self._spawn(self._backup_later(), "proof-backup")

    async def _backup_later(self) -> None:
        await asyncio.sleep(BACKUP_DEBOUNCE)
        await self._publish_backup()

    async def _publish_backup(self) -> None:
        assert self.backup is not None and self.vault is not None
        mint_url = self.gateway.url if self.gateway else None
        if mint_url is None:
            return
        try:
            await self.backup.publish(self.vault.store.load_proofs(), mint_url)
        except (WalletError, RelayError) as e:
            logger.warning("Proof backup not published: %s", e)

    async def _flush_backup(self) -> None:
        """Publish a pending debounced snapshot now, bounded by the relay timeout."""
        task = self._backup_task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        try:
            await asyncio.wait_for(
                self._publish_backup(), timeout=self.settings.relay_timeout
            )
        except TimeoutError:
            logger.warning(
                "Proof backup not flushed within %.1fs", self.settings.relay_timeout
            )

    async def aclose(self) -> None:
        """Flush a pending backup, cancel background work, close network clients."""
        await self._flush_backup()
        await self._cancel_tasks()
        if self.gateway is not None:
            await self.gateway.aclose()
        if self._owns_network and isinstance(self._network, RelayPool):
            await self._network.aclose()

    @translate_errors
    async def reset(self) -> None:
        """Forget everything stored locally for this identity."""
        storage = self._require_initialized()
        await self._cancel_tasks()
        assert self.vault is not None
        async with self.vault.lock:
            storage.clear()
            self.vault = ProofVault(storage.proofs)
        # the components hold the vault; rewire them to the fresh one
        for component in (self.lightning, self.nutzaps):
            if component is not None:
                component.vault = self.vault
        logger.info("Wallet %s reset", (self.pubkey or "")[:8])

    # ───────────────────────── Guards ─────────────────────────────────

    def _require_initialized(self) -> LocalStorage:
        if self.storage is None or self.status in (
            SessionStatus.UNINITIALIZED,
            SessionStatus.INITIALIZING,
        ):
            raise ValidationError("Wallet session not initialized")
        return self.storage

    def _require_ready(self) -> None:
        self._require_initialized()
        if self.status is not SessionStatus.READY:
            raise OfflineError("Mint not connected; wallet is offline")

    @property
    def storage_corruption(self) -> StorageCorruptionError | None:
        return self.storage.proofs.corruption if self.storage else None

    # ───────────────────────── Reads ─────────────────────────────────

    def get_balance(self) -> int:
        """Sum of the stored proofs. Works offline."""
        return self._require_initialized().proofs.balance()

    def get_state(self) -> WalletState:
        storage = self._require_initialized()
        assert self.pubkey is not None
        mint_url = (self.gateway.url if self.gateway else None) or storage.preferred_mint
        return WalletState(
            proofs=storage.proofs.load_proofs(),
            mint_url=mint_url or "",
            owner_pubkey=self.pubkey,
            status=self.status,
        )

    def get_history(self, limit: int = 50) -> list[Transaction]:
        return self._require_initialized().history.history(limit)

    @translate_errors
    async def discover(self, owner: str | None = None) -> WalletDescriptor | None:
        """Look up a wallet descriptor (own wallet by default). Relays only."""
        self._require_initialized()
        assert self.discovery is not None
        return await self.discovery.find(owner)

    # ───────────────────────── Nutzaps & tokens ─────────────────────────────────

    @translate_errors
    async def send(
        self, recipient: str, amount: int, memo: str | None = None
    ) -> SendResult:
        self._require_ready()
        assert self.nutzaps is not None
        result = await self.nutzaps.send(recipient, amount, memo)
        self._schedule_backup()
        return result

    @translate_errors
    async def claim(self) -> ClaimResult:
        self._require_ready()
        assert self.nutzaps is not None
        result = await self.nutzaps.claim()
        if result.claimed:
            self._schedule_backup()
        return result

    @translate_errors
    async def generate_portable_token(self, amount: int, memo: str | None = None) -> str:
        self._require_ready()
        assert self.nutzaps is not None
        token = await self.nutzaps.create_token(amount, memo)
        self._schedule_backup()
        return token

    @translate_errors
    async def _receive_token(self, token: str) -> int:
        self._require_ready()
        assert self.nutzaps is not None
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Token is empty")
        amount = await self.nutzaps.receive_token(token)
        self._schedule_backup()
        return amount

    async def receive_portable_token(self, token: str) -> ReceiveResult:
        """Redeem a token. Failures are reported in the result, not raised."""
        try:
            amount = await self._receive_token(token)
        except WalletError as e:
            return ReceiveResult(amount=0, error=str(e), error_kind=e.kind)
        return ReceiveResult(amount=amount)

    async def _auto_claim_loop(self, interval: float) -> None:
        while True:
            if self.status is SessionStatus.READY:
                try:
                    result = await self.claim()
                    if result.claimed:
                        logger.info("Auto-claimed %d sat", result.claimed)
                except WalletError as e:
                    logger.info("Auto-claim skipped: %s", e)
            await asyncio.sleep(interval)

    def start_auto_claim(self, interval: float = 30.0) -> asyncio.Task[None]:
        """Claim incoming nutzaps every ``interval`` seconds until cancelled."""
        self._require_initialized()
        if self._auto_claim_task is None or self._auto_claim_task.done():
            self._auto_claim_task = self._spawn(
                self._auto_claim_loop(interval), "auto-claim"
            )
        return self._auto_claim_task

    def stop_auto_claim(self) -> None:
        if self._auto_claim_task is not None:
            self._auto_claim_task.cancel()
            self._auto_claim_task = None

    # ───────────────────────── Lightning ─────────────────────────────────

    @translate_errors
    async def create_deposit(self, amount: int, memo: str | None = None) -> Deposit:
        self._require_ready()
        assert self.lightning is not None
        return await self.lightning.create_deposit(amount, memo)

    @translate_errors
    async def check_deposit(self, quote_id: str) -> bool:
        self._require_ready()
        assert self.lightning is not None
        minted = await self.lightning.check_deposit(quote_id)
        if minted:
            self._schedule_backup()
        return minted

    def watch_deposit(
        self,
        quote_id: str,
        *,
        interval: float = 2.0,
        timeout: float | None = None,
    ) -> DepositWatcher:
        """Poll a deposit in the background; cancelled by ``aclose``/``reset``."""
        self._require_ready()
        assert self.lightning is not None
        watcher = self.lightning.watch_deposit(
            quote_id,
            interval=interval,
            timeout=timeout,
        )
        self._tasks.add(watcher.task)
        watcher.task.add_done_callback(self._tasks.discard)
        watcher.task.add_done_callback(self._after_watch)
        return watcher

    def _after_watch(self, task: asyncio.Task[bool]) -> None:
        if not task.cancelled() and task.exception() is None and task.result():
            self._schedule_backup()

    @translate_errors
    async def sweep_deposits(self) -> int:
        self._require_ready()
        assert self.lightning is not None
        minted = await self.lightning.sweep_pending()
        if minted:
            self._schedule_backup()
        return minted

    @translate_errors
    async def pay_invoice(
        self, target: str, amount: int | None = None, memo: str | None = None
    ) -> PaymentResult:
        self._require_ready()
        assert self.lightning is not None
        result = await self.lightning.pay_invoice(target, amount, memo)
        if result.success:
            self._schedule_backup()
        return result

    # ───────────────────────── Maintenance ─────────────────────────────────

    @translate_errors
    async def sync_balance(self) -> int:
        """Drop proofs the mint reports spent. Returns the resulting balance."""
        self._require_ready()
        assert self.vault is not None and self.gateway is not None
        candidates = self.vault.available()
        spent = await self.gateway.check_spent(candidates)
        if spent:
            stale = [p for p in candidates if p["secret"] in spent]
            await self.vault.commit(stale, [])
            logger.info(
                "Removed %d spent proofs (%d sat)",
                len(stale),
                sum(p["amount"] for p in stale),
            )
            self._schedule_backup()
        return self.get_balance()
