"""Environment driven settings for the wallet and the CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_MINTS = ["https://mint.coinos.io", "https://testnut.cashu.space"]
DEFAULT_RELAYS = ["wss://relay.damus.io", "wss://relay.primal.net", "wss://nos.lol"]
DEFAULT_WALLET_TAG = "runstr-primary-wallet"
DEFAULT_WALLET_NAME = "NutZap Wallet"

MINTS_ENV_VAR = "CASHU_MINTS"
RELAYS_ENV_VAR = "NOSTR_RELAYS"


def _split_list(raw: str | None, default: list[str]) -> list[str]:
    if not raw:
        return list(default)
    items = [item.strip().rstrip("/") for item in raw.split(",") if item.strip()]
    return items or list(default)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring %s=%r, not a number; using %s", name, raw, default
        )
        return default


@dataclass
class WalletSettings:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".nutzap_wallet")
    mint_urls: list[str] = field(default_factory=lambda: list(DEFAULT_MINTS))
    relay_urls: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    wallet_tag: str = DEFAULT_WALLET_TAG
    wallet_name: str = DEFAULT_WALLET_NAME
    mint_timeout: float = 10.0
    relay_timeout: float = 5.0
    handshake_budget: float = 8.0
    quote_retention: float = 600.0
    # retries per mint call after the first attempt, and the first backoff delay
    mint_retries: int = 2
    retry_base_delay: float = 2.0
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> WalletSettings:
        """Read settings from the process environment (and ``.env`` if present)."""
        if dotenv:
            load_dotenv()
        data_dir = os.getenv("NUTZAP_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser()
            if data_dir
            else Path.home() / ".nutzap_wallet",
            mint_urls=_split_list(os.getenv(MINTS_ENV_VAR), DEFAULT_MINTS),
            relay_urls=_split_list(os.getenv(RELAYS_ENV_VAR), DEFAULT_RELAYS),
            wallet_tag=os.getenv("NUTZAP_WALLET_TAG") or DEFAULT_WALLET_TAG,
            wallet_name=os.getenv("NUTZAP_WALLET_NAME") or DEFAULT_WALLET_NAME,
            mint_timeout=_float_env("NUTZAP_MINT_TIMEOUT", 10.0),
            relay_timeout=_float_env("NUTZAP_RELAY_TIMEOUT", 5.0),
            handshake_budget=_float_env("NUTZAP_HANDSHAKE_BUDGET", 8.0),
            quote_retention=_float_env("NUTZAP_QUOTE_RETENTION", 600.0),
            log_level=os.getenv("NUTZAP_LOG_LEVEL", "WARNING").upper(),
        )


def configure_logging(level: str | int = "WARNING") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
