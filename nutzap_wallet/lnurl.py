"""LNURL-pay and Lightning address resolution, BOLT11 amount decoding."""

from __future__ import annotations

import logging
import re
from typing import TypedDict

import bech32
import bolt11
import httpx

from .types import LNURLError, ValidationError

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^[a-z0-9._+\-]+@[a-z0-9\-]+(\.[a-z0-9\-]+)+$", re.IGNORECASE)


class LNURLData(TypedDict):
    callback_url: str
    min_sendable: int  # msat
    max_sendable: int  # msat
    comment_allowed: int


def strip_lightning_prefix(target: str) -> str:
    target = target.strip()
    if target.lower().startswith("lightning:"):
        target = target[len("lightning:") :]
    return target


def is_lightning_address(target: str) -> bool:
    return bool(_ADDRESS_RE.match(target))


def is_lnurl(target: str) -> bool:
    return target.lower().startswith("lnurl1")


def is_bolt11(target: str) -> bool:
    return target.lower().startswith("ln") and not is_lnurl(target)


def invoice_amount_sat(invoice: str) -> int | None:
    """Amount of a BOLT11 invoice in sats, None for amountless invoices.

    Raises:
        ValidationError: Not a decodable invoice
    """
    try:
        decoded = bolt11.decode(invoice)
    # bolt11 raises several unrelated exception types for bad input
    except Exception as e:
        raise ValidationError(f"Invalid Lightning invoice: {e}") from e
    if decoded.amount_msat is None:
        return None
    return decoded.amount_msat // 1000


def lnurl_to_url(target: str) -> str:
    """Map a Lightning address or bech32 LNURL to its LNURL-pay HTTPS URL."""
    if is_lightning_address(target):
        user, domain = target.lower().split("@", 1)
        return f"https://{domain}/.well-known/lnurlp/{user}"
    if is_lnurl(target):
        hrp, data = bech32.bech32_decode(target.lower())
        if hrp != "lnurl" or data is None:
            raise LNURLError("Invalid LNURL encoding")
        decoded = bech32.convertbits(data, 5, 8, False)
        if decoded is None:
            raise LNURLError("Invalid LNURL payload")
        return bytes(decoded).decode("utf-8")
    if target.startswith("https://"):
        return target
    raise LNURLError(f"Not a Lightning address or LNURL: {target}")


async def _get_json(client: httpx.AsyncClient, url: str, **params: object) -> dict:
    try:
        response = await client.get(url, params=params or None)
    except httpx.HTTPError as e:
        raise LNURLError(f"LNURL request to {url} failed: {e}") from e
    if response.status_code >= 400:
        raise LNURLError(f"LNURL service returned {response.status_code}")
    try:
        data = response.json()
    except ValueError as e:
        raise LNURLError("LNURL service returned invalid JSON") from e
    if not isinstance(data, dict):
        raise LNURLError("LNURL service returned unexpected body")
    if str(data.get("status", "")).upper() == "ERROR":
        raise LNURLError(f"LNURL error: {data.get('reason', 'unknown')}")
    return data


async def get_lnurl_data(target: str, client: httpx.AsyncClient) -> LNURLData:
    """Fetch the LNURL-pay parameters (callback and sendable range)."""
    data = await _get_json(client, lnurl_to_url(strip_lightning_prefix(target)))
    if data.get("tag") != "payRequest":
        raise LNURLError("LNURL is not a payRequest")
    try:
        return LNURLData(
            callback_url=str(data["callback"]),
            min_sendable=int(data["minSendable"]),
            max_sendable=int(data["maxSendable"]),
            comment_allowed=int(data.get("commentAllowed") or 0),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise LNURLError(f"Incomplete payRequest: {e}") from e


async def get_lnurl_invoice(
    lnurl_data: LNURLData,
    amount_msat: int,
    client: httpx.AsyncClient,
    comment: str | None = None,
) -> str:
    """Ask the callback for an invoice of exactly ``amount_msat``."""
    params: dict[str, object] = {"amount": amount_msat}
    if comment and lnurl_data["comment_allowed"] > 0:
        params["comment"] = comment[: lnurl_data["comment_allowed"]]
    data = await _get_json(client, lnurl_data["callback_url"], **params)
    invoice = data.get("pr")
    if not isinstance(invoice, str) or not invoice:
        raise LNURLError("LNURL callback returned no invoice")
    return invoice


async def resolve_invoice(
    target: str,
    amount_sat: int,
    client: httpx.AsyncClient,
    comment: str | None = None,
) -> str:
    """Resolve a Lightning address / LNURL to a BOLT11 invoice for ``amount_sat``.

    Raises:
        ValidationError: Amount outside the recipient's sendable range
        LNURLError: Resolution failed
    """
    lnurl_data = await get_lnurl_data(target, client)
    amount_msat = amount_sat * 1000
    if not lnurl_data["min_sendable"] <= amount_msat <= lnurl_data["max_sendable"]:
        raise ValidationError(
            f"Amount {amount_sat} sat is outside LNURL limits "
            f"({lnurl_data['min_sendable'] // 1000} - "
            f"{lnurl_data['max_sendable'] // 1000} sat)"
        )
    invoice = await get_lnurl_invoice(lnurl_data, amount_msat, client, comment)
    invoice_amount = invoice_amount_sat(invoice)
    if invoice_amount is not None and invoice_amount != amount_sat:
        raise LNURLError(
            f"LNURL invoice is for {invoice_amount} sat, requested {amount_sat} sat"
        )
    logger.debug("Resolved %s to invoice for %d sat", target, amount_sat)
    return invoice
