"""Nostr event construction, NIP-01 ids and tag parsing."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any

from .crypto import schnorr_verify
from .types import NostrEvent, UnsignedEvent

_HEX = set("0123456789abcdef")


def _is_hex_of_len(value: Any, length: int) -> bool:
    return isinstance(value, str) and len(value) == length and set(value) <= _HEX


def build_event(
    pubkey: str,
    kind: int,
    tags: list[list[str]],
    content: str = "",
    created_at: int | None = None,
) -> UnsignedEvent:
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=int(time.time()) if created_at is None else created_at,
        kind=kind,
        tags=tags,
        content=content,
    )


def compute_event_id(event: UnsignedEvent | NostrEvent) -> str:
    """NIP-01 id: sha256 of the canonical serialization."""
    serialized = json.dumps(
        [
            0,
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_event(event: Any) -> bool:
    """Check shape, id and Schnorr signature of an event received from a relay."""
    if not isinstance(event, dict):
        return False
    if not (
        _is_hex_of_len(event.get("id"), 64)
        and _is_hex_of_len(event.get("pubkey"), 64)
        and _is_hex_of_len(event.get("sig"), 128)
    ):
        return False
    if not isinstance(event.get("created_at"), int) or not isinstance(
        event.get("kind"), int
    ):
        return False
    if not isinstance(event.get("content"), str):
        return False
    tags = event.get("tags")
    if not isinstance(tags, list) or not all(
        isinstance(tag, list) and all(isinstance(v, str) for v in tag) for tag in tags
    ):
        return False
    if compute_event_id(event) != event["id"]:
        return False
    return schnorr_verify(event["pubkey"], bytes.fromhex(event["id"]), event["sig"])


def _int_or_none(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class EventTags:
    """Typed view of the tags the wallet reads. First occurrence of a tag wins."""

    d: str | None = None
    p: str | None = None
    amount: int | None = None
    unit: str | None = None
    proof: str | None = None
    mint: str | None = None
    name: str | None = None
    balance: int | None = None

    @classmethod
    def parse(cls, tags: list[list[str]]) -> EventTags:
        values: dict[str, str] = {}
        for tag in tags:
            if len(tag) >= 2 and tag[0] in cls.__dataclass_fields__:
                values.setdefault(tag[0], tag[1])
        return cls(
            d=values.get("d"),
            p=values.get("p"),
            amount=_int_or_none(values.get("amount")),
            unit=values.get("unit"),
            proof=values.get("proof"),
            mint=values.get("mint"),
            name=values.get("name"),
            balance=_int_or_none(values.get("balance")),
        )


def nutzap_tags(
    recipient: str, amount: int, token: str, mint_url: str, unit: str = "sat"
) -> list[list[str]]:
    return [
        ["p", recipient],
        ["amount", str(amount)],
        ["unit", unit],
        ["proof", token],
        ["mint", mint_url],
    ]


def descriptor_tags(
    tag: str, mint_url: str, name: str, balance_hint: int, unit: str = "sat"
) -> list[list[str]]:
    return [
        ["d", tag],
        ["mint", mint_url],
        ["name", name],
        ["unit", unit],
        ["balance", str(balance_hint)],
    ]
