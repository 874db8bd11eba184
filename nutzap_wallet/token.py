"""Cashu token serialization (CashuA / V3 JSON and CashuB / V4 CBOR)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any

import cbor2

from .types import Proof, ValidationError, sum_proofs


@dataclass
class Token:
    mint_url: str
    proofs: list[Proof]
    unit: str = "sat"
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)


def normalize_token(token: str) -> str:
    """Strip whitespace and a ``cashu:`` URI prefix."""
    token = token.strip()
    if token.lower().startswith("cashu:"):
        token = token[len("cashu:") :]
    return token


def token_fingerprint(token: str) -> str:
    """Stable identifier used to consume a token at most once."""
    return hashlib.sha256(normalize_token(token).encode()).hexdigest()


def _b64url_decode(encoded: str) -> bytes:
    # Add correct padding – (-len) % 4 equals 0,1,2,3
    encoded += "=" * ((-len(encoded)) % 4)
    return base64.urlsafe_b64decode(encoded)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


# ──────────────────────────────────────────────────────────────────────────────
# Encoding
# ──────────────────────────────────────────────────────────────────────────────


def encode_token(
    proofs: list[Proof],
    mint_url: str,
    *,
    unit: str = "sat",
    memo: str | None = None,
    version: int = 4,
) -> str:
    """Serialize proofs into a Cashu token.

    Version 4 (CashuB) needs hex keyset ids; tokens holding legacy
    base64 keyset ids are written as version 3.
    """
    if not proofs:
        raise ValueError("Cannot encode a token without proofs")
    if version == 4 and all(_is_hex(p["id"]) for p in proofs):
        return _encode_v4(proofs, mint_url, unit, memo)
    if version in (3, 4):
        return _encode_v3(proofs, mint_url, unit, memo)
    raise ValueError(f"Unsupported token version: {version}")


def _encode_v3(
    proofs: list[Proof], mint_url: str, unit: str, memo: str | None
) -> str:
    token_proofs = [
        {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
        for p in proofs
    ]
    token_data: dict[str, Any] = {
        "token": [{"mint": mint_url, "proofs": token_proofs}],
        "unit": unit,
    }
    if memo:
        token_data["memo"] = memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"cashuA{_b64url_encode(json_str.encode())}"


def _encode_v4(
    proofs: list[Proof], mint_url: str, unit: str, memo: str | None
) -> str:
    proofs_by_keyset: dict[str, list[Proof]] = {}
    for proof in proofs:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    tokens = [
        {
            "i": bytes.fromhex(keyset_id),
            "p": [
                {"a": p["amount"], "s": p["secret"], "c": bytes.fromhex(p["C"])}
                for p in keyset_proofs
            ],
        }
        for keyset_id, keyset_proofs in proofs_by_keyset.items()
    ]
    token_data: dict[str, Any] = {"m": mint_url, "u": unit, "t": tokens}
    if memo:
        token_data["d"] = memo
    return f"cashuB{_b64url_encode(cbor2.dumps(token_data))}"


# ──────────────────────────────────────────────────────────────────────────────
# Decoding
# ──────────────────────────────────────────────────────────────────────────────


def _checked_proof(keyset_id: Any, amount: Any, secret: Any, C: Any) -> Proof:
    if not isinstance(keyset_id, str) or not keyset_id:
        raise ValidationError("Token proof has no keyset id")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Token proof has an invalid amount")
    if not isinstance(secret, str) or not secret:
        raise ValidationError("Token proof has no secret")
    if not isinstance(C, str) or not _is_hex(C):
        raise ValidationError("Token proof has an invalid signature")
    return Proof(id=keyset_id, amount=amount, secret=secret, C=C)


def decode_token(token: str) -> Token:
    """Parse a CashuA or CashuB token.

    Raises:
        ValidationError: The string is not a well-formed single-mint token
    """
    token = normalize_token(token)
    try:
        if token.startswith("cashuA"):
            return _decode_v3(token[6:])
        if token.startswith("cashuB"):
            return _decode_v4(token[6:])
    except ValidationError:
        raise
    except (
        binascii.Error,
        ValueError,
        KeyError,
        TypeError,
        IndexError,
        AttributeError,
        cbor2.CBORDecodeError,
    ) as e:
        raise ValidationError(f"Malformed token: {e}") from e
    raise ValidationError("Invalid token format: expected cashuA or cashuB")


def _decode_v3(encoded: str) -> Token:
    token_data = json.loads(_b64url_decode(encoded).decode())
    entries = token_data["token"]
    if not entries:
        raise ValidationError("Token contains no proofs")
    mint_urls = {entry["mint"] for entry in entries}
    if len(mint_urls) != 1:
        raise ValidationError("Multi-mint tokens are not supported")
    proofs = [
        _checked_proof(p.get("id"), p.get("amount"), p.get("secret"), p.get("C"))
        for entry in entries
        for p in entry["proofs"]
    ]
    if not proofs:
        raise ValidationError("Token contains no proofs")
    return Token(
        mint_url=mint_urls.pop(),
        proofs=proofs,
        unit=token_data.get("unit", "sat"),
        memo=token_data.get("memo"),
    )


def _decode_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64url_decode(encoded))
    # 'm' = mint URL, 'u' = unit, 't' = tokens array, 'd' = memo
    mint_url = token_data["m"]
    if not isinstance(mint_url, str) or not mint_url:
        raise ValidationError("Token has no mint URL")
    proofs = [
        _checked_proof(
            entry["i"].hex(),
            p.get("a"),
            p.get("s"),
            p["c"].hex() if isinstance(p.get("c"), bytes) else None,
        )
        for entry in token_data["t"]
        for p in entry["p"]
    ]
    if not proofs:
        raise ValidationError("Token contains no proofs")
    return Token(
        mint_url=mint_url,
        proofs=proofs,
        unit=token_data.get("u", "sat"),
        memo=token_data.get("d"),
    )
