"""Cashu BDHKE primitives, Nostr key helpers and NIP-44 encryption."""

from __future__ import annotations

import base64
import hashlib
import hmac
import math
import secrets
import struct

import bech32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDF, HKDFExpand

from .types import BlindedMessage


# secp256k1 field prime
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


# ──────────────────────────────────────────────────────────────────────────────
# BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point as defined by NUT-00.

    ``Y = PublicKey(0x02 || SHA256(SHA256(DST || message) || counter))`` for the
    first little-endian 32-bit counter that yields a valid point.
    """
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(
            msg_to_hash + counter.to_bytes(4, "little")
        ).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def secret_to_point(secret: str) -> PublicKey:
    return hash_to_curve(secret.encode("utf-8"))


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a secret for the mint.

    Returns:
        Tuple of (B_ = Y + r*G, blinding factor r)
    """
    Y = secret_to_point(secret)
    if r is None:
        r = secrets.token_bytes(32)
    r_key = PrivateKey(r)
    B_ = PublicKey.combine_keys([Y, r_key.public_key])
    return B_, r


def _negate(point: PublicKey) -> PublicKey:
    raw = point.format(compressed=False)
    y = int.from_bytes(raw[33:65], "big")
    neg_y = ((_P - y) % _P).to_bytes(32, "big")
    return PublicKey(b"\x04" + raw[1:33] + neg_y)


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a mint signature: ``C = C_ - r*K``."""
    rK = K.multiply(PrivateKey(r).secret)
    return PublicKey.combine_keys([C_, _negate(rK)])


def split_amount(amount: int) -> list[int]:
    """Split an amount into ascending powers of two."""
    if amount < 0:
        raise ValueError("amount must not be negative")
    parts = []
    bit = 1
    while amount:
        if amount & 1:
            parts.append(bit)
        amount >>= 1
        bit <<= 1
    return parts


def create_blinded_messages(
    amounts: list[int], keyset_id: str
) -> tuple[list[BlindedMessage], list[str], list[bytes]]:
    """Create one blinded output per amount.

    Returns:
        (outputs, secrets, blinding factors) in matching order
    """
    outputs: list[BlindedMessage] = []
    secrets_out: list[str] = []
    factors: list[bytes] = []
    for amount in amounts:
        secret = secrets.token_hex(32)
        B_, r = blind_message(secret)
        outputs.append(
            BlindedMessage(amount=amount, B_=B_.format(compressed=True).hex(), id=keyset_id)
        )
        secrets_out.append(secret)
        factors.append(r)
    return outputs, secrets_out, factors


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def is_valid_compressed_pubkey(pubkey: str) -> bool:
    if not isinstance(pubkey, str) or len(pubkey) != 66:
        return False
    if not pubkey.startswith(("02", "03")):
        return False
    try:
        PublicKey(bytes.fromhex(pubkey))
    except ValueError:
        return False
    return True


def blank_outputs_needed(fee_reserve: int) -> int:
    """Number of blank outputs for NUT-08 fee return."""
    if fee_reserve <= 0:
        return 0
    return max(math.ceil(math.log2(fee_reserve)), 1)


# ──────────────────────────────────────────────────────────────────────────────
# Nostr keys
# ──────────────────────────────────────────────────────────────────────────────


def _bech32_to_bytes(value: str, expected_hrp: str) -> bytes:
    hrp, data = bech32.bech32_decode(value)
    if hrp != expected_hrp or data is None:
        raise ValueError(f"Invalid {expected_hrp} string")
    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise ValueError(f"Invalid {expected_hrp} payload")
    return bytes(decoded)


def _encode_bech32(hrp: str, payload: bytes) -> str:
    return bech32.bech32_encode(hrp, bech32.convertbits(payload, 8, 5))


def decode_nsec(nsec: str) -> PrivateKey:
    """Accept ``nsec1...`` or 64 hex characters."""
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        return PrivateKey(_bech32_to_bytes(nsec, "nsec"))
    try:
        raw = bytes.fromhex(nsec)
    except ValueError as e:
        raise ValueError("Invalid private key: expected nsec or hex") from e
    if len(raw) != 32:
        raise ValueError("Invalid private key length")
    return PrivateKey(raw)


def encode_nsec(privkey: PrivateKey) -> str:
    return _encode_bech32("nsec", privkey.secret)


def get_pubkey(privkey: PrivateKey) -> str:
    """Nostr (x-only) public key as hex."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def normalize_pubkey(key: str) -> str:
    """Accept ``npub1...`` or 64 hex characters, return lowercase hex."""
    key = key.strip()
    if key.startswith("npub1"):
        return _bech32_to_bytes(key, "npub").hex()
    if len(key) != 64:
        raise ValueError("Invalid public key: expected npub or 64 hex characters")
    try:
        bytes.fromhex(key)
    except ValueError as e:
        raise ValueError("Invalid public key: not hex") from e
    return key.lower()


def encode_npub(pubkey_hex: str) -> str:
    return _encode_bech32("npub", bytes.fromhex(pubkey_hex))


def schnorr_sign(privkey: PrivateKey, message: bytes) -> str:
    return privkey.sign_schnorr(message, secrets.token_bytes(32)).hex()


def schnorr_verify(pubkey_hex: str, message: bytes, signature_hex: str) -> bool:
    try:
        return PublicKeyXOnly(bytes.fromhex(pubkey_hex)).verify(
            bytes.fromhex(signature_hex), message
        )
    except ValueError:
        return False


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Error(Exception):
    """Base exception for NIP-44 encryption errors."""


NIP44_VERSION = 2
NIP44_SALT = b"nip44-v2"


def _calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 0:
        raise ValueError("Invalid unpadded length")
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: bytes) -> bytes:
    size = len(plaintext)
    if size < 1 or size > 65535:
        raise NIP44Error(f"Invalid plaintext length: {size}")
    padded_len = _calc_padded_len(size)
    return struct.pack(">H", size) + plaintext + bytes(padded_len - size)


def _unpad(padded: bytes) -> bytes:
    size = struct.unpack(">H", padded[:2])[0]
    if size == 0 or len(padded) != 2 + _calc_padded_len(size):
        raise NIP44Error("Invalid padding")
    return padded[2 : 2 + size]


def conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
    """ECDH shared x coordinate run through HKDF-extract with the NIP-44 salt."""
    if len(pubkey_hex) == 64:
        pubkey_hex = "02" + pubkey_hex
    shared = PublicKey(bytes.fromhex(pubkey_hex)).multiply(privkey.secret)
    shared_x = shared.format(compressed=True)[1:]
    return HKDF(
        algorithm=hashes.SHA256(), length=32, salt=NIP44_SALT, info=None
    ).derive(shared_x)


def _message_keys(conv_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(
        conv_key
    )
    return expanded[0:32], expanded[32:44], expanded[44:76]


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography wants a 16 byte nonce: 4 byte little-endian counter (0) + 12 byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
    return cipher.encryptor().update(data)


def nip44_encrypt(plaintext: str, privkey: PrivateKey, pubkey_hex: str) -> str:
    nonce = secrets.token_bytes(32)
    chacha_key, chacha_nonce, hmac_key = _message_keys(
        conversation_key(privkey, pubkey_hex), nonce
    )
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext.encode("utf-8")))
    mac = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    payload = bytes([NIP44_VERSION]) + nonce + ciphertext + mac
    return base64.b64encode(payload).decode("ascii")


def nip44_decrypt(payload_b64: str, privkey: PrivateKey, pubkey_hex: str) -> str:
    if payload_b64.startswith("#"):
        raise NIP44Error("Unsupported encryption version")
    try:
        payload = base64.b64decode(payload_b64)
    except ValueError as e:
        raise NIP44Error(f"Invalid base64: {e}") from e
    if len(payload) < 99 or len(payload) > 65603:
        raise NIP44Error(f"Invalid payload size: {len(payload)}")
    if payload[0] != NIP44_VERSION:
        raise NIP44Error(f"Unknown version: {payload[0]}")

    nonce, ciphertext, mac = payload[1:33], payload[33:-32], payload[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(
        conversation_key(privkey, pubkey_hex), nonce
    )
    expected = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, mac):
        raise NIP44Error("Invalid MAC")
    return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext)).decode("utf-8")
