#!/usr/bin/env python3
"""Test BDHKE primitives, Nostr key helpers and NIP-44 encryption."""

import pytest
from coincurve import PrivateKey

from nutzap_wallet.crypto import (
    NIP44Error,
    _calc_padded_len,
    blind_message,
    conversation_key,
    decode_nsec,
    encode_npub,
    encode_nsec,
    get_pubkey,
    hash_to_curve,
    nip44_decrypt,
    nip44_encrypt,
    normalize_pubkey,
    schnorr_sign,
    schnorr_verify,
    secret_to_point,
    split_amount,
    unblind_signature,
)


class TestHashToCurve:
    """NUT-00 hash_to_curve test vectors."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            (
                "0000000000000000000000000000000000000000000000000000000000000000",
                "024cce997d3b518f739663b757deaec95bcd9473c30a14ac2fd04023a739d1a725",
            ),
            (
                "0000000000000000000000000000000000000000000000000000000000000001",
                "022e7158e11c9506f1aa4248bf531298daa7febd6194f003edcd9b93ade6253acf",
            ),
            (
                "0000000000000000000000000000000000000000000000000000000000000002",
                "026cdbe15362df59cd1dd3c9c11de8aedac2106eca69236ecd9fbe117af897be4f",
            ),
        ],
    )
    def test_vectors(self, message: str, expected: str) -> None:
        point = hash_to_curve(bytes.fromhex(message))
        assert point.format(compressed=True).hex() == expected

    def test_secret_is_hashed_as_utf8(self) -> None:
        assert secret_to_point("abc").format() == hash_to_curve(b"abc").format()


class TestBlindSignatures:
    def test_unblinded_signature_equals_k_times_y(self) -> None:
        """C_ = k*B_ unblinds to k*Y for the mint's key k."""
        k = PrivateKey()
        K = k.public_key
        secret = "test_secret"

        B_, r = blind_message(secret)
        C_ = B_.multiply(k.secret)
        C = unblind_signature(C_, r, K)

        assert C.format() == secret_to_point(secret).multiply(k.secret).format()

    def test_blinding_factor_is_respected(self) -> None:
        r = bytes.fromhex("01" * 32)
        B1, r1 = blind_message("s", r)
        B2, _ = blind_message("s", r)
        assert r1 == r
        assert B1.format() == B2.format()

    def test_split_amount(self) -> None:
        assert split_amount(0) == []
        assert split_amount(13) == [1, 4, 8]
        assert split_amount(500) == [4, 16, 32, 64, 128, 256]
        assert sum(split_amount(1337)) == 1337

    def test_split_amount_rejects_negative(self) -> None:
        with pytest.raises(ValueError):
            split_amount(-1)


class TestNostrKeys:
    def test_nsec_roundtrip(self) -> None:
        key = PrivateKey()
        nsec = encode_nsec(key)
        assert nsec.startswith("nsec1")
        assert decode_nsec(nsec).secret == key.secret

    def test_hex_private_key(self) -> None:
        key = PrivateKey()
        assert decode_nsec(key.secret.hex()).secret == key.secret

    @pytest.mark.parametrize("bad", ["", "nsec1invalid", "abcd", "zz" * 32])
    def test_invalid_private_key(self, bad: str) -> None:
        with pytest.raises(ValueError):
            decode_nsec(bad)

    def test_npub_and_hex_normalize_to_same_key(self) -> None:
        pubkey = get_pubkey(PrivateKey())
        assert len(pubkey) == 64
        assert normalize_pubkey(encode_npub(pubkey)) == pubkey
        assert normalize_pubkey(pubkey.upper()) == pubkey

    def test_invalid_public_key(self) -> None:
        with pytest.raises(ValueError):
            normalize_pubkey("npub1xyz")
        with pytest.raises(ValueError):
            normalize_pubkey("12" * 31)

    def test_schnorr_sign_and_verify(self) -> None:
        key = PrivateKey()
        message = bytes(32)
        sig = schnorr_sign(key, message)
        assert schnorr_verify(get_pubkey(key), message, sig)
        assert not schnorr_verify(get_pubkey(key), b"\x01" * 32, sig)
        assert not schnorr_verify(get_pubkey(PrivateKey()), message, sig)


class TestNIP44:
    def test_conversation_key_is_symmetric(self) -> None:
        alice, bob = PrivateKey(), PrivateKey()
        assert conversation_key(alice, get_pubkey(bob)) == conversation_key(
            bob, get_pubkey(alice)
        )

    def test_encrypt_decrypt_between_two_keys(self) -> None:
        alice, bob = PrivateKey(), PrivateKey()
        payload = nip44_encrypt("hello nutzap ⚡", alice, get_pubkey(bob))
        assert nip44_decrypt(payload, bob, get_pubkey(alice)) == "hello nutzap ⚡"

    def test_encrypt_to_self(self) -> None:
        key = PrivateKey()
        payload = nip44_encrypt('{"proofs": []}', key, get_pubkey(key))
        assert nip44_decrypt(payload, key, get_pubkey(key)) == '{"proofs": []}'

    def test_wrong_key_fails_mac(self) -> None:
        alice, bob, eve = PrivateKey(), PrivateKey(), PrivateKey()
        payload = nip44_encrypt("secret", alice, get_pubkey(bob))
        with pytest.raises(NIP44Error):
            nip44_decrypt(payload, eve, get_pubkey(alice))

    def test_rejects_unknown_version(self) -> None:
        with pytest.raises(NIP44Error):
            nip44_decrypt("#abc", PrivateKey(), get_pubkey(PrivateKey()))

    @pytest.mark.parametrize(
        "size,padded",
        [(1, 32), (32, 32), (33, 64), (64, 64), (65, 96), (100, 128), (320, 320), (515, 640)],
    )
    def test_padding_lengths(self, size: int, padded: int) -> None:
        assert _calc_padded_len(size) == padded
