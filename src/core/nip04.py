"""
NIP-04 encrypted payloads.

The shared secret is the x coordinate of ``their_pubkey * our_privkey`` on
secp256k1 (unhashed). Payloads are AES-256-CBC with PKCS#7 padding, encoded
as ``base64(ciphertext) + "?iv=" + base64(iv)``.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Protocol

import secp256k1
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

IV_SEPARATOR = "?iv="


class Nip04Error(Exception):
    """Raised when a payload cannot be encrypted or decrypted."""


class PayloadCipher(Protocol):
    """Asymmetric payload encryption used for encrypted job requests/results."""

    def encrypt(self, private_key_hex: str, their_pubkey_hex: str, plaintext: str) -> str: ...

    def decrypt(self, private_key_hex: str, their_pubkey_hex: str, ciphertext: str) -> str: ...


def shared_secret(private_key_hex: str, their_pubkey_hex: str) -> bytes:
    """Return the 32-byte ECDH x coordinate shared by the two keys."""
    try:
        their_pubkey = secp256k1.PublicKey(bytes.fromhex("02" + their_pubkey_hex), True)
        point = their_pubkey.tweak_mul(bytes.fromhex(private_key_hex))
    except Exception as e:
        raise Nip04Error(f"invalid key material: {e}") from e
    return point.serialize(compressed=True)[1:]


class Nip04Cipher:
    """NIP-04 implementation of PayloadCipher."""

    def encrypt(self, private_key_hex: str, their_pubkey_hex: str, plaintext: str) -> str:
        key = shared_secret(private_key_hex, their_pubkey_hex)
        iv = os.urandom(16)

        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return (
            base64.b64encode(ciphertext).decode("ascii")
            + IV_SEPARATOR
            + base64.b64encode(iv).decode("ascii")
        )

    def decrypt(self, private_key_hex: str, their_pubkey_hex: str, ciphertext: str) -> str:
        if IV_SEPARATOR not in ciphertext:
            raise Nip04Error("missing iv in payload")

        encoded_ct, encoded_iv = ciphertext.split(IV_SEPARATOR, 1)
        try:
            ct = base64.b64decode(encoded_ct, validate=True)
            iv = base64.b64decode(encoded_iv, validate=True)
        except binascii.Error as e:
            raise Nip04Error("payload is not valid base64") from e
        if len(iv) != 16 or not ct or len(ct) % 16:
            raise Nip04Error("payload has invalid block sizes")

        key = shared_secret(private_key_hex, their_pubkey_hex)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(128).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as e:
            # Wrong key or corrupted payload.
            raise Nip04Error("payload could not be decrypted") from e
