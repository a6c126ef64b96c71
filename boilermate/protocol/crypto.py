"""RSA command encryption for authenticated writes.

The controller expects the plaintext body padded with random bytes to a
64-byte block and raised to the public exponent modulo ``n``. No standard
padding scheme is involved, so the exponentiation is done directly.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from boilermate.core.errors import EncryptionError, FrameEncodeError
from boilermate.core.model import RSAPublicKey

BLOCK_SIZE = 64


def pad_block(body: bytes) -> bytes:
    if len(body) > BLOCK_SIZE:
        raise FrameEncodeError(
            f"frame body of {len(body)} bytes exceeds the {BLOCK_SIZE}-byte encryption block"
        )
    return body + os.urandom(BLOCK_SIZE - len(body))


def encrypt_block(body: bytes, key: RSAPublicKey) -> bytes:
    """Pad ``body`` and return ``block ** e mod n`` as minimal big-endian bytes."""
    block = int.from_bytes(pad_block(body), "big")
    if block >= key.n:
        raise FrameEncodeError("encryption block is not smaller than the key modulus")
    cipher = pow(block, key.e, key.n)
    return cipher.to_bytes((cipher.bit_length() + 7) // 8, "big")


def load_public_key(encoded: str) -> RSAPublicKey:
    """Parse a base64 DER SubjectPublicKeyInfo holding an RSA key."""
    try:
        der = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError(f"RSA key is not valid base64: {exc}") from exc

    try:
        public_key = load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise EncryptionError(f"RSA key is not a valid SubjectPublicKeyInfo: {exc}") from exc

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise EncryptionError(f"Expected an RSA public key, got {type(public_key).__name__}")
    numbers = public_key.public_numbers()
    return RSAPublicKey(n=numbers.n, e=numbers.e)
