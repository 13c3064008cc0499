"""
crypto_utils.py
==============
Small cryptographic helper functions shared by the relying party and the
software authenticator.

This module centralizes the byte-level operations of the U2F protocol:
- Base64url encoding/decoding (the U2F wire format for every binary field)
- Challenge generation from a CSPRNG
- SHA-256 / SHA-1 digests (application and challenge parameters, facet ids)
- PBKDF2 key derivation and AES-GCM key wrapping (used by the software token)

Note: the relying party never needs private keys. Key wrapping lives here
only because the demo token wraps its private keys into the key handle the
way real U2F devices do.
"""

from __future__ import annotations

import base64
import os
import re
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

CHALLENGE_LENGTH = 16
AESGCM_NONCE_LENGTH = 12

_BASE64URL_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


def base64url_encode(raw_bytes: bytes) -> str:
    """
    Encode raw bytes using URL-safe base64 without '=' padding (U2F-style).

    U2F uses base64url encoding (RFC 4648): - and _ instead of + and /, and
    no padding.
    """
    return base64.urlsafe_b64encode(raw_bytes).decode("ascii").rstrip("=")


def base64url_decode(encoded: str) -> bytes:
    """
    Decode URL-safe base64 string back to raw bytes, handling missing padding.

    Raises ValueError on input outside the URL-safe alphabet (padding,
    whitespace and the standard alphabet's + and / included) and
    binascii.Error (a ValueError) on an impossible length.
    """
    if not _BASE64URL_ALPHABET.fullmatch(encoded):
        raise ValueError("not unpadded base64url")
    padding = "=" * (-len(encoded) % 4)  # add required '=' padding back
    return base64.urlsafe_b64decode(encoded + padding)


def generate_challenge(length: int = CHALLENGE_LENGTH) -> str:
    """
    Return a fresh random challenge rendered as unpadded base64url.

    16 bytes = 128 bits of entropy; `secrets` draws from the OS CSPRNG and is
    safe to call from several threads.
    """
    return base64url_encode(secrets.token_bytes(length))


def sha256(data: bytes) -> bytes:
    """Compute the SHA-256 digest of data."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def sha1(data: bytes) -> bytes:
    """Compute the SHA-1 digest of data (used for Android facet ids only)."""
    digest = hashes.Hash(hashes.SHA1())
    digest.update(data)
    return digest.finalize()


def derive_key_from_pin(pin: str, salt: bytes, iterations: int = 150_000) -> bytes:
    """
    Derive a 256-bit AES key from a user PIN using PBKDF2-HMAC-SHA256.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),  # HMAC-SHA256 inside PBKDF2
        length=32,                  # 32 bytes = 256-bit key
        salt=salt,                  # random salt
        iterations=iterations,      # slows brute force
    )
    return kdf.derive(pin.encode("utf-8"))


def aesgcm_wrap(key: bytes, plaintext: bytes, associated_data: bytes) -> bytes:
    """
    Encrypt plaintext with AES-256-GCM and return nonce || ciphertext || tag.

    The associated data is authenticated but not encrypted; unwrapping with
    different associated data fails.
    """
    nonce = os.urandom(AESGCM_NONCE_LENGTH)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)


def aesgcm_unwrap(key: bytes, wrapped: bytes, associated_data: bytes) -> bytes:
    """
    Reverse aesgcm_wrap(). Raises InvalidTag on a wrong key, tampered blob or
    mismatching associated data.
    """
    nonce, ciphertext = wrapped[:AESGCM_NONCE_LENGTH], wrapped[AESGCM_NONCE_LENGTH:]
    return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
