"""
config.py
=========
Relying-party configuration.

Module-level constants hold the defaults; environment variables override
them. load_config() is called once at process startup and the resulting
RelyingPartyConfig is handed to FidoServer. Nothing reads the environment
after that.

Environment variables:
- FIDO_APP_ID             application id (URL-shaped constant)
- FIDO_FACET_ID           facet id, used verbatim when set
- FIDO_SIGNING_CERT       PEM/DER certificate the facet id is derived from
- FIDO_CHALLENGE_TTL      seconds an issued challenge stays valid
- FIDO_ENFORCE_CHALLENGE  "0"/"false"/"no"/"off" disables challenge binding
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from crypto_utils import sha1

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_APP_ID = "https://fido-login.example.com/app-id.json"
DEFAULT_FACET_ID = "https://fido-login.example.com"
DEFAULT_CHALLENGE_TTL = 300.0  # seconds
DEFAULT_ENFORCE_CHALLENGE = True

ANDROID_FACET_PREFIX = "android:apk-key-hash:"

_FALSE_STRINGS = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RelyingPartyConfig:
    """Immutable for the process lifetime."""

    app_id: str = DEFAULT_APP_ID
    facet_id: str = DEFAULT_FACET_ID
    challenge_ttl: float = DEFAULT_CHALLENGE_TTL
    enforce_challenge_binding: bool = DEFAULT_ENFORCE_CHALLENGE


def facet_id_for_signing_certificate(cert_bytes: bytes) -> str:
    """
    Compute the facet id identifying an app by its signing certificate.

    Android forms it as "android:apk-key-hash:" followed by the SHA-1 of the
    DER certificate in standard base64 without padding. PEM input is
    converted to DER first.
    """
    if cert_bytes.lstrip().startswith(b"-----BEGIN"):
        cert = x509.load_pem_x509_certificate(cert_bytes)
        cert_bytes = cert.public_bytes(serialization.Encoding.DER)
    digest = sha1(cert_bytes)
    return ANDROID_FACET_PREFIX + base64.b64encode(digest).decode("ascii").rstrip("=")


def load_config(environ: Optional[Mapping[str, str]] = None) -> RelyingPartyConfig:
    """
    Build the configuration from the environment (os.environ by default).

    Facet id precedence: FIDO_FACET_ID, then FIDO_SIGNING_CERT, then the
    default.
    """
    env = os.environ if environ is None else environ

    facet_id = env.get("FIDO_FACET_ID")
    if not facet_id:
        cert_path = env.get("FIDO_SIGNING_CERT")
        if cert_path:
            with open(cert_path, "rb") as f:
                facet_id = facet_id_for_signing_certificate(f.read())
        else:
            facet_id = DEFAULT_FACET_ID

    enforce = env.get("FIDO_ENFORCE_CHALLENGE")
    return RelyingPartyConfig(
        app_id=env.get("FIDO_APP_ID") or DEFAULT_APP_ID,
        facet_id=facet_id,
        challenge_ttl=float(env.get("FIDO_CHALLENGE_TTL") or DEFAULT_CHALLENGE_TTL),
        enforce_challenge_binding=(
            DEFAULT_ENFORCE_CHALLENGE if enforce is None else enforce.strip().lower() not in _FALSE_STRINGS
        ),
    )
