"""Shared fixtures and hand-built U2F payloads for the test suite."""

import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from cryptography.x509.oid import NameOID

from authenticator import SoftwareAuthenticator
from config import RelyingPartyConfig
from crypto_utils import base64url_encode
from messages import AuthenticateResponse, ClientData, OperationKind, RegisterResponse
from server import FidoServer

APP_ID = "https://fido-login.example.com/app-id.json"
FACET_ID = "android:apk-key-hash:test-facet"


def make_certificate(key=None):
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Attestation")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return cert


def public_point():
    return ec.generate_private_key(ec.SECP256R1()).public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )


def make_register_response(key_handle, public_key=None, challenge="chal", typ=OperationKind.REGISTER.value):
    """Well-formed registration response with a dummy (unverified) signature."""
    public_key = public_key or public_point()
    cert_der = make_certificate().public_bytes(serialization.Encoding.DER)
    raw = b"\x05" + public_key + bytes([len(key_handle)]) + key_handle + cert_der + encode_dss_signature(1, 1)
    return RegisterResponse(
        client_data=ClientData(typ=typ, challenge=challenge, origin=FACET_ID).to_b64u(),
        registration_data=base64url_encode(raw),
    )


def make_authenticate_response(key_handle, challenge="chal", counter=1, typ=OperationKind.AUTHENTICATE.value):
    """Well-formed authentication response with a dummy (unverified) signature."""
    raw = b"\x01" + counter.to_bytes(4, "big") + encode_dss_signature(1, 2)
    return AuthenticateResponse(
        key_handle=base64url_encode(key_handle),
        client_data=ClientData(typ=typ, challenge=challenge, origin=FACET_ID).to_b64u(),
        signature_data=base64url_encode(raw),
    )


@pytest.fixture
def config():
    return RelyingPartyConfig(app_id=APP_ID, facet_id=FACET_ID, challenge_ttl=60.0)


@pytest.fixture
def server(config):
    return FidoServer(config)


@pytest.fixture
def token():
    return SoftwareAuthenticator(pin="1234")
