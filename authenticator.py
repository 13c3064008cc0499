"""
authenticator.py
===============
A minimal software U2F token that plays the external signer in the demo and
the tests.

Key behaviors demonstrated:
- Private key NEVER leaves the token in the clear: it is wrapped with AES-GCM
  under a PIN-derived device key and the wrapped blob IS the key handle,
  bound to the application parameter (sha256(app_id))
- Registration data carries a self-signed attestation certificate
- Sign counter: monotonic counter across all credentials of the token
- The user can "cancel" a ceremony, which raises SignerFailure
"""

from __future__ import annotations

import datetime
import os

from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from crypto_utils import (
    aesgcm_unwrap,
    aesgcm_wrap,
    base64url_encode,
    derive_key_from_pin,
    sha256,
)
from errors import SignerFailure
from messages import (
    AuthenticateResponse,
    AuthenticationRequest,
    ClientData,
    OperationKind,
    RegisterResponse,
    RegistrationRequest,
    REGISTRATION_RESERVED_BYTE,
    USER_PRESENCE_FLAG,
)


def _public_point(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def _self_signed_attestation(key: ec.EllipticCurvePrivateKey) -> bytes:
    """DER attestation certificate for the token's attestation key."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Software U2F Token")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=3650))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


class SoftwareAuthenticator:
    """
    Software U2F token: creates a P-256 key pair per registration and signs
    login challenges when the user confirms presence.

    Set `cancel_next = True` to make the next ceremony fail as if the user
    dismissed the prompt.
    """

    def __init__(self, pin: str = "0000") -> None:
        """Derive the device wrapping key from the PIN and mint an attestation key."""
        self._salt = os.urandom(16)
        self._device_key = derive_key_from_pin(pin, self._salt)
        self._attestation_key = ec.generate_private_key(ec.SECP256R1())
        self._attestation_cert = _self_signed_attestation(self._attestation_key)
        self.sign_counter = 0
        self.cancel_next = False

    def _check_presence(self) -> None:
        if self.cancel_next:
            self.cancel_next = False
            raise SignerFailure("user cancelled the operation")

    def register(self, request: RegistrationRequest) -> RegisterResponse:
        """
        Create a new credential and return U2F registration data.

        Step-by-step:
        1. Generate a new P-256 key pair
        2. Wrap the private key under the device key, bound to sha256(app_id);
           the wrapped blob is the key handle
        3. Build client data carrying the request's challenge
        4. Sign 0x00 | app param | challenge param | key handle | public key
           with the attestation key
        5. Assemble 0x05 | public key | kh_len | key handle | cert | signature
        """
        self._check_presence()

        private_key = ec.generate_private_key(ec.SECP256R1())
        public_point = _public_point(private_key.public_key())
        private_bytes = private_key.private_numbers().private_value.to_bytes(32, "big")

        app_param = sha256(request.app_id.encode("utf-8"))
        key_handle = aesgcm_wrap(self._device_key, private_bytes, app_param)

        client = ClientData(
            typ=OperationKind.REGISTER.value, challenge=request.challenge, origin=request.facet_id
        )
        client_data = client.to_b64u()
        challenge_param = sha256(client.to_json())

        signed = b"\x00" + app_param + challenge_param + key_handle + public_point
        signature = self._attestation_key.sign(signed, ec.ECDSA(hashes.SHA256()))

        registration_data = (
            bytes([REGISTRATION_RESERVED_BYTE])
            + public_point
            + bytes([len(key_handle)])
            + key_handle
            + self._attestation_cert
            + signature
        )
        return RegisterResponse(
            client_data=client_data,
            registration_data=base64url_encode(registration_data),
        )

    def authenticate(self, request: AuthenticationRequest) -> AuthenticateResponse:
        """
        Unwrap the key addressed by the key handle and sign the login challenge.

        A key handle minted for another app id, or by another token, does not
        unwrap; that surfaces as SignerFailure.
        """
        self._check_presence()

        app_param = sha256(request.app_id.encode("utf-8"))
        try:
            private_bytes = aesgcm_unwrap(self._device_key, request.key_handle, app_param)
        except InvalidTag as e:
            raise SignerFailure("key handle not recognised by this token") from e
        private_key = ec.derive_private_key(int.from_bytes(private_bytes, "big"), ec.SECP256R1())

        self.sign_counter += 1

        client = ClientData(
            typ=OperationKind.AUTHENTICATE.value, challenge=request.challenge, origin=request.facet_id
        )
        client_data = client.to_b64u()
        challenge_param = sha256(client.to_json())

        presence = bytes([USER_PRESENCE_FLAG])
        counter_bytes = self.sign_counter.to_bytes(4, "big")
        signature = private_key.sign(
            app_param + presence + counter_bytes + challenge_param, ec.ECDSA(hashes.SHA256())
        )

        return AuthenticateResponse(
            key_handle=base64url_encode(request.key_handle),
            client_data=client_data,
            signature_data=base64url_encode(presence + counter_bytes + signature),
        )
