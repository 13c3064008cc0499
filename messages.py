"""
messages.py
===========
U2F request descriptors, signed responses, and the parsers that turn the raw
responses into their fields.

Request descriptors travel server -> signer; responses travel signer ->
server. Every binary field is carried as unpadded base64url on the wire,
under the U2F JavaScript API field names (appId, keyHandle, clientData, ...).

Raw layouts parsed here:
- registration data: 0x05 | pubkey[65] | kh_len[1] | key_handle | cert[DER] | sig[DER]
- signature data:    presence[1] | counter[4, big endian] | sig[DER]

Parsing is syntactic only. A failure raises MalformedResponseError.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Dict

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from crypto_utils import base64url_decode, base64url_encode
from errors import MalformedResponseError

REGISTRATION_RESERVED_BYTE = 0x05
PUBLIC_KEY_LENGTH = 65
USER_PRESENCE_FLAG = 0x01


class OperationKind(enum.Enum):
    """Ceremony kind; the value is the client data `typ` a signer must send."""

    REGISTER = "navigator.id.finishEnrollment"
    AUTHENTICATE = "navigator.id.getAssertion"


@dataclass(frozen=True)
class RegistrationRequest:
    app_id: str
    facet_id: str
    challenge: str

    def to_dict(self) -> Dict[str, str]:
        return {"appId": self.app_id, "facetId": self.facet_id, "challenge": self.challenge}


@dataclass(frozen=True)
class AuthenticationRequest:
    app_id: str
    facet_id: str
    challenge: str
    key_handle: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "appId": self.app_id,
            "facetId": self.facet_id,
            "challenge": self.challenge,
            "keyHandle": base64url_encode(self.key_handle),
        }


@dataclass(frozen=True)
class ClientData:
    """The JSON the signer hashes into its signature: {typ, challenge, origin}."""

    typ: str
    challenge: str
    origin: str = ""

    def to_json(self) -> bytes:
        payload = {"typ": self.typ, "challenge": self.challenge, "origin": self.origin}
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    def to_b64u(self) -> str:
        return base64url_encode(self.to_json())

    @classmethod
    def from_b64u(cls, encoded: str) -> "ClientData":
        try:
            obj = json.loads(base64url_decode(encoded).decode("utf-8"))
        except (ValueError, RecursionError) as e:
            raise MalformedResponseError(f"client data is not base64url JSON: {e}") from e
        if not isinstance(obj, dict):
            raise MalformedResponseError("client data is not a JSON object")
        typ, challenge, origin = obj.get("typ"), obj.get("challenge"), obj.get("origin", "")
        if not isinstance(typ, str) or not isinstance(challenge, str) or not isinstance(origin, str):
            raise MalformedResponseError("client data lacks typ/challenge strings")
        return cls(typ=typ, challenge=challenge, origin=origin)


@dataclass(frozen=True)
class ParsedRegisterResponse:
    client_data: ClientData
    public_key: bytes
    key_handle: bytes
    attestation_certificate: x509.Certificate
    signature: bytes


@dataclass(frozen=True)
class ParsedAuthenticateResponse:
    client_data: ClientData
    key_handle: bytes
    user_presence: int
    counter: int
    signature: bytes

    @property
    def user_present(self) -> bool:
        return bool(self.user_presence & USER_PRESENCE_FLAG)


def _field(data: Any, name: str) -> str:
    if not isinstance(data, dict):
        raise MalformedResponseError("response is not a JSON object")
    value = data.get(name)
    if not isinstance(value, str):
        raise MalformedResponseError(f"missing or non-string field {name!r}")
    return value


def _decode(encoded: str, what: str) -> bytes:
    try:
        return base64url_decode(encoded)
    except ValueError as e:
        raise MalformedResponseError(f"{what} is not base64url: {e}") from e


def _check_signature(signature: bytes) -> bytes:
    if not signature:
        raise MalformedResponseError("signature is missing")
    try:
        decode_dss_signature(signature)
    except ValueError as e:
        raise MalformedResponseError(f"signature is not a DER ECDSA signature: {e}") from e
    return signature


def _der_sequence_length(data: bytes, offset: int) -> int:
    """Total length (header included) of the DER SEQUENCE starting at offset."""
    if offset + 2 > len(data) or data[offset] != 0x30:
        raise MalformedResponseError("attestation certificate is not a DER SEQUENCE")
    first = data[offset + 1]
    if first < 0x80:
        return 2 + first
    n_bytes = first & 0x7F
    if n_bytes == 0 or n_bytes > 4 or offset + 2 + n_bytes > len(data):
        raise MalformedResponseError("attestation certificate has a bad DER length")
    return 2 + n_bytes + int.from_bytes(data[offset + 2:offset + 2 + n_bytes], "big")


@dataclass(frozen=True)
class RegisterResponse:
    """Signed registration payload as returned by the signer."""

    client_data: str
    registration_data: str

    def to_dict(self) -> Dict[str, str]:
        return {"clientData": self.client_data, "registrationData": self.registration_data}

    @classmethod
    def from_dict(cls, data: Any) -> "RegisterResponse":
        return cls(
            client_data=_field(data, "clientData"),
            registration_data=_field(data, "registrationData"),
        )

    def parse(self) -> ParsedRegisterResponse:
        """
        Split the registration data into its fields.

        Step-by-step:
        1. Parse client data JSON
        2. Check the reserved byte and that the public key is a P-256 point
        3. Cut out the key handle using its length prefix
        4. Measure and load the DER attestation certificate
        5. Treat the remainder as the DER signature
        """
        client_data = ClientData.from_b64u(self.client_data)
        raw = _decode(self.registration_data, "registration data")

        if len(raw) < 2 + PUBLIC_KEY_LENGTH or raw[0] != REGISTRATION_RESERVED_BYTE:
            raise MalformedResponseError("registration data is truncated or has a bad reserved byte")

        public_key = raw[1:1 + PUBLIC_KEY_LENGTH]
        try:
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), public_key)
        except ValueError as e:
            raise MalformedResponseError(f"user public key is not a P-256 point: {e}") from e

        kh_offset = 2 + PUBLIC_KEY_LENGTH
        kh_len = raw[1 + PUBLIC_KEY_LENGTH]
        key_handle = raw[kh_offset:kh_offset + kh_len]
        if kh_len == 0 or len(key_handle) != kh_len:
            raise MalformedResponseError("key handle is empty or truncated")

        cert_offset = kh_offset + kh_len
        cert_end = cert_offset + _der_sequence_length(raw, cert_offset)
        if cert_end > len(raw):
            raise MalformedResponseError("attestation certificate is truncated")
        try:
            certificate = x509.load_der_x509_certificate(raw[cert_offset:cert_end])
        except ValueError as e:
            raise MalformedResponseError(f"attestation certificate does not parse: {e}") from e

        return ParsedRegisterResponse(
            client_data=client_data,
            public_key=public_key,
            key_handle=key_handle,
            attestation_certificate=certificate,
            signature=_check_signature(raw[cert_end:]),
        )


@dataclass(frozen=True)
class AuthenticateResponse:
    """Signed authentication payload as returned by the signer."""

    key_handle: str
    client_data: str
    signature_data: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "keyHandle": self.key_handle,
            "clientData": self.client_data,
            "signatureData": self.signature_data,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AuthenticateResponse":
        return cls(
            key_handle=_field(data, "keyHandle"),
            client_data=_field(data, "clientData"),
            signature_data=_field(data, "signatureData"),
        )

    def parse(self) -> ParsedAuthenticateResponse:
        client_data = ClientData.from_b64u(self.client_data)
        key_handle = _decode(self.key_handle, "key handle")
        if not key_handle:
            raise MalformedResponseError("key handle is empty")

        raw = _decode(self.signature_data, "signature data")
        if len(raw) < 5:
            raise MalformedResponseError("signature data is truncated")

        return ParsedAuthenticateResponse(
            client_data=client_data,
            key_handle=key_handle,
            user_presence=raw[0],
            counter=int.from_bytes(raw[1:5], "big"),
            signature=_check_signature(raw[5:]),
        )
