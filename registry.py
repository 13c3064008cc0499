"""
registry.py
===========
The identity -> enrolled credential mapping, and the finalize half of both
ceremonies.

The registry stores ONLY public keys and key handles, behind the
CredentialStore interface (lookup / upsert / items).

Per identity the registry moves Unenrolled -> Enrolled on a successful
finalize_registration; re-registration overwrites the enrollment;
finalize_authentication never changes state. A failed finalize never writes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Protocol, Tuple

from challenges import PendingChallengeStore
from crypto_utils import base64url_encode
from errors import ErrorKind, MalformedResponseError, Result
from messages import (
    AuthenticateResponse,
    ClientData,
    OperationKind,
    RegisterResponse,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrolledCredential:
    """
    Server-side record for a registered security key.

    - public_key: uncompressed P-256 point (65 bytes)
    - key_handle: opaque handle the key needs to be addressed at login
    """

    public_key: bytes
    key_handle: bytes


class CredentialStore(Protocol):
    def lookup(self, identity: str) -> Optional[EnrolledCredential]:
        ...

    def upsert(self, identity: str, credential: EnrolledCredential) -> None:
        ...

    def items(self) -> Iterator[Tuple[str, EnrolledCredential]]:
        ...


class InMemoryCredentialStore:
    """Dict-backed store; every access holds one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credentials: Dict[str, EnrolledCredential] = {}

    def lookup(self, identity: str) -> Optional[EnrolledCredential]:
        with self._lock:
            return self._credentials.get(identity)

    def upsert(self, identity: str, credential: EnrolledCredential) -> None:
        with self._lock:
            self._credentials[identity] = credential

    def items(self) -> Iterator[Tuple[str, EnrolledCredential]]:
        with self._lock:
            snapshot = list(self._credentials.items())
        return iter(snapshot)


class CredentialRegistry:
    """Owns enrollments and finalizes registration and authentication."""

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        pending: Optional[PendingChallengeStore] = None,
        enforce_challenge_binding: bool = True,
    ) -> None:
        self._store: CredentialStore = store if store is not None else InMemoryCredentialStore()
        self._pending = pending
        self._enforce = enforce_challenge_binding

    def lookup_credential_handle(self, identity: str) -> Result[bytes]:
        """Return the key handle enrolled for identity, or UNKNOWN_IDENTITY."""
        stored = self._store.lookup(identity)
        if stored is None:
            return Result.failure(ErrorKind.UNKNOWN_IDENTITY, f"no credential enrolled for {identity!r}")
        return Result.success(stored.key_handle)

    def _check_challenge(
        self, identity: str, operation: OperationKind, client_data: ClientData
    ) -> Optional[str]:
        """
        Consume the pending challenge for (identity, operation) and compare it
        with the signed client data. Returns a mismatch description or None.
        """
        if self._pending is None:
            return None
        pending = self._pending.consume(identity, operation)

        if pending is None:
            problem = "no challenge outstanding"
        elif pending.expired(self._pending.now()):
            problem = "challenge expired"
        elif client_data.challenge != pending.challenge:
            problem = "signed challenge differs from the one issued"
        elif client_data.typ != operation.value:
            problem = f"client data typ {client_data.typ!r} does not match {operation.name}"
        else:
            return None

        if not self._enforce:
            logger.warning("ignoring %s challenge problem for %r: %s", operation.name, identity, problem)
            return None
        return problem

    def _discard_pending(self, identity: str, operation: OperationKind) -> None:
        if self._pending is not None:
            self._pending.consume(identity, operation)

    def finalize_registration(self, identity: str, response: RegisterResponse) -> Result[None]:
        """
        Enroll the key described by a registration response.

        Step-by-step:
        1. Parse the response; MALFORMED_RESPONSE leaves the registry as it was
        2. Consume the pending challenge and compare it with the client data
        3. Insert or overwrite the enrollment for identity
        """
        try:
            parsed = response.parse()
        except MalformedResponseError as e:
            self._discard_pending(identity, OperationKind.REGISTER)
            logger.warning("rejected registration for %r: %s", identity, e)
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, str(e))

        problem = self._check_challenge(identity, OperationKind.REGISTER, parsed.client_data)
        if problem is not None:
            logger.warning("rejected registration for %r: %s", identity, problem)
            return Result.failure(ErrorKind.CHALLENGE_MISMATCH, problem)

        # TODO: verify parsed.signature over 0x00 | sha256(app_id) |
        # sha256(client data) | key_handle | public_key with the attestation
        # certificate's key, and check that certificate against a trust store.

        self._store.upsert(
            identity, EnrolledCredential(public_key=parsed.public_key, key_handle=parsed.key_handle)
        )
        logger.info("enrolled credential for %r", identity)
        return Result.success()

    def finalize_authentication(self, identity: str, response: AuthenticateResponse) -> Result[None]:
        """Confirm a login response for an enrolled identity."""
        stored = self._store.lookup(identity)
        if stored is None:
            self._discard_pending(identity, OperationKind.AUTHENTICATE)
            return Result.failure(ErrorKind.UNKNOWN_IDENTITY, f"no credential enrolled for {identity!r}")

        try:
            parsed = response.parse()
        except MalformedResponseError as e:
            self._discard_pending(identity, OperationKind.AUTHENTICATE)
            logger.warning("rejected authentication for %r: %s", identity, e)
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, str(e))

        problem = self._check_challenge(identity, OperationKind.AUTHENTICATE, parsed.client_data)
        if problem is not None:
            logger.warning("rejected authentication for %r: %s", identity, problem)
            return Result.failure(ErrorKind.CHALLENGE_MISMATCH, problem)

        # TODO: verify parsed.signature over sha256(app_id) | user presence |
        # counter | sha256(client data) with stored.public_key, and require
        # the counter to increase.

        logger.info("authenticated %r (counter=%d)", identity, parsed.counter)
        return Result.success()

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        """
        JSON-friendly view of the registry for the demo's "show stored data".

        In production, this would not be exposed.
        """
        return {
            identity: {
                "public_key_b64u": base64url_encode(cred.public_key),
                "key_handle_b64u": base64url_encode(cred.key_handle),
            }
            for identity, cred in self._store.items()
        }
