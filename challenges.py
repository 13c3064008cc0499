"""
challenges.py
=============
Challenge issuance and the record of challenges awaiting a response.

ChallengeIssuer only generates challenges and wraps them into request
descriptors; it never touches the credential registry. When a
PendingChallengeStore is attached, each issued challenge is remembered for
its (identity, operation) so the matching finalize call can consume it once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from crypto_utils import generate_challenge
from errors import ErrorKind, Result
from messages import AuthenticationRequest, OperationKind, RegistrationRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingChallenge:
    identity: str
    operation: OperationKind
    challenge: str
    issued_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class PendingChallengeStore:
    """
    At most one outstanding challenge per (identity, operation); issuing a
    new one replaces the old. consume() removes the record it returns.
    Every record() also drops whatever has expired, abandoned ceremonies
    included.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, OperationKind], PendingChallenge] = {}

    def now(self) -> float:
        return self._clock()

    def record(self, identity: str, operation: OperationKind, challenge: str) -> PendingChallenge:
        issued_at = self._clock()
        pending = PendingChallenge(
            identity=identity,
            operation=operation,
            challenge=challenge,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
        )
        with self._lock:
            self._drop_expired(issued_at)
            self._pending[(identity, operation)] = pending
        return pending

    def consume(self, identity: str, operation: OperationKind) -> Optional[PendingChallenge]:
        with self._lock:
            return self._pending.pop((identity, operation), None)

    def _drop_expired(self, now: float) -> int:
        stale = [key for key, p in self._pending.items() if p.expired(now)]
        for key in stale:
            del self._pending[key]
        return len(stale)

    def purge_expired(self) -> int:
        """Drop expired records; returns how many were dropped."""
        with self._lock:
            return self._drop_expired(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class ChallengeIssuer:
    """Generates challenges and builds U2F request descriptors."""

    def __init__(
        self,
        app_id: str,
        facet_id: str,
        pending: Optional[PendingChallengeStore] = None,
        challenge_factory: Callable[[], str] = generate_challenge,
    ) -> None:
        self.app_id = app_id
        self.facet_id = facet_id
        self._pending = pending
        self._new_challenge = challenge_factory

    def _issue(self, identity: str, operation: OperationKind) -> str:
        challenge = self._new_challenge()
        if self._pending is not None:
            self._pending.record(identity, operation, challenge)
        logger.debug("issued %s challenge for %r: %s", operation.name, identity, challenge)
        return challenge

    def issue_registration_request(self, identity: str) -> RegistrationRequest:
        return RegistrationRequest(
            app_id=self.app_id,
            facet_id=self.facet_id,
            challenge=self._issue(identity, OperationKind.REGISTER),
        )

    def issue_authentication_request(
        self, identity: str, key_handle: Optional[bytes]
    ) -> Result[AuthenticationRequest]:
        """
        Build an authentication request addressed to key_handle.

        key_handle comes from CredentialRegistry.lookup_credential_handle();
        without one there is nothing to address and UNKNOWN_IDENTITY is
        returned before any challenge is generated.
        """
        if not key_handle:
            return Result.failure(ErrorKind.UNKNOWN_IDENTITY, f"no credential enrolled for {identity!r}")
        return Result.success(
            AuthenticationRequest(
                app_id=self.app_id,
                facet_id=self.facet_id,
                challenge=self._issue(identity, OperationKind.AUTHENTICATE),
                key_handle=key_handle,
            )
        )
