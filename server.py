"""
server.py
========
The relying party as one explicit object.

FidoServer is constructed once at startup from a RelyingPartyConfig and
passed to whatever needs it. It owns:
- a ChallengeIssuer (request descriptors with fresh challenges)
- a PendingChallengeStore (challenges awaiting their finalize call)
- a CredentialRegistry (username -> enrolled key)

Each ceremony is two calls (request, then finish) or, with a signer at hand,
one call to register()/authenticate(). The signer is an external, blocking
collaborator; its failures and timeouts end the ceremony before any
registry write.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

from challenges import ChallengeIssuer, PendingChallengeStore
from config import RelyingPartyConfig
from errors import ErrorKind, Result, SignerFailure
from messages import (
    AuthenticateResponse,
    AuthenticationRequest,
    OperationKind,
    RegisterResponse,
    RegistrationRequest,
)
from registry import CredentialRegistry, CredentialStore

logger = logging.getLogger(__name__)

R = TypeVar("R")


class Signer(Protocol):
    """The hardware credential, seen from the server. Raises SignerFailure."""

    def register(self, request: RegistrationRequest) -> RegisterResponse:
        ...

    def authenticate(self, request: AuthenticationRequest) -> AuthenticateResponse:
        ...


def _call_signer(call: Callable[[], R], timeout: Optional[float]) -> R:
    """
    Run a signer call, giving up after timeout seconds.

    The call runs in a daemon thread. An abandoned call keeps running there
    without holding up interpreter exit; its response is dropped, so it can
    never reach the registry. Exceptions raised by the call are re-raised here.
    """
    if timeout is None:
        return call()

    outcome: Dict[str, Any] = {}

    def run() -> None:
        try:
            outcome["value"] = call()
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=run, name="fido-signer", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise SignerFailure(f"signer did not answer within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


class FidoServer:
    """Relying-party context: challenge issuance plus credential registry."""

    def __init__(self, config: RelyingPartyConfig, store: Optional[CredentialStore] = None) -> None:
        self.config = config
        self.pending = PendingChallengeStore(ttl=config.challenge_ttl)
        self.issuer = ChallengeIssuer(config.app_id, config.facet_id, pending=self.pending)
        self.registry = CredentialRegistry(
            store=store,
            pending=self.pending,
            enforce_challenge_binding=config.enforce_challenge_binding,
        )

    # Registration

    def register_request(self, identity: str) -> RegistrationRequest:
        return self.issuer.issue_registration_request(identity)

    def register_finish(self, identity: str, response: RegisterResponse) -> Result[None]:
        return self.registry.finalize_registration(identity, response)

    # Authentication

    def authenticate_request(self, identity: str) -> Result[AuthenticationRequest]:
        """Look up the enrolled key handle and address a fresh challenge to it."""
        handle = self.registry.lookup_credential_handle(identity)
        if not handle.ok:
            return Result.failure(handle.error, handle.detail)
        return self.issuer.issue_authentication_request(identity, handle.value)

    def authenticate_finish(self, identity: str, response: AuthenticateResponse) -> Result[None]:
        return self.registry.finalize_authentication(identity, response)

    # Whole ceremonies

    def register(self, identity: str, signer: Signer, timeout: Optional[float] = None) -> Result[None]:
        """
        Run a full registration ceremony.

        Step-by-step:
        1. Issue a registration request (fresh challenge, remembered as pending)
        2. Hand it to the signer; SignerFailure or timeout -> SIGNER_FAILURE
        3. Finalize with the signer's response
        """
        request = self.register_request(identity)
        logger.info("registration ceremony started for %r", identity)
        try:
            response = _call_signer(lambda: signer.register(request), timeout)
        except SignerFailure as e:
            logger.warning("registration for %r abandoned: %s", identity, e)
            self.pending.consume(identity, OperationKind.REGISTER)
            return Result.failure(ErrorKind.SIGNER_FAILURE, str(e))
        return self.register_finish(identity, response)

    def authenticate(self, identity: str, signer: Signer, timeout: Optional[float] = None) -> Result[None]:
        """Run a full authentication ceremony; UNKNOWN_IDENTITY before the signer is touched."""
        request = self.authenticate_request(identity)
        if not request.ok:
            return Result.failure(request.error, request.detail)
        logger.info("authentication ceremony started for %r", identity)
        try:
            response = _call_signer(lambda: signer.authenticate(request.value), timeout)
        except SignerFailure as e:
            logger.warning("authentication for %r abandoned: %s", identity, e)
            self.pending.consume(identity, OperationKind.AUTHENTICATE)
            return Result.failure(ErrorKind.SIGNER_FAILURE, str(e))
        return self.authenticate_finish(identity, response)

    def debug_dump(self) -> Dict[str, Dict[str, str]]:
        """Registry contents for the demo's "show stored data"."""
        return self.registry.snapshot()
