"""
errors.py
=========
Error kinds and the Result value returned by relying-party operations.

"Unknown user" and "bad response" are ordinary outcomes of a ceremony, so the
registry and server report them as Result values rather than raising. Callers
that prefer exceptions can call Result.unwrap().
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(enum.Enum):
    UNKNOWN_IDENTITY = "unknown_identity"
    MALFORMED_RESPONSE = "malformed_response"
    SIGNER_FAILURE = "signer_failure"
    CHALLENGE_MISMATCH = "challenge_mismatch"


class FidoError(Exception):
    """Base class for all relying-party errors."""

    kind: ErrorKind


class UnknownIdentityError(FidoError):
    kind = ErrorKind.UNKNOWN_IDENTITY


class MalformedResponseError(FidoError):
    kind = ErrorKind.MALFORMED_RESPONSE


class SignerFailure(FidoError):
    """Raised by a signer when the user cancels or the device fails."""

    kind = ErrorKind.SIGNER_FAILURE


class ChallengeMismatchError(FidoError):
    kind = ErrorKind.CHALLENGE_MISMATCH


_ERROR_TYPES = {cls.kind: cls for cls in FidoError.__subclasses__()}


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of an operation: either a value or an error kind plus a
    human-readable detail.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = "") -> "Result[T]":
        return cls(error=kind, detail=detail)

    def unwrap(self) -> Optional[T]:
        """Return the value, or raise the FidoError matching the error kind."""
        if self.error is not None:
            raise _ERROR_TYPES[self.error](self.detail or self.error.value)
        return self.value
