"""Error taxonomy shared by every mailer backend.

Backends raise subclasses of :class:`MailerError`.  Callers holding a
dynamically typed mailer can branch on :attr:`MailerError.kind` without
knowing which backend produced the failure; callers holding a concrete
backend can catch its specific subclasses instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class MailerErrorKind(str, Enum):
    """Category of a mail delivery failure."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    TRANSPORT = "transport"
    REMOTE_REJECTION = "remote_rejection"
    ENCODING = "encoding"


class MailerError(Exception):
    """Base class of all mailer failures.

    Args:
        message: Human readable description of the failure.
        kind: Failure category; defaults to the class level ``kind``.
        detail: Diagnostic text captured from the remote side, such as an
            HTTP response body or an SMTP server reply.
    """

    kind: MailerErrorKind = MailerErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[MailerErrorKind] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class MailerConfigurationError(MailerError):
    """Raised for malformed identifiers, hosts, ports or missing settings."""

    kind = MailerErrorKind.CONFIGURATION


class MessageEncodingError(MailerError):
    """Raised when a message cannot be turned into a transport envelope."""

    kind = MailerErrorKind.ENCODING


# The dynamic capability surfaces every failure as this single type.
DynMailerError = MailerError


__all__ = [
    "DynMailerError",
    "MailerConfigurationError",
    "MailerError",
    "MailerErrorKind",
    "MessageEncodingError",
]
