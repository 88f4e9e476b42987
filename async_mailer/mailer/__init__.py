"""Abstract interfaces for sending email messages.

This subpackage defines the single ``send_mail`` capability in two forms
along with two concrete implementations: one speaking SMTP and another
targeting the Microsoft Graph HTTP API.  Client code can select an
implementation based on configuration without changing the calling
semantics.

``Mailer`` is the statically typed form.  It is generic over the backend's
error type, so code written against ``Mailer[SmtpMailerError]`` or a
``TypeVar`` bound to ``Mailer`` keeps the precise failure types.

``DynMailer`` is the type-erased form, meant to be stored in application
state when the backend is chosen at runtime.  Its failures are always
:class:`~async_mailer.errors.MailerError`.  Every backend error subclasses
``MailerError`` and each backend implements ``send_mail`` exactly once, so
both forms observe the same behaviour.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from async_mailer.errors import MailerError
from async_mailer.message import MessageLike

ErrorT = TypeVar("ErrorT", bound=MailerError)


class Mailer(ABC, Generic[ErrorT]):
    """Statically typed mailer, usable as a generic bound.

    Implementations raise ``ErrorT`` when sending fails.
    """

    @abstractmethod
    async def send_mail(self, message: MessageLike) -> None:
        """Send a single email message.

        Args:
            message: A built :class:`email.message.EmailMessage` or an
                :class:`~async_mailer.message.Message` with its envelope.

        Raises:
            ErrorT: The backend specific failure.
        """
        raise NotImplementedError


class DynMailer(ABC):
    """Object-safe mailer handle for runtime selected backends.

    Implementations hold no per-send mutable state, so one instance may be
    shared by any number of concurrently running tasks.
    """

    @abstractmethod
    async def send_mail(self, message: MessageLike) -> None:
        """Send a single email message.

        Raises:
            MailerError: Carrying the failure ``kind`` and diagnostics.
        """
        raise NotImplementedError


# Python references are always shared; both aliases name the same handle
# type and differ only in how the caller intends to hold it.
BoxMailer = DynMailer
ArcMailer = DynMailer


__all__ = ["ArcMailer", "BoxMailer", "DynMailer", "ErrorT", "Mailer"]
