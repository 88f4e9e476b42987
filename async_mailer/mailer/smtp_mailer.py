"""SMTP-based mailer implementation.

This module provides ``SmtpMailer``, a concrete implementation of the
mailer interfaces that uses ``aiosmtplib`` to deliver messages via an SMTP
server.  Every send opens its own session:

1. connect to ``host:port``; implicit TLS on port 465, otherwise STARTTLS
   whenever the server offers it,
2. authenticate with the configured username and password,
3. submit the envelope (MAIL FROM / RCPT TO / DATA),
4. QUIT, closing the socket on every exit path.

Certificate validation follows ``SmtpInvalidCertsPolicy``.  With ``DENY``,
the default, a certificate that does not validate aborts the send before
any credentials are transmitted.  ``ALLOW`` exists for local development
servers such as MailHog or Mailpit that present self-signed certificates;
never use it in production.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Tuple, Union

import aiosmtplib
from pydantic import SecretStr

from async_mailer.errors import (
    MailerConfigurationError,
    MailerError,
    MailerErrorKind,
    MessageEncodingError,
)
from async_mailer.mailer import ArcMailer, BoxMailer, DynMailer, Mailer
from async_mailer.message import Message, MessageLike, format_recipient_addresses, into_message
from async_mailer.secret import Secret

LOGGER = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465


class SmtpInvalidCertsPolicy(str, Enum):
    """Whether to accept TLS certificates that fail validation.

    The values double as command line choices, e.g.
    ``--invalid-certs {allow,deny}``.
    """

    ALLOW = "allow"
    DENY = "deny"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def default(cls) -> "SmtpInvalidCertsPolicy":
        return cls.DENY

    @classmethod
    def parse(cls, value: Union[str, "SmtpInvalidCertsPolicy"]) -> "SmtpInvalidCertsPolicy":
        """Parse a policy name case-insensitively.

        Raises:
            MailerConfigurationError: For anything but ``allow`` or ``deny``.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise MailerConfigurationError(
                f"invalid certificate policy {value!r}, expected 'allow' or 'deny'"
            ) from exc


class SmtpMailerError(MailerError):
    """Base class of errors raised by :class:`SmtpMailer`.

    ``code`` holds the SMTP reply code when the server sent one.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[MailerErrorKind] = None,
        detail: Optional[str] = None,
        code: Optional[int] = None,
    ) -> None:
        super().__init__(message, kind=kind, detail=detail)
        self.code = code


class SmtpConnectError(SmtpMailerError):
    """Connecting or negotiating TLS with the SMTP host failed."""

    kind = MailerErrorKind.TRANSPORT


class SmtpAuthenticationError(SmtpMailerError):
    """The SMTP server refused the credentials."""

    kind = MailerErrorKind.AUTHENTICATION


class SmtpSendError(SmtpMailerError):
    """The SMTP server rejected the sender, a recipient or the data."""

    kind = MailerErrorKind.REMOTE_REJECTION


class SmtpMessageEncodingError(SmtpMailerError, MessageEncodingError):
    """The message has no usable envelope or needs SMTPUTF8 the server lacks."""

    kind = MailerErrorKind.ENCODING


def _server_reply(exc: Exception) -> Tuple[Optional[int], str]:
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return exc.code, f"{exc.code} {exc.message}"
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        replies = "; ".join(f"{refused.recipient}: {refused.code} {refused.message}" for refused in exc.recipients)
        code = exc.recipients[0].code if exc.recipients else None
        return code, replies
    return None, str(exc) or type(exc).__name__


class SmtpMailer(Mailer[SmtpMailerError], DynMailer):
    """SMTP implementation of the mailer interfaces.

    Construction performs no network I/O.

    Args:
        host: SMTP server host name.
        port: SMTP server port.
        invalid_certs: Certificate validation policy.
        user: Username for SMTP AUTH.
        password: Password for SMTP AUTH.
        implicit_tls: Force implicit TLS on or off; by default it is used on
            port 465 only.
        timeout: Timeout in seconds for each network operation.

    Raises:
        MailerConfigurationError: If the host is empty or the port is not a
            valid TCP port.
    """

    def __init__(
        self,
        host: str,
        port: int,
        invalid_certs: Union[SmtpInvalidCertsPolicy, str],
        user: str,
        password: Union[SecretStr, str],
        *,
        implicit_tls: Optional[bool] = None,
        timeout: float = 30.0,
    ) -> None:
        if not host or not host.strip():
            raise MailerConfigurationError("SMTP host must not be empty")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise MailerConfigurationError(f"SMTP port {port!r} is not in range 1-65535")
        if not isinstance(password, SecretStr):
            password = Secret(password)

        self._host = host.strip()
        self._port = port
        self._invalid_certs = SmtpInvalidCertsPolicy.parse(invalid_certs)
        self._user = user
        self._password = password
        self._implicit_tls = port == IMPLICIT_TLS_PORT if implicit_tls is None else implicit_tls
        self._timeout = timeout

    @classmethod
    def new_box(
        cls,
        host: str,
        port: int,
        invalid_certs: Union[SmtpInvalidCertsPolicy, str],
        user: str,
        password: Union[SecretStr, str],
        **options: object,
    ) -> BoxMailer:
        """Create a mailer as a single-owner dynamic handle."""
        return cls(host, port, invalid_certs, user, password, **options)  # type: ignore[arg-type]

    @classmethod
    def new_arc(
        cls,
        host: str,
        port: int,
        invalid_certs: Union[SmtpInvalidCertsPolicy, str],
        user: str,
        password: Union[SecretStr, str],
        **options: object,
    ) -> ArcMailer:
        """Create a mailer as a shareable dynamic handle."""
        return cls(host, port, invalid_certs, user, password, **options)  # type: ignore[arg-type]

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def invalid_certs(self) -> SmtpInvalidCertsPolicy:
        return self._invalid_certs

    def __repr__(self) -> str:
        return (
            f"SmtpMailer(host={self._host!r}, port={self._port}, "
            f"invalid_certs={self._invalid_certs.value!r}, user={self._user!r}, "
            f"password={self._password!r})"
        )

    def _client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self._host,
            port=self._port,
            use_tls=self._implicit_tls,
            start_tls=False if self._implicit_tls else None,
            validate_certs=self._invalid_certs is SmtpInvalidCertsPolicy.DENY,
            timeout=self._timeout,
        )

    async def send_mail(self, message: MessageLike) -> None:
        """Send the message over a fresh SMTP session.

        Raises:
            SmtpMessageEncodingError: If the message has no envelope or needs
                SMTPUTF8 support the server does not offer.
            SmtpConnectError: On connection or TLS failure, including a
                rejected certificate under ``DENY``.  Raised before AUTH.
            SmtpAuthenticationError: If the credentials are refused.
            SmtpSendError: If the sender, a recipient or the data is refused.
        """
        try:
            message = into_message(message)
        except MessageEncodingError as exc:
            raise SmtpMessageEncodingError(exc.message, detail=exc.detail) from exc

        recipient_addresses = format_recipient_addresses(message)
        LOGGER.info("Sending SMTP mail to %s...", recipient_addresses)

        smtp = self._client()
        try:
            await self._connect(smtp)
            await self._login(smtp)
            await self._submit(smtp, message)
        except SmtpMailerError as exc:
            LOGGER.error("Failed to send SMTP mail to %s: %s", recipient_addresses, exc)
            raise
        except asyncio.CancelledError:
            smtp.close()
            raise
        finally:
            await self._quit(smtp)

        LOGGER.info("Sent SMTP mail to %s", recipient_addresses)

    async def _connect(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.connect()
        except (aiosmtplib.SMTPException, OSError) as exc:
            code, reply = _server_reply(exc)
            raise SmtpConnectError(
                f"could not connect to SMTP host {self._host}:{self._port}",
                detail=reply,
                code=code,
            ) from exc

    async def _login(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.login(self._user, self._password.get_secret_value())
        except aiosmtplib.SMTPServerDisconnected as exc:
            raise SmtpConnectError(
                f"SMTP host {self._host}:{self._port} disconnected during AUTH", detail=str(exc)
            ) from exc
        except aiosmtplib.SMTPException as exc:
            code, reply = _server_reply(exc)
            raise SmtpAuthenticationError(
                f"SMTP authentication as {self._user!r} failed", detail=reply, code=code
            ) from exc
        except OSError as exc:
            raise SmtpConnectError(
                f"connection to SMTP host {self._host}:{self._port} failed during AUTH",
                detail=str(exc),
            ) from exc

    async def _submit(self, smtp: aiosmtplib.SMTP, message: Message) -> None:
        try:
            refused, response = await smtp.send_message(
                message.email,
                sender=message.mail_from,
                recipients=list(message.rcpt_to),
            )
        except aiosmtplib.SMTPServerDisconnected as exc:
            raise SmtpConnectError(
                f"SMTP host {self._host}:{self._port} disconnected during submission",
                detail=str(exc),
            ) from exc
        except aiosmtplib.SMTPNotSupported as exc:
            raise SmtpMessageEncodingError(
                "SMTP server cannot accept the message encoding", detail=str(exc)
            ) from exc
        except aiosmtplib.SMTPException as exc:
            code, reply = _server_reply(exc)
            raise SmtpSendError("could not send SMTP mail", detail=reply, code=code) from exc
        except OSError as exc:
            raise SmtpConnectError(
                f"connection to SMTP host {self._host}:{self._port} failed during submission",
                detail=str(exc),
            ) from exc

        if refused:
            replies = "; ".join(
                f"{recipient}: {reply.code} {reply.message}" for recipient, reply in refused.items()
            )
            first = next(iter(refused.values()))
            raise SmtpSendError(
                "SMTP server refused some recipients", detail=replies, code=first.code
            )
        LOGGER.debug("SMTP server accepted message: %s", response)

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        if not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError) as exc:
            LOGGER.debug("SMTP QUIT to %s failed, closing connection: %s", self._host, exc)
            smtp.close()
        except asyncio.CancelledError:
            smtp.close()
            raise


__all__ = [
    "SmtpAuthenticationError",
    "SmtpConnectError",
    "SmtpInvalidCertsPolicy",
    "SmtpMailer",
    "SmtpMailerError",
    "SmtpMessageEncodingError",
    "SmtpSendError",
]
