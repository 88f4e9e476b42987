"""Top‑level package for async_mailer.

This package sends email through interchangeable backends selected at
runtime.  ``Mailer`` is the statically typed capability, ``DynMailer`` the
type-erased handle for runtime selected backends.  Two implementations are
provided: ``OutlookMailer`` for the Microsoft Graph API and ``SmtpMailer``
for plain SMTP servers.

Use the constructor for a strongly typed mailer, or ``new_box`` /
``new_arc`` for a dynamic handle::

    mailer = await OutlookMailer.new_arc(tenant, app_guid, Secret(secret))
    # or
    mailer = SmtpMailer.new_arc(
        "smtp.example.com", 465, SmtpInvalidCertsPolicy.DENY, user, Secret(password)
    )

    message = EmailMessage()
    message["From"] = "From Name <from@example.com>"
    message["To"] = "to@example.com"
    message["Subject"] = "Subject"
    message.set_content("Mail body")

    await mailer.send_mail(message)
"""

from __future__ import annotations

from async_mailer.errors import (
    DynMailerError,
    MailerConfigurationError,
    MailerError,
    MailerErrorKind,
    MessageEncodingError,
)
from async_mailer.mailer import ArcMailer, BoxMailer, DynMailer, Mailer
from async_mailer.mailer.outlook_mailer import (
    AccessTokenCache,
    OutlookAccessTokenError,
    OutlookMailer,
    OutlookMailerError,
    OutlookSendMailRequestError,
    OutlookSendMailResponseError,
)
from async_mailer.mailer.smtp_mailer import (
    SmtpAuthenticationError,
    SmtpConnectError,
    SmtpInvalidCertsPolicy,
    SmtpMailer,
    SmtpMailerError,
    SmtpMessageEncodingError,
    SmtpSendError,
)
from async_mailer.message import Message, into_message
from async_mailer.secret import Secret

__all__ = [
    "AccessTokenCache",
    "ArcMailer",
    "BoxMailer",
    "DynMailer",
    "DynMailerError",
    "Mailer",
    "MailerConfigurationError",
    "MailerError",
    "MailerErrorKind",
    "Message",
    "MessageEncodingError",
    "OutlookAccessTokenError",
    "OutlookMailer",
    "OutlookMailerError",
    "OutlookSendMailRequestError",
    "OutlookSendMailResponseError",
    "Secret",
    "SmtpAuthenticationError",
    "SmtpConnectError",
    "SmtpInvalidCertsPolicy",
    "SmtpMailer",
    "SmtpMailerError",
    "SmtpMessageEncodingError",
    "SmtpSendError",
    "into_message",
]

# SemVer version of the package
__version__: str = "0.4.2"
