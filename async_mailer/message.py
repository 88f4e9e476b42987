"""Transport-ready messages.

Messages are built outside this package, typically with the standard
library's :class:`email.message.EmailMessage`.  :func:`into_message` pairs
such a message with the SMTP envelope every backend needs: the sender
address and the complete list of recipient addresses.
"""

from __future__ import annotations

from dataclasses import dataclass
from email import policy
from email.message import EmailMessage
from email.utils import getaddresses
from typing import List, Tuple, Union

from async_mailer.errors import MessageEncodingError

RECIPIENT_HEADERS = ("To", "Cc", "Bcc")


@dataclass(frozen=True)
class Message:
    """An email plus its envelope sender and recipients."""

    mail_from: str
    rcpt_to: Tuple[str, ...]
    email: EmailMessage

    @property
    def subject(self) -> str:
        return str(self.email.get("Subject", ""))

    @property
    def body(self) -> bytes:
        """The raw RFC 5322 message with CRLF line endings."""
        try:
            return self.email.as_bytes(policy=policy.SMTP)
        except (TypeError, ValueError, UnicodeError) as exc:
            raise MessageEncodingError(
                "failed to render message as MIME", detail=str(exc)
            ) from exc

    def addresses(self, header: str) -> List[Tuple[str, str]]:
        """Return ``(display name, address)`` pairs for ``header``."""
        return header_addresses(self.email, header)


MessageLike = Union[Message, EmailMessage]


def header_addresses(email: EmailMessage, header: str) -> List[Tuple[str, str]]:
    values = [str(value) for value in email.get_all(header, [])]
    return [(name, addr) for name, addr in getaddresses(values) if addr]


def into_message(message: MessageLike) -> Message:
    """Derive the envelope for ``message``.

    The envelope sender is taken from ``Sender`` when present, otherwise from
    ``From``.  Recipients are collected from ``To``, ``Cc`` and ``Bcc`` in
    that order, without duplicates.

    Raises:
        MessageEncodingError: If there is no sender or no recipient.
    """
    if isinstance(message, Message):
        return message

    senders = header_addresses(message, "Sender") or header_addresses(message, "From")
    if not senders:
        raise MessageEncodingError("message has no From address")

    recipients: List[str] = []
    for header in RECIPIENT_HEADERS:
        for _, addr in header_addresses(message, header):
            if addr not in recipients:
                recipients.append(addr)
    if not recipients:
        raise MessageEncodingError("message has no recipients")

    return Message(mail_from=senders[0][1], rcpt_to=tuple(recipients), email=message)


def format_recipient_addresses(message: Message) -> str:
    """Join the envelope recipients for log output."""
    return ", ".join(message.rcpt_to)


__all__ = [
    "Message",
    "MessageLike",
    "format_recipient_addresses",
    "header_addresses",
    "into_message",
]
