"""Outlook (Office 365) mailer implementation.

This module defines ``OutlookMailer``, which sends email through the
Microsoft Graph API.  Every send authenticates with the OAuth2 client
credentials grant against the Microsoft Identity service and then submits
the message to the ``sendMail`` endpoint of the sending user.

Two submission formats are supported:

* JSON (default) – the message is re-encoded into the Graph ``message``
  resource: subject, body, recipients, sender, reply-to and file
  attachments.
* MIME – the rendered RFC 5322 message is posted base64 encoded as
  ``text/plain``, leaving all headers exactly as built.

Access tokens are fetched per send.  Pass an ``AccessTokenCache`` to reuse
a token for as long as its advertised lifetime allows.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import aiohttp
from pydantic import SecretStr

from async_mailer.errors import (
    MailerConfigurationError,
    MailerError,
    MailerErrorKind,
    MessageEncodingError,
)
from async_mailer.mailer import ArcMailer, BoxMailer, DynMailer, Mailer
from async_mailer.message import (
    Message,
    MessageLike,
    format_recipient_addresses,
    into_message,
)
from async_mailer.secret import Secret

LOGGER = logging.getLogger(__name__)

DEFAULT_AUTHORITY_URL = "https://login.microsoftonline.com"
DEFAULT_GRAPH_URL = "https://graph.microsoft.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

TokenKey = Tuple[str, str]


class OutlookMailerError(MailerError):
    """Base class of errors raised by :class:`OutlookMailer`."""


class OutlookAccessTokenError(OutlookMailerError):
    """The Microsoft Identity service did not hand out a usable token."""

    kind = MailerErrorKind.AUTHENTICATION

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[MailerErrorKind] = None,
        detail: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, kind=kind, detail=detail)
        self.status = status


class OutlookSendMailRequestError(OutlookMailerError):
    """The Graph API could not be reached."""

    kind = MailerErrorKind.TRANSPORT


class OutlookSendMailResponseError(OutlookMailerError):
    """The Graph API answered with a non-success status."""

    kind = MailerErrorKind.REMOTE_REJECTION

    def __init__(self, message: str, *, status: int, detail: Optional[str] = None) -> None:
        super().__init__(message, detail=detail)
        self.status = status


class OutlookMessageEncodingError(OutlookMailerError, MessageEncodingError):
    """The message could not be converted into a Graph API request."""

    kind = MailerErrorKind.ENCODING


@dataclass(frozen=True)
class AccessToken:
    """An OAuth2 bearer token and its lifetime in seconds."""

    token: Secret
    expires_in: float


class AccessTokenCache:
    """Reuses access tokens per ``(tenant, application id)``.

    A token is served until ``margin`` seconds before its advertised expiry;
    after that it is treated as absent and a fresh one is fetched.  Fetches
    are serialised per key, so concurrent sends sharing a cache request one
    token, while a slow fetch for one tenant does not hold up the others.
    """

    def __init__(
        self,
        margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._margin = margin
        self._clock = clock
        self._tokens: Dict[TokenKey, Tuple[Secret, float]] = {}
        self._locks: Dict[TokenKey, asyncio.Lock] = {}

    def get(self, key: TokenKey) -> Optional[Secret]:
        entry = self._tokens.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() >= expires_at - self._margin:
            del self._tokens[key]
            return None
        return token

    def put(self, key: TokenKey, access_token: AccessToken) -> None:
        self._tokens[key] = (access_token.token, self._clock() + access_token.expires_in)

    def clear(self) -> None:
        self._tokens.clear()

    async def get_or_fetch(
        self, key: TokenKey, fetch: Callable[[], Awaitable[AccessToken]]
    ) -> Secret:
        async with self._locks.setdefault(key, asyncio.Lock()):
            token = self.get(key)
            if token is not None:
                LOGGER.debug("Using cached access token for tenant %s", key[0])
                return token
            access_token = await fetch()
            self.put(key, access_token)
            return access_token.token


class OutlookMailer(Mailer[OutlookMailerError], DynMailer):
    """Microsoft Graph implementation of the mailer interfaces.

    Args:
        tenant: Microsoft Identity service tenant (directory) id or domain.
        app_guid: Client id of the app registration.
        secret: Client secret of the app registration.
        authority_url: Base URL of the Microsoft Identity service.
        graph_url: Base URL of the Microsoft Graph API.
        save_to_sent_items: Keep a copy in the sender's Sent Items folder.
            Only applies to JSON submission.
        mime: Submit the rendered MIME message instead of the JSON resource.
        token_cache: Optional cache to reuse access tokens between sends.
        timeout: Total timeout in seconds for each HTTP request.

    Raises:
        MailerConfigurationError: If an identifier or the secret is empty.
    """

    def __init__(
        self,
        tenant: str,
        app_guid: str,
        secret: Union[SecretStr, str],
        *,
        authority_url: str = DEFAULT_AUTHORITY_URL,
        graph_url: str = DEFAULT_GRAPH_URL,
        save_to_sent_items: bool = True,
        mime: bool = False,
        token_cache: Optional[AccessTokenCache] = None,
        timeout: float = 30.0,
    ) -> None:
        if not tenant or not tenant.strip():
            raise MailerConfigurationError("Outlook tenant must not be empty")
        if not app_guid or not app_guid.strip():
            raise MailerConfigurationError("Outlook application id must not be empty")
        if not isinstance(secret, SecretStr):
            secret = Secret(secret)
        if not secret.get_secret_value():
            raise MailerConfigurationError("Outlook application secret must not be empty")

        self._tenant = tenant.strip()
        self._app_guid = app_guid.strip()
        self._secret = secret
        self._authority_url = authority_url.rstrip("/")
        self._graph_url = graph_url.rstrip("/")
        self._save_to_sent_items = save_to_sent_items
        self._mime = mime
        self._token_cache = token_cache
        self._timeout = timeout

    @classmethod
    async def new(
        cls,
        tenant: str,
        app_guid: str,
        secret: Union[SecretStr, str],
        **options: Any,
    ) -> "OutlookMailer":
        """Create a mailer after checking that an access token can be retrieved.

        Raises:
            OutlookAccessTokenError: If the Microsoft Identity service
                refuses the credentials or cannot be reached.
        """
        mailer = cls(tenant, app_guid, secret, **options)
        async with mailer._session() as session:
            access_token = await mailer.get_access_token(session)
        if mailer._token_cache is not None:
            mailer._token_cache.put(mailer.token_key, access_token)
        return mailer

    @classmethod
    async def new_box(
        cls, tenant: str, app_guid: str, secret: Union[SecretStr, str], **options: Any
    ) -> BoxMailer:
        """Like :meth:`new`, returned as a single-owner dynamic handle."""
        return await cls.new(tenant, app_guid, secret, **options)

    @classmethod
    async def new_arc(
        cls, tenant: str, app_guid: str, secret: Union[SecretStr, str], **options: Any
    ) -> ArcMailer:
        """Like :meth:`new`, returned as a shareable dynamic handle."""
        return await cls.new(tenant, app_guid, secret, **options)

    @property
    def tenant(self) -> str:
        return self._tenant

    @property
    def app_guid(self) -> str:
        return self._app_guid

    @property
    def token_key(self) -> TokenKey:
        return (self._tenant, self._app_guid)

    def __repr__(self) -> str:
        return (
            f"OutlookMailer(tenant={self._tenant!r}, app_guid={self._app_guid!r}, "
            f"secret={self._secret!r})"
        )

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))

    async def get_access_token(self, session: aiohttp.ClientSession) -> AccessToken:
        """Retrieve a client credentials grant access token.

        Raises:
            OutlookAccessTokenError: On request failure, a non-success
                status, malformed JSON or a missing ``access_token``.
        """
        token_url = f"{self._authority_url}/{self._tenant}/oauth2/v2.0/token"
        form_data = {
            "client_id": self._app_guid,
            "client_secret": self._secret.get_secret_value(),
            "grant_type": "client_credentials",
            "scope": GRAPH_SCOPE,
        }

        try:
            async with session.post(token_url, data=form_data) as response:
                status = response.status
                response_text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise OutlookAccessTokenError(
                "failed sending OAuth2 client credentials grant access token request "
                "to Microsoft Identity service",
                kind=MailerErrorKind.TRANSPORT,
                detail=str(exc) or type(exc).__name__,
            ) from exc

        if not 200 <= status < 300:
            raise OutlookAccessTokenError(
                f"Microsoft Identity service rejected the access token request (HTTP {status})",
                detail=response_text or None,
                status=status,
            )

        try:
            token_response = json.loads(response_text)
        except ValueError as exc:
            raise OutlookAccessTokenError(
                "failed to parse OAuth2 client credentials grant access token response "
                "from Microsoft Identity service",
                detail=str(exc),
                status=status,
            ) from exc

        access_token = token_response.get("access_token") if isinstance(token_response, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise OutlookAccessTokenError(
                "access token response from Microsoft Identity service has no access_token",
                status=status,
            )

        try:
            expires_in = float(token_response.get("expires_in", 0))
        except (TypeError, ValueError):
            expires_in = 0.0

        return AccessToken(token=Secret(access_token), expires_in=expires_in)

    async def _access_token(self, session: aiohttp.ClientSession) -> Secret:
        if self._token_cache is None:
            return (await self.get_access_token(session)).token
        return await self._token_cache.get_or_fetch(
            self.token_key, lambda: self.get_access_token(session)
        )

    def _encode(self, message: Message) -> Tuple[bytes, str]:
        if self._mime:
            return base64.b64encode(message.body), "text/plain"
        envelope = graph_send_mail_request(message, self._save_to_sent_items)
        return json.dumps(envelope).encode("utf-8"), "application/json"

    async def send_mail(self, message: MessageLike) -> None:
        """Send the message via the Microsoft Graph API.

        Raises:
            OutlookMessageEncodingError: If the message cannot be encoded.
            OutlookAccessTokenError: If no access token could be obtained.
                The mail endpoint is not called in that case.
            OutlookSendMailRequestError: If the Graph API is unreachable.
            OutlookSendMailResponseError: If the Graph API rejects the mail;
                ``detail`` carries the response body.
        """
        try:
            message = into_message(message)
            payload, content_type = self._encode(message)
        except MessageEncodingError as exc:
            raise OutlookMessageEncodingError(exc.message, detail=exc.detail) from exc

        recipient_addresses = format_recipient_addresses(message)
        LOGGER.info("Sending Outlook mail to %s...", recipient_addresses)

        try:
            async with self._session() as session:
                token = await self._access_token(session)
                await self._post_mail(session, token, message.mail_from, payload, content_type)
        except OutlookMailerError as exc:
            LOGGER.error("Failed to send Outlook mail to %s: %s", recipient_addresses, exc)
            raise

        LOGGER.info("Sent Outlook mail to %s", recipient_addresses)

    async def _post_mail(
        self,
        session: aiohttp.ClientSession,
        token: Secret,
        from_address: str,
        payload: bytes,
        content_type: str,
    ) -> None:
        headers = {
            "Authorization": f"Bearer {token.get_secret_value()}",
            "Content-Type": content_type,
        }
        send_mail_url = f"{self._graph_url}/v1.0/users/{quote(from_address, safe='@')}/sendMail"

        try:
            async with session.post(send_mail_url, data=payload, headers=headers) as response:
                status = response.status
                response_text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise OutlookSendMailRequestError(
                "failed request attempting to send Outlook mail through Microsoft Graph API",
                detail=str(exc) or type(exc).__name__,
            ) from exc

        if not 200 <= status < 300:
            raise OutlookSendMailResponseError(
                f"failed sending Outlook mail through Microsoft Graph API (HTTP {status})",
                status=status,
                detail=response_text or None,
            )

        LOGGER.debug("Microsoft Graph API answered HTTP %s: %s", status, response_text)


def graph_send_mail_request(message: Message, save_to_sent_items: bool = True) -> Dict[str, Any]:
    """Build the JSON body of a Graph API ``sendMail`` request."""
    email = message.email
    content_type, content = _body_content(email)
    senders = message.addresses("From") or [("", message.mail_from)]

    graph_message: Dict[str, Any] = {
        "subject": message.subject,
        "body": {"contentType": content_type, "content": content},
        "toRecipients": _recipients(message.addresses("To")),
        "from": _recipient(*senders[0]),
    }
    for header, field in (("Cc", "ccRecipients"), ("Bcc", "bccRecipients"), ("Reply-To", "replyTo")):
        addresses = message.addresses(header)
        if addresses:
            graph_message[field] = _recipients(addresses)

    attachments = _attachments(email)
    if attachments:
        graph_message["attachments"] = attachments

    return {"message": graph_message, "saveToSentItems": save_to_sent_items}


def _recipient(name: str, address: str) -> Dict[str, Any]:
    email_address = {"address": address}
    if name:
        email_address["name"] = name
    return {"emailAddress": email_address}


def _recipients(addresses: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
    return [_recipient(name, address) for name, address in addresses]


def _body_content(email: EmailMessage) -> Tuple[str, str]:
    part = email.get_body(preferencelist=("html", "plain"))
    if part is None:
        return "Text", ""
    try:
        content = part.get_content()
    except (KeyError, LookupError, ValueError) as exc:
        raise MessageEncodingError("failed to decode message body", detail=str(exc)) from exc
    if not isinstance(content, str):
        raise MessageEncodingError("message body is not text")
    content_type = "HTML" if part.get_content_subtype() == "html" else "Text"
    return content_type, content


def _attachments(email: EmailMessage) -> List[Dict[str, Any]]:
    attachments = []
    for part in email.iter_attachments():
        data = part.get_payload(decode=True) or b""
        attachment: Dict[str, Any] = {
            "@odata.type": "#microsoft.graph.fileAttachment",
            "name": part.get_filename() or "attachment",
            "contentType": part.get_content_type(),
            "contentBytes": base64.b64encode(data).decode("ascii"),
        }
        content_id = part.get("Content-ID")
        if content_id:
            attachment["contentId"] = str(content_id).strip("<>")
            attachment["isInline"] = True
        attachments.append(attachment)
    return attachments


__all__ = [
    "AccessToken",
    "AccessTokenCache",
    "OutlookAccessTokenError",
    "OutlookMailer",
    "OutlookMailerError",
    "OutlookMessageEncodingError",
    "OutlookSendMailRequestError",
    "OutlookSendMailResponseError",
    "graph_send_mail_request",
]
