"""Build mailers from environment variables.

Environment variables used:

* ``MAILER_BACKEND`` – ``smtp`` or ``outlook``; selects the backend for
  :func:`mailer_from_env`.
* ``SMTP_HOST``/``SMTP_SERVER`` – hostname of the SMTP server.
* ``SMTP_PORT``/``SMTP_SERVER_PORT`` – port number; defaults to 465.
* ``SMTP_USERNAME``/``SMTP_USER`` – username for authentication.
* ``SMTP_PASSWORD``/``SMTP_APP_PWD`` – password for authentication.
* ``SMTP_INVALID_CERTS`` – ``allow`` or ``deny`` (default ``deny``).
* ``OUTLOOK_TENANT`` – Microsoft Identity service tenant.
* ``OUTLOOK_APP_GUID`` – client id of the app registration.
* ``OUTLOOK_APP_SECRET`` – client secret of the app registration.

Multiple aliases are supported for convenience.  The first defined variable
in each group wins.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from async_mailer.errors import MailerConfigurationError
from async_mailer.mailer import ArcMailer
from async_mailer.mailer.outlook_mailer import OutlookMailer
from async_mailer.mailer.smtp_mailer import SmtpInvalidCertsPolicy, SmtpMailer
from async_mailer.secret import Secret

BACKENDS = ("smtp", "outlook")
DEFAULT_SMTP_PORT = 465


def _first(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def _require(env: Mapping[str, str], *names: str) -> str:
    value = _first(env, *names)
    if value is None:
        raise MailerConfigurationError(f"{' or '.join(names)} must be set")
    return value


def smtp_mailer_from_env(
    env: Optional[Mapping[str, str]] = None,
    invalid_certs: Optional[SmtpInvalidCertsPolicy] = None,
) -> SmtpMailer:
    """Create an :class:`SmtpMailer` from ``env`` (``os.environ`` by default).

    ``invalid_certs`` overrides ``SMTP_INVALID_CERTS`` when given.
    """
    env = os.environ if env is None else env
    host = _require(env, "SMTP_HOST", "SMTP_SERVER")
    raw_port = _first(env, "SMTP_PORT", "SMTP_SERVER_PORT") or str(DEFAULT_SMTP_PORT)
    try:
        port = int(raw_port)
    except ValueError as exc:
        raise MailerConfigurationError(f"SMTP port {raw_port!r} is not a number") from exc
    user = _require(env, "SMTP_USERNAME", "SMTP_USER")
    password = Secret(_require(env, "SMTP_PASSWORD", "SMTP_APP_PWD"))
    if invalid_certs is None:
        invalid_certs = SmtpInvalidCertsPolicy.parse(
            env.get("SMTP_INVALID_CERTS") or SmtpInvalidCertsPolicy.default()
        )
    return SmtpMailer(host, port, invalid_certs, user, password)


def outlook_mailer_from_env(env: Optional[Mapping[str, str]] = None) -> OutlookMailer:
    """Create an :class:`OutlookMailer` from ``env`` without network I/O."""
    env = os.environ if env is None else env
    return OutlookMailer(
        _require(env, "OUTLOOK_TENANT"),
        _require(env, "OUTLOOK_APP_GUID"),
        Secret(_require(env, "OUTLOOK_APP_SECRET")),
    )


def mailer_from_env(
    env: Optional[Mapping[str, str]] = None,
    invalid_certs: Optional[SmtpInvalidCertsPolicy] = None,
) -> ArcMailer:
    """Create the backend named by ``MAILER_BACKEND`` as a shared handle."""
    env = os.environ if env is None else env
    backend = (env.get("MAILER_BACKEND") or "").strip().lower()
    if backend == "smtp":
        return smtp_mailer_from_env(env, invalid_certs)
    if backend == "outlook":
        return outlook_mailer_from_env(env)
    raise MailerConfigurationError(
        f"MAILER_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}"
    )


__all__ = [
    "BACKENDS",
    "mailer_from_env",
    "outlook_mailer_from_env",
    "smtp_mailer_from_env",
]
