"""Credential holder for API secrets and SMTP passwords.

``Secret`` builds on :class:`pydantic.SecretStr`: it renders as a redacted
placeholder in ``str()``, ``repr()`` and log output, and hands out the real
value only through :meth:`get_secret_value` at the point of use.
"""

from __future__ import annotations

from pydantic import SecretStr


class Secret(SecretStr):
    """A secret string that never shows up in logs or diagnostics.

    Unlike ``SecretStr``, two secrets never compare equal by content and
    hash by identity, so comparisons cannot reveal the value.
    """

    def __eq__(self, other: object) -> bool:
        return self is other

    __hash__ = object.__hash__


__all__ = ["Secret"]
