"""Send a test message through the configured backend.

Usage::

    MAILER_BACKEND=smtp SMTP_HOST=localhost SMTP_PORT=1025 ... \\
        python -m async_mailer --from me@example.com --to you@example.com \\
        --invalid-certs allow

Backend settings are read from the environment, see
:mod:`async_mailer.config`.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from email.message import EmailMessage
from typing import List, Optional

from async_mailer.config import mailer_from_env
from async_mailer.errors import MailerError
from async_mailer.mailer.smtp_mailer import SmtpInvalidCertsPolicy


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="async_mailer", description=__doc__.splitlines()[0])
    parser.add_argument("--from", dest="sender", required=True)
    parser.add_argument("--to", dest="recipients", action="append", required=True)
    parser.add_argument("--subject", default="async_mailer test message")
    parser.add_argument("--body", default="This is a test message.")
    parser.add_argument(
        "--invalid-certs",
        choices=[policy.value for policy in SmtpInvalidCertsPolicy],
        default=None,
        help="accept (allow) or reject (deny) unverifiable SMTP certificates",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def build_message(args: argparse.Namespace) -> EmailMessage:
    message = EmailMessage()
    message["From"] = args.sender
    message["To"] = ", ".join(args.recipients)
    message["Subject"] = args.subject
    message.set_content(args.body)
    return message


async def _send(args: argparse.Namespace) -> None:
    invalid_certs = SmtpInvalidCertsPolicy.parse(args.invalid_certs) if args.invalid_certs else None
    mailer = mailer_from_env(invalid_certs=invalid_certs)
    await mailer.send_mail(build_message(args))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        asyncio.run(_send(args))
    except MailerError as exc:
        print(f"Sending failed ({exc.kind.value}): {exc}")
        return 1
    print(f"Sent test message to {', '.join(args.recipients)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
