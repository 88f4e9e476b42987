import asyncio
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import aiosmtplib
import pytest
from aiosmtplib.response import SMTPResponse

from async_mailer import (
    DynMailer,
    MailerError,
    MailerErrorKind,
    Secret,
    SmtpAuthenticationError,
    SmtpConnectError,
    SmtpInvalidCertsPolicy,
    SmtpMailer,
    SmtpMessageEncodingError,
    SmtpSendError,
)
from async_mailer.errors import MailerConfigurationError
from async_mailer.mailer import smtp_mailer


class RecordingServer:
    """Scripted SMTP server behaviour shared by every client of a test."""

    def __init__(self) -> None:
        self.self_signed = False
        self.accept_auth = True
        self.refuse_all: Optional[str] = None
        self.refuse_some: Dict[str, SMTPResponse] = {}
        self.hang_on_connect = False
        self.fail_quit = False
        self.hang_on_quit = False
        self.utf8_unsupported = False
        self.clients: List[Dict[str, Any]] = []
        self.commands: List[tuple] = []


class FakeSMTP:
    def __init__(self, server: RecordingServer, **kwargs: Any) -> None:
        self.server = server
        self.kwargs = kwargs
        self.is_connected = False
        server.clients.append(kwargs)

    async def connect(self) -> None:
        self.server.commands.append(("CONNECT",))
        if self.server.hang_on_connect:
            await asyncio.Event().wait()
        if self.server.self_signed and self.kwargs["validate_certs"]:
            raise aiosmtplib.SMTPConnectError(
                "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed: self-signed certificate"
            )
        self.is_connected = True

    async def login(self, username: str, password: str) -> None:
        self.server.commands.append(("AUTH", username, password))
        if not self.server.accept_auth:
            raise aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Authentication credentials invalid")

    async def send_message(self, message: EmailMessage, sender: str, recipients: List[str]):
        self.server.commands.append(("SEND", sender, tuple(recipients), message["Subject"]))
        if self.server.utf8_unsupported:
            raise aiosmtplib.SMTPNotSupported("SMTPUTF8 is not supported by this server")
        if self.server.refuse_all:
            raise aiosmtplib.SMTPRecipientsRefused(
                [aiosmtplib.SMTPRecipientRefused(550, "5.1.1 No such user", self.server.refuse_all)]
            )
        return dict(self.server.refuse_some), "250 2.0.0 Ok: queued"

    async def quit(self) -> None:
        self.server.commands.append(("QUIT",))
        if self.server.hang_on_quit:
            await asyncio.Event().wait()
        if self.server.fail_quit:
            raise aiosmtplib.SMTPServerDisconnected("Server not connected")
        self.is_connected = False

    def close(self) -> None:
        self.server.commands.append(("CLOSE",))
        self.is_connected = False


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> RecordingServer:
    recording = RecordingServer()
    monkeypatch.setattr(
        smtp_mailer.aiosmtplib, "SMTP", lambda **kwargs: FakeSMTP(recording, **kwargs)
    )
    return recording


def make_mailer(policy=SmtpInvalidCertsPolicy.DENY, port: int = 465) -> SmtpMailer:
    return SmtpMailer("smtp.example.com", port, policy, "mailer", Secret("hunter2"))


def verbs(server: RecordingServer) -> List[str]:
    return [command[0] for command in server.commands]


async def test_send_mail_runs_full_session(server: RecordingServer, email: EmailMessage) -> None:
    email["Bcc"] = "hidden@example.com"

    await make_mailer().send_mail(email)

    assert verbs(server) == ["CONNECT", "AUTH", "SEND", "QUIT"]
    assert server.commands[1] == ("AUTH", "mailer", "hunter2")
    assert server.commands[2] == (
        "SEND",
        "from@example.com",
        ("to@example.com", "other@example.com", "hidden@example.com"),
        "Quarterly report",
    )
    [client] = server.clients
    assert client["hostname"] == "smtp.example.com"
    assert client["port"] == 465
    assert client["use_tls"] is True
    assert client["validate_certs"] is True


async def test_deny_rejects_self_signed_certificate_before_auth(
    server: RecordingServer, email: EmailMessage
) -> None:
    server.self_signed = True

    with pytest.raises(SmtpConnectError) as excinfo:
        await make_mailer(SmtpInvalidCertsPolicy.DENY).send_mail(email)

    assert excinfo.value.kind is MailerErrorKind.TRANSPORT
    assert "certificate verify failed" in str(excinfo.value)
    assert "AUTH" not in verbs(server)


async def test_allow_proceeds_to_auth_with_self_signed_certificate(
    server: RecordingServer, email: EmailMessage
) -> None:
    server.self_signed = True

    await make_mailer(SmtpInvalidCertsPolicy.ALLOW).send_mail(email)

    assert server.clients[0]["validate_certs"] is False
    assert ("AUTH", "mailer", "hunter2") in server.commands


async def test_rejected_credentials(server: RecordingServer, email: EmailMessage) -> None:
    server.accept_auth = False

    with pytest.raises(SmtpAuthenticationError) as excinfo:
        await make_mailer().send_mail(email)

    assert excinfo.value.kind is MailerErrorKind.AUTHENTICATION
    assert excinfo.value.code == 535
    assert "Authentication credentials invalid" in str(excinfo.value)
    assert verbs(server) == ["CONNECT", "AUTH", "QUIT"]


async def test_rejected_recipient(server: RecordingServer, email: EmailMessage) -> None:
    server.refuse_all = "to@example.com"

    with pytest.raises(SmtpSendError) as excinfo:
        await make_mailer().send_mail(email)

    assert excinfo.value.kind is MailerErrorKind.REMOTE_REJECTION
    assert excinfo.value.code == 550
    assert "No such user" in str(excinfo.value)
    assert verbs(server)[-1] == "QUIT"


async def test_partially_refused_recipients_fail_the_send(
    server: RecordingServer, email: EmailMessage
) -> None:
    server.refuse_some = {"other@example.com": SMTPResponse(550, "5.1.1 Mailbox unavailable")}

    with pytest.raises(SmtpSendError) as excinfo:
        await make_mailer().send_mail(email)

    assert "other@example.com" in excinfo.value.detail
    assert excinfo.value.code == 550


async def test_starttls_port_does_not_use_implicit_tls(
    server: RecordingServer, email: EmailMessage
) -> None:
    await make_mailer(port=587).send_mail(email)

    [client] = server.clients
    assert client["use_tls"] is False
    assert client["start_tls"] is None


async def test_each_send_opens_a_new_session(server: RecordingServer, email: EmailMessage) -> None:
    mailer = make_mailer()

    await mailer.send_mail(email)
    await mailer.send_mail(email)

    assert len(server.clients) == 2
    assert verbs(server).count("SEND") == 2
    assert verbs(server).count("QUIT") == 2


async def test_failed_quit_closes_connection(server: RecordingServer, email: EmailMessage) -> None:
    server.fail_quit = True

    await make_mailer().send_mail(email)

    assert verbs(server)[-2:] == ["QUIT", "CLOSE"]


async def test_cancellation_closes_connection(server: RecordingServer, email: EmailMessage) -> None:
    server.hang_on_connect = True
    task = asyncio.ensure_future(make_mailer().send_mail(email))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert verbs(server) == ["CONNECT", "CLOSE"]


async def test_cancellation_during_quit_closes_connection(
    server: RecordingServer, email: EmailMessage
) -> None:
    server.hang_on_quit = True
    task = asyncio.ensure_future(make_mailer().send_mail(email))
    for _ in range(100):
        if "QUIT" in verbs(server):
            break
        await asyncio.sleep(0)
    assert verbs(server) == ["CONNECT", "AUTH", "SEND", "QUIT"]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert verbs(server)[-1] == "CLOSE"


async def test_concurrent_sends_use_one_session_each(
    server: RecordingServer, email: EmailMessage
) -> None:
    mailer = make_mailer()

    await asyncio.gather(*(mailer.send_mail(email) for _ in range(5)))

    assert len(server.clients) == 5
    assert verbs(server).count("CONNECT") == 5
    assert verbs(server).count("SEND") == 5
    assert verbs(server).count("QUIT") == 5
    assert "CLOSE" not in verbs(server)


async def test_missing_smtputf8_support_is_encoding_error(
    server: RecordingServer, email: EmailMessage
) -> None:
    server.utf8_unsupported = True

    with pytest.raises(SmtpMessageEncodingError) as excinfo:
        await make_mailer().send_mail(email)

    assert excinfo.value.kind is MailerErrorKind.ENCODING
    assert "SMTPUTF8" in str(excinfo.value)
    assert verbs(server) == ["CONNECT", "AUTH", "SEND", "QUIT"]


@pytest.mark.parametrize("scenario", ["ok", "self_signed", "bad_auth", "refused"])
async def test_dynamic_and_static_forms_agree(
    server: RecordingServer, email: EmailMessage, scenario: str
) -> None:
    server.self_signed = scenario == "self_signed"
    server.accept_auth = scenario != "bad_auth"
    server.refuse_all = "to@example.com" if scenario == "refused" else None
    static_mailer = make_mailer()
    dynamic_mailer: DynMailer = SmtpMailer.new_arc(
        "smtp.example.com", 465, SmtpInvalidCertsPolicy.DENY, "mailer", Secret("hunter2")
    )

    outcomes = []
    for mailer in (static_mailer, dynamic_mailer):
        try:
            await mailer.send_mail(email)
        except MailerError as exc:
            outcomes.append((type(exc), exc.kind, exc.detail))
        else:
            outcomes.append(None)

    assert outcomes[0] == outcomes[1]


def test_construction_performs_no_io(server: RecordingServer) -> None:
    mailer = SmtpMailer.new_box("smtp.example.com", 25, "allow", "mailer", "hunter2")

    assert isinstance(mailer, DynMailer)
    assert server.clients == []


@pytest.mark.parametrize("port", [0, 65536, -1, True])
def test_invalid_port_is_configuration_error(port) -> None:
    with pytest.raises(MailerConfigurationError):
        SmtpMailer("smtp.example.com", port, "deny", "mailer", "hunter2")


def test_empty_host_is_configuration_error() -> None:
    with pytest.raises(MailerConfigurationError):
        SmtpMailer(" ", 25, "deny", "mailer", "hunter2")


def test_repr_redacts_password() -> None:
    mailer = make_mailer()

    assert "hunter2" not in repr(mailer)
    assert "smtp.example.com" in repr(mailer)


def test_invalid_certs_policy_parsing() -> None:
    assert SmtpInvalidCertsPolicy.default() is SmtpInvalidCertsPolicy.DENY
    assert SmtpInvalidCertsPolicy.parse("Allow") is SmtpInvalidCertsPolicy.ALLOW
    assert SmtpInvalidCertsPolicy.parse(SmtpInvalidCertsPolicy.DENY) is SmtpInvalidCertsPolicy.DENY
    assert str(SmtpInvalidCertsPolicy.ALLOW) == "allow"
    with pytest.raises(MailerConfigurationError):
        SmtpInvalidCertsPolicy.parse("sometimes")
