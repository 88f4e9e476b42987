import asyncio
import json
import sys
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class GraphStub:
    """In-process stand-in for the Microsoft Identity service and Graph API."""

    def __init__(self) -> None:
        self.url = ""
        self.token_requests: List[Dict[str, Any]] = []
        self.mail_requests: List[Dict[str, Any]] = []
        self.token_status = 200
        self.token_body = json.dumps(
            {"token_type": "Bearer", "expires_in": 3599, "access_token": "token-1"}
        )
        self.mail_status = 202
        self.mail_body = ""
        self.hold_mail: Optional[asyncio.Event] = None

    async def token(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.token_requests.append({"tenant": request.match_info["tenant"], **dict(form)})
        return web.Response(
            status=self.token_status, text=self.token_body, content_type="application/json"
        )

    async def send_mail(self, request: web.Request) -> web.Response:
        self.mail_requests.append(
            {
                "user": request.match_info["user"],
                "authorization": request.headers.get("Authorization"),
                "content_type": request.headers.get("Content-Type"),
                "body": await request.read(),
            }
        )
        if self.hold_mail is not None:
            await self.hold_mail.wait()
        return web.Response(status=self.mail_status, text=self.mail_body)


@pytest_asyncio.fixture
async def graph():
    stub = GraphStub()
    app = web.Application()
    app.router.add_post("/{tenant}/oauth2/v2.0/token", stub.token)
    app.router.add_post("/v1.0/users/{user}/sendMail", stub.send_mail)
    server = test_utils.TestServer(app)
    await server.start_server()
    stub.url = str(server.make_url("")).rstrip("/")
    yield stub
    await server.close()


@pytest.fixture
def email() -> EmailMessage:
    message = EmailMessage()
    message["From"] = "From Name <from@example.com>"
    message["To"] = "to@example.com, Other <other@example.com>"
    message["Subject"] = "Quarterly report"
    message.set_content("Mail body")
    return message
