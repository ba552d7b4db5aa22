import os
import tempfile

# configuration is read at import time
_tmpdir = tempfile.mkdtemp(prefix="seatxfer-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmpdir}/test.db"
os.environ["RESET_TOKEN_IN_RESPONSE"] = "1"
os.environ["ADMIN_EMAIL"] = "admin@seatxfer.com"
os.environ["ADMIN_PASSWORD"] = "supasecret"
os.environ["ALIAS_DOMAIN"] = "seatxfer.com"
os.environ["PROCESSED_BACKEND"] = "pg"
os.environ["MAIL_SOURCE"] = ""
os.environ["SALES_COMMISSION_RATE"] = "0.10"
for _name in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_TOKEN",
              "EMAIL_HOST", "EMAIL_USER", "EMAIL_PASSWORD",
              "EMAIL_WEBHOOK_SECRET", "RESET_NOTIFY_URL",
              "EMAIL_MONITOR_AUTOSTART"):
    os.environ.pop(_name, None)

from datetime import datetime, timezone  # noqa: E402
from typing import List  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402

from seatxfer.mail.source import InboundEmail, MailSource  # noqa: E402
from seatxfer.model import Base  # noqa: E402

TRANSFER_HTML = """
<html><body>
  <p>Your Ticket Transfer is Complete</p>
  <p>Taylor Swift | The Eras Tour</p>
  <p>Sat, Mar 15 @ 7:30 PM</p>
  <p>Gillette Stadium, Foxborough, MA</p>
  <p>Section 101, Row 5, Seat 12</p>
  <p>Section 101, Row 5, Seat 13</p>
</body></html>
"""


class FakeSource(MailSource):
    name = "fake"

    def __init__(self, emails=None, authenticated=True):
        self.emails: List[InboundEmail] = list(emails or [])
        self.authenticated = authenticated
        self.codes = []

    def is_authenticated(self) -> bool:
        return self.authenticated

    def auth_url(self, state):
        return f"https://auth.example/consent?state={state}"

    async def handle_callback(self, code):
        self.codes.append(code)
        self.authenticated = True

    async def fetch_recent(self):
        return list(self.emails)


def make_email(alias, message_id="m-1", html=TRANSFER_HTML, text="",
               subject="Fwd: Your tickets"):
    return InboundEmail(
        source="fake",
        message_id=message_id,
        subject=subject,
        from_address="seller@gmail.com",
        to_address="seller@gmail.com",
        date=datetime(2026, 1, 10, tzinfo=timezone.utc),
        headers=[("To", "seller@gmail.com"), ("X-Original-To", alias)],
        text=text,
        html=html,
    )


@pytest.fixture
async def app():
    from seatxfer import server
    async with server.lifespan(server.app):
        yield server.app
        async with server.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c


@pytest.fixture
async def other_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c


async def register(client, username="jane", email="jane@example.com",
                   password="hunter22"):
    resp = await client.post("/api/register", json={
        "username": username, "email": email, "password": password,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


async def login_admin(client):
    resp = await client.post("/api/login", json={
        "email": "admin@seatxfer.com", "password": "supasecret",
    })
    assert resp.status_code == 200, resp.text
    return resp.json()
