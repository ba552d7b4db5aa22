import asyncio

import pytest

from conftest import FakeSource, login_admin, make_email, register
from seatxfer import server
from seatxfer.mail import scraper as scraper_module
from seatxfer.mail.scraper import EmailScraper


@pytest.fixture
def make_scraper(app):
    def _make(source):
        return EmailScraper(source, server.storage_scope,
                            server.processed_scope)
    return _make


async def _processed(message_id):
    async with server.processed_scope() as store:
        return await store.is_processed(message_id)


async def test_scrape_once_creates_pending_tickets(client, make_scraper):
    user = await register(client)
    source = FakeSource([make_email(user["uniqueEmail"])])
    scraper = make_scraper(source)

    result = await scraper.scrape_once()
    assert result.to_dict() == {"seen": 1, "skipped": 0, "created": 2,
                                "errors": 0}
    assert scraper.last_checked is not None

    pending = (await client.get("/api/pending-tickets")).json()
    assert len(pending) == 2
    assert pending[0]["messageId"] == "m-1"
    assert pending[0]["emailSubject"] == "Fwd: Your tickets"
    assert await _processed("m-1")


async def test_messages_are_ingested_once(client, make_scraper):
    user = await register(client)
    scraper = make_scraper(FakeSource([make_email(user["uniqueEmail"])]))

    await scraper.scrape_once()
    result = await scraper.scrape_once()
    assert (result.seen, result.skipped, result.created) == (1, 1, 0)
    assert len((await client.get("/api/pending-tickets")).json()) == 2


async def test_unknown_alias_is_skipped_but_processed(client, make_scraper):
    scraper = make_scraper(FakeSource([
        make_email("ghost.000000000000@seatxfer.com", message_id="m-ghost"),
    ]))
    result = await scraper.scrape_once()
    assert (result.skipped, result.created) == (1, 0)
    assert await _processed("m-ghost")


async def test_mail_without_alias_is_skipped(client, make_scraper):
    email = make_email("nobody@gmail.com", message_id="m-plain",
                       html="<p>hello</p>")
    result = await make_scraper(FakeSource([email])).scrape_once()
    assert (result.skipped, result.created) == (1, 0)


async def test_failed_ingest_releases_claim(client, make_scraper,
                                            monkeypatch):
    user = await register(client)
    scraper = make_scraper(FakeSource([make_email(user["uniqueEmail"])]))

    def boom(**kwargs):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr(scraper_module, "parse_ticket_email", boom)
    result = await scraper.scrape_once()
    assert result.errors == 1
    assert not await _processed("m-1")

    # next cycle retries it
    monkeypatch.undo()
    result = await scraper.scrape_once()
    assert result.created == 2


async def test_text_only_mail_still_yields_a_pending_ticket(client,
                                                            make_scraper):
    user = await register(client)
    email = make_email(user["uniqueEmail"], html="",
                       text="Event: Hamilton\nVenue: Richard Rodgers\n")
    result = await make_scraper(FakeSource([email])).scrape_once()
    assert result.created == 1
    [pending] = (await client.get("/api/pending-tickets")).json()
    assert pending["eventName"] == "Hamilton"


async def test_recent_emails_preview(client, make_scraper):
    user = await register(client)
    source = FakeSource([
        make_email(user["uniqueEmail"]),
        make_email("nobody@gmail.com", message_id="m-2", html="<p>x</p>"),
    ])
    preview = await make_scraper(source).recent_emails(limit=5)
    assert len(preview) == 1
    assert preview[0]["userName"] == "jane"
    assert preview[0]["ticketInfo"]["eventName"] == \
        "Taylor Swift | The Eras Tour"
    # preview never writes
    assert (await client.get("/api/pending-tickets")).json() == []


async def test_start_and_stop_monitoring(client, make_scraper):
    scraper = make_scraper(FakeSource([]))
    scraper.start(3600)
    assert scraper.is_monitoring
    await asyncio.sleep(0.05)
    assert scraper.last_checked is not None
    await scraper.stop()
    assert not scraper.is_monitoring


async def test_start_requires_authentication(make_scraper):
    scraper = make_scraper(FakeSource([], authenticated=False))
    with pytest.raises(scraper_module.NotAuthenticated):
        scraper.start(60)
    assert not scraper.is_monitoring


# ----------------------------
# admin mail endpoints
# ----------------------------
async def test_mail_endpoints_without_source(client):
    await login_admin(client)
    resp = await client.get("/api/admin/email/status")
    assert resp.status_code == 200
    status = resp.json()
    assert status["isConnected"] is False
    assert status["source"] is None
    assert isinstance(status["timings"], dict)

    for path in ("start-monitoring", "stop-monitoring", "scrape-now"):
        resp = await client.post(f"/api/admin/email/{path}")
        assert resp.status_code == 503
    assert (await client.get("/api/admin/gmail/setup")).status_code == 503


async def test_mail_endpoints_with_source(app, client):
    user = await register(client, username="seller",
                          email="seller@example.com")
    await client.post("/api/logout")
    await login_admin(client)
    app.state.scraper.source = FakeSource([make_email(user["uniqueEmail"])])

    resp = await client.post("/api/admin/email/scrape-now")
    assert resp.status_code == 200
    assert resp.json()["created"] == 2

    status = (await client.get("/api/admin/email/status")).json()
    assert status["isAuthenticated"] is True
    assert status["source"] == "fake"
    assert status["lastChecked"] is not None
    assert status["recentEmails"][0]["userName"] == "seller"
    assert "mail.fetch" in status["timings"]

    resp = await client.post("/api/admin/email/start-monitoring")
    assert resp.json()["isMonitoring"] is True
    resp = await client.post("/api/admin/email/stop-monitoring")
    assert resp.json()["isMonitoring"] is False


async def test_oauth_flow(app, client):
    await login_admin(client)
    source = FakeSource([], authenticated=False)
    app.state.scraper.source = source

    resp = await client.post("/api/admin/email/start-monitoring")
    assert resp.status_code == 401
    assert resp.json()["authUrl"].startswith("https://auth.example/")

    resp = await client.get("/api/admin/gmail/setup")
    assert resp.json()["isAuthenticated"] is False

    resp = await client.get("/api/gmail/callback",
                            params={"code": "abc", "state": "forged"})
    assert resp.status_code == 400

    # state is single use, ask again
    url = (await client.get("/api/admin/gmail/setup")).json()["authUrl"]
    state = url.split("state=")[1]
    resp = await client.get("/api/gmail/callback",
                            params={"code": "abc", "state": state})
    assert resp.status_code == 303
    assert resp.headers["location"] == "/admin/email-monitor"
    assert source.codes == ["abc"]
    assert source.is_authenticated()
