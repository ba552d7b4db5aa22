import base64
import hashlib
import hmac
import json

from conftest import TRANSFER_HTML, register
from seatxfer import config, server


async def _webhook(client, alias, **extra):
    body = {"to": alias, "from": "seller@gmail.com",
            "subject": "Fwd: Your tickets", "html": TRANSFER_HTML}
    body.update(extra)
    return await client.post("/api/email-webhook", json=body)


# ----------------------------
# listings
# ----------------------------
async def test_tickets_require_login(client):
    assert (await client.get("/api/tickets")).status_code == 401
    assert (await client.get("/api/pending-tickets")).status_code == 401
    assert (await client.get("/api/payments")).status_code == 401


async def test_create_and_list_tickets(client):
    await register(client)
    resp = await client.post("/api/tickets", json={
        "eventName": "Hamilton",
        "eventDate": "2026-03-20T20:00:00Z",
        "venue": "Richard Rodgers Theatre",
        "section": "Orchestra", "row": "G", "seat": "101",
        "askingPrice": 250,
    })
    assert resp.status_code == 201, resp.text
    ticket = resp.json()
    assert ticket["askingPrice"] == 250
    assert ticket["status"] == "pending"
    assert ticket["eventDate"] == "2026-03-20T20:00:00+00:00"

    resp = await client.get("/api/tickets")
    assert [t["id"] for t in resp.json()] == [ticket["id"]]


async def test_create_ticket_validation(client):
    await register(client)
    for body in (
        {"venue": "nowhere"},
        {"eventName": "X", "eventDate": "next tuesday"},
        {"eventName": "X", "askingPrice": -5},
        {"eventName": "X", "askingPrice": "lots"},
    ):
        resp = await client.post("/api/tickets", json=body)
        assert resp.status_code == 400, body

    resp = await client.post("/api/tickets", json={"eventName": "X"})
    assert resp.json()["askingPrice"] == 0


async def test_users_only_see_their_own_tickets(client, other_client):
    await register(client)
    await register(other_client, username="bob", email="bob@example.com")
    await client.post("/api/tickets", json={"eventName": "Mine"})
    assert (await other_client.get("/api/tickets")).json() == []


# ----------------------------
# inbound mail -> pending -> confirm
# ----------------------------
async def test_webhook_creates_pending_tickets(client):
    user = await register(client)
    resp = await _webhook(client, user["uniqueEmail"], messageId="tm-1")
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["created"] == 2
    first = body["items"][0]
    assert first["eventName"] == "Taylor Swift | The Eras Tour"
    assert first["recipientEmail"] == user["uniqueEmail"]
    assert first["status"] == "pending"
    assert first["extractedData"]["venue"] == "Gillette Stadium"

    pending = (await client.get("/api/pending-tickets")).json()
    assert len(pending) == 2
    assert {p["seat"] for p in pending} == {"12", "13"}


async def test_webhook_is_idempotent_per_message(client):
    user = await register(client)
    await _webhook(client, user["uniqueEmail"], messageId="tm-1")
    resp = await _webhook(client, user["uniqueEmail"], messageId="tm-1")
    assert resp.status_code == 201
    assert resp.json() == {"created": 0, "items": []}
    assert len((await client.get("/api/pending-tickets")).json()) == 2


async def test_webhook_parsed_overrides(client):
    user = await register(client)
    resp = await _webhook(client, user["uniqueEmail"],
                          parsed={"eventName": "Eras Tour", "venue": "Other"})
    items = resp.json()["items"]
    assert {i["eventName"] for i in items} == {"Eras Tour"}
    assert {i["venue"] for i in items} == {"Other"}


async def test_webhook_errors(client):
    resp = await client.post("/api/email-webhook", json={"subject": "hi"})
    assert resp.status_code == 400

    resp = await _webhook(client, "ghost.000000000000@seatxfer.com")
    assert resp.status_code == 404

    resp = await client.post(
        "/api/email-webhook", content=b"not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


async def test_webhook_rejects_malformed_fields(client):
    user = await register(client)
    resp = await _webhook(client, [user["uniqueEmail"]])
    assert resp.status_code == 400
    assert resp.json()["detail"] == "to must be a string"

    resp = await _webhook(client, user["uniqueEmail"], headers="X-To: a")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "headers must be an object"

    resp = await _webhook(client, user["uniqueEmail"], parsed=["Eras"])
    assert resp.status_code == 400
    assert resp.json()["detail"] == "parsed must be an object"

    resp = await _webhook(client, user["uniqueEmail"], subject=7)
    assert resp.status_code == 400

    resp = await client.get("/api/pending-tickets")
    assert resp.json() == []


async def test_webhook_signature(client, monkeypatch):
    user = await register(client)
    monkeypatch.setattr(config, "EMAIL_WEBHOOK_SECRET", "s3cret")
    payload = json.dumps({"to": user["uniqueEmail"],
                          "html": TRANSFER_HTML}).encode()

    resp = await client.post("/api/email-webhook", content=payload,
                             headers={"content-type": "application/json"})
    assert resp.status_code == 400

    sig = base64.b64encode(
        hmac.new(b"s3cret", payload, hashlib.sha256).digest()
    ).decode()
    resp = await client.post(
        "/api/email-webhook", content=payload,
        headers={"content-type": "application/json",
                 "x-seatxfer-signature": sig},
    )
    assert resp.status_code == 201
    assert resp.json()["created"] == 2


async def test_confirm_pending_ticket(client, other_client):
    user = await register(client)
    await register(other_client, username="bob", email="bob@example.com")
    items = (await _webhook(client, user["uniqueEmail"])).json()["items"]
    pending_id = items[0]["id"]

    # not bob's
    resp = await other_client.post(
        f"/api/pending-tickets/{pending_id}/confirm", json={}
    )
    assert resp.status_code == 404

    resp = await client.post(f"/api/pending-tickets/{pending_id}/confirm",
                             json={"askingPrice": 150})
    assert resp.status_code == 200, resp.text
    ticket = resp.json()
    assert ticket["askingPrice"] == 150
    assert ticket["eventName"] == "Taylor Swift | The Eras Tour"
    assert (ticket["section"], ticket["row"]) == ("101", "5")

    resp = await client.post(f"/api/pending-tickets/{pending_id}/confirm")
    assert resp.status_code == 400

    statuses = {p["id"]: p["status"]
                for p in (await client.get("/api/pending-tickets")).json()}
    assert statuses[pending_id] == "processed"

    resp = await client.get("/api/pending-tickets",
                            params={"status": "pending"})
    assert [p["id"] for p in resp.json()] == [items[1]["id"]]

    assert len((await client.get("/api/tickets")).json()) == 1


async def test_confirm_missing_pending_ticket(client):
    await register(client)
    resp = await client.post("/api/pending-tickets/999/confirm", json={})
    assert resp.status_code == 404


# ----------------------------
# payments
# ----------------------------
async def test_payments_are_per_seller(client, other_client):
    user = await register(client)
    await register(other_client, username="bob", email="bob@example.com")
    async with server.storage_scope() as storage:
        await storage.create_payment(user_id=user["id"], amount=9900,
                                     buyer_email="fan@example.com")

    payments = (await client.get("/api/payments")).json()
    assert len(payments) == 1
    assert payments[0]["amount"] == 9900
    assert payments[0]["buyerEmail"] == "fan@example.com"
    assert (await other_client.get("/api/payments")).json() == []
