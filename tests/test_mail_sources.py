import base64
from datetime import date, datetime, timezone
from email.message import EmailMessage

import pytest

from seatxfer.mail.gmail import (
    credentials_from_info, extract_bodies, normalize_message,
)
from seatxfer.mail.imap import ImapSource, imap_since, parse_rfc822
from seatxfer.mail.recipient import recipient_for
from seatxfer.mail.scraper import webhook_email
from seatxfer.mail import source as source_module

ALIAS = "jane.0123456789ab@seatxfer.com"


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_gmail_nested_multipart():
    msg = {
        "id": "18c0ffee",
        "internalDate": "1767225600000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Fwd: tickets"},
                {"name": "From", "value": "Jane <jane@example.com>"},
                {"name": "To", "value": "me@gmail.com"},
                {"name": "Delivered-To", "value": ALIAS},
            ],
            "parts": [
                {"mimeType": "multipart/alternative", "parts": [
                    {"mimeType": "text/plain",
                     "body": {"data": _b64("Event: Hamilton")}},
                    {"mimeType": "text/html",
                     "body": {"data": _b64("<p>Hamilton</p>")}},
                ]},
                {"mimeType": "application/pdf", "filename": "t.pdf",
                 "body": {"attachmentId": "a1"}},
            ],
        },
    }
    email = normalize_message(msg)
    assert email.message_id == "gmail:18c0ffee"
    assert email.subject == "Fwd: tickets"
    assert email.to_address == "me@gmail.com"
    assert email.text == "Event: Hamilton"
    assert email.html == "<p>Hamilton</p>"
    assert email.date == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert recipient_for(email) == ALIAS


def test_gmail_single_part_body():
    payload = {"mimeType": "text/html", "body": {"data": _b64("<b>x</b>")}}
    assert extract_bodies(payload) == ("", "<b>x</b>")


def test_credentials_from_bare_token():
    creds = credentials_from_info(
        {"access_token": "at", "refresh_token": "rt",
         "expiry_date": 1767225600000},
        "client-id", "client-secret",
    )
    assert creds.token == "at"
    assert creds.refresh_token == "rt"
    assert creds.client_id == "client-id"
    assert creds.expiry == datetime(2026, 1, 1)


def test_imap_since():
    assert imap_since(date(2026, 10, 19)) == "19-Oct-2026"
    assert imap_since(date(2026, 1, 2)) == "02-Jan-2026"


def test_parse_rfc822():
    msg = EmailMessage()
    msg["Subject"] = "Fwd: tickets"
    msg["From"] = "jane@example.com"
    msg["To"] = ALIAS
    msg["Message-ID"] = "<abc@mail.example>"
    msg["Date"] = "Sat, 10 Jan 2026 12:00:00 +0000"
    msg.set_content("Event: Hamilton\n")
    msg.add_alternative("<p>Hamilton</p>", subtype="html")

    email = parse_rfc822(msg.as_bytes(), "fallback")
    assert email.message_id == "imap:<abc@mail.example>"
    assert email.text.strip() == "Event: Hamilton"
    assert email.html.strip() == "<p>Hamilton</p>"
    assert email.date == datetime(2026, 1, 10, 12, tzinfo=timezone.utc)
    assert recipient_for(email) == ALIAS


def test_parse_rfc822_without_message_id():
    raw = b"Subject: hi\r\nTo: x@example.com\r\n\r\nbody\r\n"
    email = parse_rfc822(raw, "user/7")
    assert email.message_id == "imap:user/7"
    assert email.text.strip() == "body"


class _FakeImap:
    def __init__(self, messages):
        self.messages = messages
        self.calls = []
        self.logged_out = False

    def select(self, mailbox):
        self.calls.append(("SELECT", mailbox))
        return "OK", [str(len(self.messages)).encode()]

    def response(self, code):
        return code, [b"1700"]

    def uid(self, command, *args):
        self.calls.append((command,) + args)
        if command == "SEARCH":
            return "OK", [b" ".join(self.messages)]
        raw = self.messages[args[0]]
        return "OK", [(b"1 (UID " + args[0] + b" BODY[] {1}", raw), b")"]

    def fetch(self, *args):
        raise AssertionError("sequence-number fetch")

    def search(self, *args):
        raise AssertionError("sequence-number search")

    def logout(self):
        self.logged_out = True


def test_imap_polls_by_uid(monkeypatch):
    fake = _FakeImap({b"42": b"Subject: one\r\n\r\nbody\r\n",
                      b"57": b"Subject: two\r\nMessage-ID: <x@y>\r\n\r\nb\r\n"})
    src = ImapSource(host="imap.example", port=993, user="box@example.com",
                     password="pw")
    monkeypatch.setattr(src, "_connect", lambda: fake)

    emails = src._fetch_sync()

    assert [e.message_id for e in emails] == [
        "imap:box@example.com/INBOX/1700/42", "imap:<x@y>",
    ]
    search = next(c for c in fake.calls if c[0] == "SEARCH")
    assert search[1] == "UNSEEN"
    assert ("FETCH", b"42", "(BODY.PEEK[])") in fake.calls
    assert fake.logged_out


def test_webhook_email():
    email = webhook_email({"to": ALIAS, "subject": "s", "text": "t",
                           "messageId": "sg-1",
                           "headers": {"X-Original-To": ALIAS}})
    assert email.source == "webhook"
    assert email.message_id == "sg-1"
    assert email.header("x-original-to") == ALIAS
    assert webhook_email({"to": ALIAS}).message_id.startswith("webhook:")


def test_build_source(monkeypatch):
    cfg = source_module.config
    monkeypatch.setattr(cfg, "MAIL_SOURCE", "")
    monkeypatch.setattr(cfg, "GOOGLE_CLIENT_ID", "")
    monkeypatch.setattr(cfg, "EMAIL_HOST", "")
    assert source_module.build_source() is None

    monkeypatch.setattr(cfg, "EMAIL_HOST", "imap.example")
    monkeypatch.setattr(cfg, "EMAIL_USER", "inbox@example.com")
    monkeypatch.setattr(cfg, "EMAIL_PASSWORD", "pw")
    src = source_module.build_source()
    assert src.name == "imap"
    assert src.is_authenticated()
    assert src.auth_url("s") is None

    monkeypatch.setattr(cfg, "MAIL_SOURCE", "pigeon")
    with pytest.raises(ValueError):
        source_module.build_source()
