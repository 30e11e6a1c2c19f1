"""
Unit tests for the IMAP transport.

The IMAP server is replaced through `connection_factory`; messages are real
RFC 5322 bytes built with the email package.
"""

import imaplib
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

import pytest

from jobsync.core.errors import JobSyncError, TransientFetchError
from jobsync.core.fetcher import Fetcher, SyncWindow
from jobsync.core.models import Account
from jobsync.sources.imap_transport import (
    ImapTransport,
    decode_mime_text,
    html_to_text,
    parse_date,
    parse_message,
)
from jobsync.utils.secrets import set_account_secret

FALLBACK = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _raw(
    subject="Hello",
    body="Plain body",
    html=None,
    message_id="<a@acme.test>",
    date="Mon, 02 Mar 2026 09:00:00 +0100",
    sender="Acme HR <hr@acme.test>",
    attachment=None,
):
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    if message_id:
        msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date
    if body is not None:
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
    elif html:
        msg.set_content(html, subtype="html")
    if attachment:
        msg.add_attachment(attachment.encode(), maintype="text", subtype="plain", filename="cv.txt")
    return msg.as_bytes()


class FakeImap:
    """Minimal IMAP4 stand-in: a UID -> raw message mailbox."""

    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.mailbox = {}
        self.logins = []
        self.searches = []
        self.fail_search = False
        self.logged_out = False
        FakeImap.instances.append(self)

    def login(self, user, password):
        self.logins.append((user, password))
        return "OK", [b"Logged in"]

    def select(self, folder, readonly=False):
        return "OK", [str(len(self.mailbox)).encode()]

    def uid(self, command, *args):
        if command == "SEARCH":
            if self.fail_search:
                raise imaplib.IMAP4.error("connection reset")
            self.searches.append(args[-1])
            return "OK", [" ".join(str(u) for u in sorted(self.mailbox)).encode()]
        if command == "FETCH":
            uid = int(args[0])
            raw = self.mailbox.get(uid)
            if raw is None:
                return "OK", [None]
            return "OK", [(f"{uid} (UID {uid} BODY[] {{{len(raw)}}}".encode(), raw), b")"]
        raise AssertionError(f"unexpected command {command}")

    def logout(self):
        self.logged_out = True
        return "BYE", [b""]


class TestParsing:

    def test_plain_message(self):
        email = parse_message(_raw(), 1, "me@example.com", FALLBACK)

        assert email.message_id == "<a@acme.test>"
        assert email.account == "me@example.com"
        assert email.sender == "Acme HR <hr@acme.test>"
        assert email.subject == "Hello"
        assert email.body == "Plain body"
        assert email.received_at == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def test_plain_part_preferred_over_html(self):
        raw = _raw(body="Plain wins", html="<p>HTML loses</p>")
        assert parse_message(raw, 1, "me@example.com", FALLBACK).body == "Plain wins"

    def test_html_only_is_flattened(self):
        raw = _raw(body=None, html="<html><body><p>Hello <b>there</b></p><script>x()</script></body></html>")
        assert parse_message(raw, 1, "me@example.com", FALLBACK).body == "Hello\nthere"

    def test_attachments_skipped(self):
        raw = _raw(body="Cover note", attachment="secret resume text")
        body = parse_message(raw, 1, "me@example.com", FALLBACK).body
        assert body == "Cover note"

    def test_encoded_subject(self):
        raw = _raw(subject="Entretien pour le poste de Développeur")
        assert parse_message(raw, 1, "me@example.com", FALLBACK).subject == (
            "Entretien pour le poste de Développeur"
        )

    def test_missing_headers_fall_back(self):
        email = parse_message(_raw(message_id=None, date=None), 7, "me@example.com", FALLBACK)
        assert email.message_id == "uid:7"
        assert email.received_at == FALLBACK

    def test_helpers(self):
        assert decode_mime_text(None) == ""
        assert decode_mime_text("=?utf-8?q?Caf=C3=A9?=") == "Café"
        assert parse_date("not a date") is None
        assert html_to_text("<style>p{}</style><p>Hi</p>") == "Hi"


class TestImapTransport:

    @pytest.fixture(autouse=True)
    def setup(self, account, clock):
        FakeImap.instances = []
        self.account = account
        self.since = clock() - timedelta(days=7)
        self.until = clock()
        set_account_secret(account.credential_ref, "app-password")
        self.transport = ImapTransport(
            {"host": "imap.example.org", "port": 993, "folder": "INBOX"},
            connection_factory=self._factory,
        )
        self.mailbox = {
            uid: _raw(subject=f"Message {uid}", message_id=f"<m{uid}@acme.test>") for uid in (3, 5, 9)
        }

    def _factory(self, host, port, timeout=None):
        conn = FakeImap(host, port, timeout)
        conn.mailbox = self.mailbox
        return conn

    def test_pages_by_uid(self):
        first = self.transport.list_messages(self.account, self.since, self.until, None, 2)
        assert [m.subject for m in first.messages] == ["Message 3", "Message 5"]
        assert first.next_page_token == "5"

        second = self.transport.list_messages(self.account, self.since, self.until, "5", 2)
        assert [m.subject for m in second.messages] == ["Message 9"]
        assert second.next_page_token is None

    def test_logs_in_once_with_keyring_secret(self):
        self.transport.list_messages(self.account, self.since, self.until, None, 2)
        self.transport.list_messages(self.account, self.since, self.until, "5", 2)

        assert len(FakeImap.instances) == 1
        conn = FakeImap.instances[0]
        assert conn.host == "imap.example.org"
        assert conn.logins == [("me@example.com", "app-password")]

    def test_search_criteria_cover_whole_days(self):
        self.transport.list_messages(self.account, self.since, self.until, None, 50)
        assert FakeImap.instances[0].searches == ["(SINCE 23-Feb-2026 BEFORE 03-Mar-2026)"]

    def test_missing_secret(self):
        stranger = Account(email="new@example.com", credential_ref="account:new@example.com")
        with pytest.raises(JobSyncError):
            self.transport.list_messages(stranger, self.since, self.until)

    def test_imap_error_is_transient_and_reconnects(self):
        self.transport.list_messages(self.account, self.since, self.until, None, 50)
        broken = FakeImap.instances[0]
        broken.fail_search = True

        with pytest.raises(TransientFetchError):
            self.transport.list_messages(self.account, self.since, self.until, None, 50)
        assert broken.logged_out

        page = self.transport.list_messages(self.account, self.since, self.until, None, 50)
        assert len(page.messages) == 3
        assert len(FakeImap.instances) == 2

    def test_close_logs_out(self):
        self.transport.list_messages(self.account, self.since, self.until, None, 50)
        self.transport.close()
        assert FakeImap.instances[0].logged_out

    @pytest.mark.asyncio
    async def test_fetcher_over_imap(self):
        """Fetcher pages through the transport and trims to the window."""
        window = SyncWindow(start=self.since, end=self.until)
        fetcher = Fetcher(self.transport, {"page_size": 2, "retry_base_delay": 0})

        emails = await fetcher.fetch(self.account, window)

        assert [e.message_id for e in emails] == ["<m3@acme.test>", "<m5@acme.test>", "<m9@acme.test>"]
