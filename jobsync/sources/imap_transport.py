"""
IMAP mail transport.

Pages through a folder by UID: a page token is the last UID already
returned, so the same window always yields the same messages in the same
order. HTML-only bodies are flattened to text with BeautifulSoup.
"""

import email
import imaplib
import logging
import threading
from datetime import datetime, timedelta, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import Callable, Dict, List, Optional

from bs4 import BeautifulSoup

from ..core.errors import JobSyncError, TransientFetchError
from ..core.fetcher import MailTransport, MessagePage
from ..core.models import Account, RawEmail
from ..utils.secrets import get_account_secret

logger = logging.getLogger(__name__)


def decode_mime_text(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value))).strip()
    except (UnicodeDecodeError, LookupError, ValueError):
        return value.strip()


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_body_text(msg: Message) -> str:
    """Plain-text parts when present, otherwise the flattened HTML parts."""
    plain_parts: List[str] = []
    html_parts: List[str] = []

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if "attachment" in str(part.get("Content-Disposition", "")).lower():
            continue
        ctype = part.get_content_type()
        if ctype == "text/plain":
            plain_parts.append(_decode_part(part))
        elif ctype == "text/html":
            html_parts.append(html_to_text(_decode_part(part)))

    return "\n".join(plain_parts or html_parts).strip()


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_message(raw: bytes, uid: int, account: str, fallback_time: datetime) -> RawEmail:
    msg = email.message_from_bytes(raw)
    message_id = (msg.get("Message-ID") or "").strip() or f"uid:{uid}"
    name, address = parseaddr(decode_mime_text(msg.get("From")))
    sender = f"{name} <{address}>" if name and address else (address or name)
    return RawEmail(
        message_id=message_id,
        account=account,
        sender=sender,
        subject=decode_mime_text(msg.get("Subject")),
        body=extract_body_text(msg),
        received_at=parse_date(msg.get("Date")) or fallback_time,
    )


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y")


class ImapTransport(MailTransport):
    """
    Usage:
        transport = ImapTransport({"host": "imap.gmail.com"})
        fetcher = Fetcher(transport, config["sync"])
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        connection_factory: Optional[Callable[..., imaplib.IMAP4]] = None,
    ):
        """
        Args:
            config: IMAP configuration with:
                - host: Server host name
                - port: Server port (default: 993)
                - folder: Mailbox to read (default: INBOX)
                - timeout: Socket timeout in seconds (default: 30)
            connection_factory: Builds the IMAP connection (default: IMAP4_SSL)
        """
        config = config or {}
        self.host = config.get("host", "imap.gmail.com")
        self.port = config.get("port", 993)
        self.folder = config.get("folder", "INBOX")
        self.timeout = config.get("timeout", 30)
        self._factory = connection_factory or imaplib.IMAP4_SSL
        self._connections: Dict[str, imaplib.IMAP4] = {}
        self._lock = threading.Lock()

    def _connect(self, account: Account) -> imaplib.IMAP4:
        conn = self._connections.get(account.email)
        if conn is not None:
            return conn

        password = get_account_secret(account.credential_ref) if account.credential_ref else None
        if not password:
            raise JobSyncError(f"No credential stored for {account.email}")

        conn = self._factory(self.host, self.port, timeout=self.timeout)
        conn.login(account.email, password)
        status, _ = conn.select(self.folder, readonly=True)
        if status != "OK":
            raise TransientFetchError(f"Cannot select folder {self.folder}")
        self._connections[account.email] = conn
        logger.info(f"Connected to {self.host} as {account.email}")
        return conn

    def _drop(self, email_address: str) -> None:
        conn = self._connections.pop(email_address, None)
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    def list_messages(
        self,
        account: Account,
        since: datetime,
        until: datetime,
        page_token: Optional[str] = None,
        page_size: int = 50,
    ) -> MessagePage:
        with self._lock:
            try:
                return self._list(account, since, until, page_token, page_size)
            except (imaplib.IMAP4.error, OSError) as e:
                self._drop(account.email)
                raise TransientFetchError(f"IMAP error for {account.email}: {e}") from e

    def _list(
        self,
        account: Account,
        since: datetime,
        until: datetime,
        page_token: Optional[str],
        page_size: int,
    ) -> MessagePage:
        conn = self._connect(account)
        # SEARCH works on whole days; the Fetcher trims to the exact window
        criteria = f"(SINCE {_imap_date(since)} BEFORE {_imap_date(until + timedelta(days=1))})"
        status, data = conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise TransientFetchError(f"UID SEARCH failed for {account.email}")

        after = int(page_token) if page_token else 0
        uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > after)
        page_uids = uids[:page_size]

        messages = []
        for uid in page_uids:
            f_status, fetched = conn.uid("FETCH", str(uid), "(BODY.PEEK[])")
            if f_status != "OK" or not fetched or not isinstance(fetched[0], tuple):
                logger.warning(f"{account.email}: could not fetch uid {uid}")
                continue
            messages.append(parse_message(fetched[0][1], uid, account.email, since))

        next_token = str(page_uids[-1]) if len(uids) > page_size else None
        return MessagePage(messages=messages, next_page_token=next_token)

    def close(self) -> None:
        with self._lock:
            for address in list(self._connections):
                self._drop(address)
