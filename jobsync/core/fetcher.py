"""
Account-scoped, paginated message retrieval.

The mail provider is reached through a MailTransport. The Fetcher adds what
the pipeline relies on: page retries with backoff, window bounds, a max
count, de-duplication by message id and cancellation between pages.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .cancellation import CancellationToken
from .errors import TransientFetchError
from .models import Account, RawEmail, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive [start, end] time range."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError("Sync window start is after its end")

    @classmethod
    def from_days(cls, days: int, now: Optional[datetime] = None) -> "SyncWindow":
        end = now or utcnow()
        return cls(start=end - timedelta(days=int(days)), end=end)

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


@dataclass
class MessagePage:
    messages: List[RawEmail] = field(default_factory=list)
    next_page_token: Optional[str] = None


class MailTransport(ABC):
    """
    Opaque paged-message API for one provider.

    Implementations should raise TransientFetchError (or OSError) for
    failures worth retrying. Anything else is treated as permanent.
    """

    @abstractmethod
    def list_messages(
        self,
        account: Account,
        since: datetime,
        until: datetime,
        page_token: Optional[str] = None,
        page_size: int = 50,
    ) -> MessagePage:
        pass

    def close(self) -> None:
        pass


class Fetcher:
    """
    Retrieves the candidate set for an account and window.

    Fetching the same window twice yields the same message ids, so the
    processed-message ledger downstream can dedup reliably.
    """

    def __init__(self, transport: MailTransport, config: Optional[Dict] = None):
        config = config or {}
        self.transport = transport
        self.page_size = config.get("page_size", 50)
        self.max_retries = config.get("fetch_retries", 3)
        self.retry_base_delay = config.get("retry_base_delay", 0.5)

    async def fetch(
        self,
        account: Account,
        window: SyncWindow,
        max_count: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[RawEmail]:
        """
        Fetch every message in the window, in provider order.

        Raises:
            TransientFetchError: a page kept failing after retries
            CancellationRequested: cancellation seen between two pages
        """
        seen = set()
        emails: List[RawEmail] = []
        page_token: Optional[str] = None
        pages = 0

        while True:
            if token:
                token.raise_if_cancelled()

            page = await self._fetch_page(account, window, page_token)
            pages += 1

            for message in page.messages:
                if message.message_id in seen:
                    continue
                if not window.contains(message.received_at):
                    continue
                seen.add(message.message_id)
                emails.append(message)
                if max_count is not None and len(emails) >= max_count:
                    logger.info(f"{account.email}: reached max of {max_count} emails")
                    return emails

            page_token = page.next_page_token
            if not page_token:
                break

        logger.info(f"{account.email}: fetched {len(emails)} emails in {pages} page(s)")
        return emails

    async def _fetch_page(
        self, account: Account, window: SyncWindow, page_token: Optional[str]
    ) -> MessagePage:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await asyncio.to_thread(
                    self.transport.list_messages,
                    account,
                    window.start,
                    window.end,
                    page_token,
                    self.page_size,
                )
            except (TransientFetchError, OSError) as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                # Exponential backoff with jitter
                delay = self.retry_base_delay * (2 ** attempt)
                delay += random.uniform(0, self.retry_base_delay)
                logger.warning(
                    f"{account.email}: page fetch failed (attempt {attempt + 1}/"
                    f"{self.max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

        raise TransientFetchError(
            f"Fetching {account.email} failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error
