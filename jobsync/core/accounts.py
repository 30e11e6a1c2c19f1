"""
Account registry: connected mail accounts and their sync watermarks.

Secrets go to the OS keyring; the store only keeps the credential reference.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from ..storage.base import RecordStore
from ..utils import secrets
from .errors import AccountNotFoundError
from .models import Account

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountRegistry:
    """
    Tracks accounts and their `last_synced_at` watermark.

    Watermarks only move forward; the orchestrator advances them after an
    account has been fully processed.
    """

    def __init__(self, store: RecordStore):
        self.store = store
        self._lock = threading.Lock()

    def add_account(
        self,
        email: str,
        secret: Optional[str] = None,
        credential_ref: Optional[str] = None,
        sync_enabled: bool = True,
    ) -> Account:
        """
        Register an account. Re-adding a known address returns it unchanged
        (a new secret, if given, replaces the stored one).
        """
        address = normalize_email(email)
        if not address or "@" not in address:
            raise ValueError(f"Invalid email address: {email!r}")

        ref = credential_ref or secrets.account_credential_ref(address)
        if secret:
            secrets.set_account_secret(ref, secret)

        with self._lock:
            existing = self.store.get_account(address)
            if existing:
                logger.info(f"Account {address} already registered")
                return existing
            account = Account(email=address, credential_ref=ref, sync_enabled=sync_enabled)
            self.store.save_account(account)

        logger.info(f"Account added: {address}")
        return account

    def remove_account(self, email: str) -> None:
        """Delete the account and its keyring secret. Job records are kept."""
        address = normalize_email(email)
        with self._lock:
            account = self.store.get_account(address)
            if account is None:
                raise AccountNotFoundError(f"Unknown account: {email}")
            if account.credential_ref:
                secrets.delete_account_secret(account.credential_ref)
            self.store.delete_account(address)
        logger.info(f"Account removed: {address}")

    def get_accounts(self) -> List[Account]:
        return self.store.list_accounts()

    def get_account(self, email: str) -> Account:
        account = self.store.get_account(normalize_email(email))
        if account is None:
            raise AccountNotFoundError(f"Unknown account: {email}")
        return account

    def set_sync_enabled(self, email: str, enabled: bool) -> Account:
        with self._lock:
            account = self.get_account(email)
            account.sync_enabled = bool(enabled)
            self.store.save_account(account)
        return account

    def advance_watermark(self, email: str, ts: datetime) -> Account:
        """Move `last_synced_at` forward to `ts`; an older `ts` is ignored."""
        with self._lock:
            account = self.get_account(email)
            if account.last_synced_at is None or ts > account.last_synced_at:
                account.last_synced_at = ts
                self.store.save_account(account)
                logger.info(f"Watermark for {account.email} advanced to {ts.isoformat()}")
        return account

    def resolve(self, emails: Optional[List[str]] = None) -> List[Account]:
        """
        Accounts for a sync, in the order supplied.

        With no list, every sync-enabled account in registry order.
        """
        if emails is None:
            return [a for a in self.get_accounts() if a.sync_enabled]
        return [self.get_account(e) for e in emails]
