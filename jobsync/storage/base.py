"""
Abstract record store.

The pipeline only talks to this interface. Implementations must raise
PersistenceError (never a backend-specific exception) when a write fails.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..core.models import Account, JobRecord, ReviewEntry, SyncRun


class RecordStore(ABC):
    """CRUD + query boundary for accounts, jobs, review entries and sync runs."""

    # Accounts

    @abstractmethod
    def save_account(self, account: Account) -> Account:
        """Insert or update an account (keyed by email)."""
        pass

    @abstractmethod
    def get_account(self, email: str) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """All accounts, in insertion order."""
        pass

    @abstractmethod
    def delete_account(self, email: str) -> bool:
        pass

    # Job records

    @abstractmethod
    def insert_job(self, record: JobRecord) -> Optional[JobRecord]:
        """
        Persist a new job record.

        Returns the stored record with its id, or None when a record already
        exists for the same (account, source_message_id).
        """
        pass

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[JobRecord]:
        pass

    @abstractmethod
    def get_job_by_message(self, account: str, message_id: str) -> Optional[JobRecord]:
        pass

    @abstractmethod
    def list_jobs(self, limit: Optional[int] = None) -> List[JobRecord]:
        """Sorted by applied_date desc, then created_at desc."""
        pass

    @abstractmethod
    def find_job(
        self, account: str, company: str, position: str, since: Optional[datetime] = None
    ) -> Optional[JobRecord]:
        """
        Most recent record for the same application: same account, company and
        position (case-insensitive), applied on or after `since`.
        """
        pass

    @abstractmethod
    def update_job(self, job_id: int, changes: Dict[str, Any]) -> Optional[JobRecord]:
        pass

    @abstractmethod
    def delete_job(self, job_id: int) -> bool:
        pass

    # Review entries

    @abstractmethod
    def insert_review(self, entry: ReviewEntry) -> Optional[ReviewEntry]:
        """Returns None when an open entry already exists for the message."""
        pass

    @abstractmethod
    def get_review(self, entry_id: int) -> Optional[ReviewEntry]:
        pass

    @abstractmethod
    def list_reviews(self) -> List[ReviewEntry]:
        """All open entries, oldest first."""
        pass

    @abstractmethod
    def update_review(self, entry: ReviewEntry) -> None:
        pass

    @abstractmethod
    def delete_review(self, entry_id: int) -> bool:
        pass

    @abstractmethod
    def delete_expired_reviews(self, now: datetime) -> int:
        pass

    @abstractmethod
    def log_review_verdict(self, entry: ReviewEntry, verdict: str, at: datetime) -> None:
        pass

    @abstractmethod
    def count_review_verdicts(self) -> int:
        pass

    # Processed-message ledger

    @abstractmethod
    def mark_processed(self, account: str, message_id: str, outcome: str) -> None:
        pass

    @abstractmethod
    def processed_ids(self, account: str) -> Set[str]:
        pass

    # Sync history

    @abstractmethod
    def save_sync_run(self, run: SyncRun) -> SyncRun:
        """Insert (id is None) or update a sync run."""
        pass

    @abstractmethod
    def list_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        """Most recent first."""
        pass

    def close(self) -> None:
        pass
