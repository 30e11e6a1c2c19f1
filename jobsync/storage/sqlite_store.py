"""
SQLite record store.

One connection shared across threads (check_same_thread=False) and guarded by
a lock; the orchestrator persists from worker threads and from the event
loop. Pass ":memory:" for an ephemeral store.
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set

from ..core.errors import PersistenceError
from ..core.models import (
    Account,
    ClassificationResult,
    JobRecord,
    JobStatus,
    ReviewEntry,
    SyncCounts,
    SyncRun,
    SyncStatus,
    from_iso,
    utcnow,
)
from .base import RecordStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    email TEXT PRIMARY KEY,
    credential_ref TEXT,
    last_synced_at TEXT,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    added_at TEXT NOT NULL,
    seq INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account TEXT NOT NULL,
    company TEXT NOT NULL,
    position TEXT NOT NULL,
    status TEXT NOT NULL,
    applied_date TEXT NOT NULL,
    source_message_id TEXT NOT NULL,
    confidence REAL NOT NULL,
    notes TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account, source_message_id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_order ON jobs (applied_date DESC, created_at DESC);

CREATE TABLE IF NOT EXISTS review_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    sender TEXT NOT NULL,
    subject TEXT NOT NULL,
    snippet TEXT NOT NULL,
    received_at TEXT NOT NULL,
    classification TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    flagged INTEGER NOT NULL DEFAULT 0,
    UNIQUE (account, message_id)
);

CREATE TABLE IF NOT EXISTS review_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    verdict TEXT NOT NULL,
    reviewed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_messages (
    account TEXT NOT NULL,
    message_id TEXT NOT NULL,
    outcome TEXT NOT NULL,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (account, message_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    accounts TEXT NOT NULL,
    window_start TEXT,
    window_end TEXT,
    classify_only INTEGER NOT NULL DEFAULT 0,
    counts TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    account_errors TEXT NOT NULL DEFAULT '{}',
    error TEXT
);
"""

_JOB_FIELDS = ("company", "position", "status", "applied_date", "notes", "confidence")


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Stored normalized to UTC so that lexical order matches time order
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class SQLiteStore(RecordStore):
    """RecordStore backed by a single SQLite database file."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        logger.debug(f"SQLite store ready at {path}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(str(e)) from e

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Accounts

    def save_account(self, account: Account) -> Account:
        with self._transaction() as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM accounts").fetchone()[0]
            conn.execute(
                """
                INSERT INTO accounts (email, credential_ref, last_synced_at, sync_enabled, added_at, seq)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    credential_ref = excluded.credential_ref,
                    last_synced_at = excluded.last_synced_at,
                    sync_enabled = excluded.sync_enabled
                """,
                (
                    account.email,
                    account.credential_ref,
                    _ts(account.last_synced_at),
                    int(account.sync_enabled),
                    _ts(account.added_at),
                    seq,
                ),
            )
        return account

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            email=row["email"],
            credential_ref=row["credential_ref"],
            last_synced_at=from_iso(row["last_synced_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            added_at=from_iso(row["added_at"]),
        )

    def get_account(self, email: str) -> Optional[Account]:
        rows = self._query("SELECT * FROM accounts WHERE email = ?", (email,))
        return self._row_to_account(rows[0]) if rows else None

    def list_accounts(self) -> List[Account]:
        return [self._row_to_account(r) for r in self._query("SELECT * FROM accounts ORDER BY seq")]

    def delete_account(self, email: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM accounts WHERE email = ?", (email,))
            return cur.rowcount > 0

    # Job records

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            account=row["account"],
            company=row["company"],
            position=row["position"],
            status=JobStatus(row["status"]),
            applied_date=from_iso(row["applied_date"]),
            source_message_id=row["source_message_id"],
            confidence=row["confidence"],
            notes=row["notes"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def insert_job(self, record: JobRecord) -> Optional[JobRecord]:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO jobs (account, company, position, status, applied_date,
                    source_message_id, confidence, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.account,
                    record.company,
                    record.position,
                    record.status.value,
                    _ts(record.applied_date),
                    record.source_message_id,
                    record.confidence,
                    record.notes,
                    _ts(record.created_at),
                    _ts(record.updated_at),
                ),
            )
            if cur.rowcount == 0:
                logger.debug(f"Job for message {record.source_message_id} already exists")
                return None
            record.id = cur.lastrowid
        return record

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        rows = self._query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def get_job_by_message(self, account: str, message_id: str) -> Optional[JobRecord]:
        rows = self._query(
            "SELECT * FROM jobs WHERE account = ? AND source_message_id = ?",
            (account, message_id),
        )
        return self._row_to_job(rows[0]) if rows else None

    def list_jobs(self, limit: Optional[int] = None) -> List[JobRecord]:
        sql = "SELECT * FROM jobs ORDER BY applied_date DESC, created_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [self._row_to_job(r) for r in self._query(sql, params)]

    def find_job(
        self, account: str, company: str, position: str, since: Optional[datetime] = None
    ) -> Optional[JobRecord]:
        sql = (
            "SELECT * FROM jobs WHERE account = ? AND company = ? COLLATE NOCASE "
            "AND position = ? COLLATE NOCASE"
        )
        params: tuple = (account, company.strip(), position.strip())
        if since is not None:
            sql += " AND applied_date >= ?"
            params += (_ts(since),)
        sql += " ORDER BY applied_date DESC, id DESC LIMIT 1"
        rows = self._query(sql, params)
        return self._row_to_job(rows[0]) if rows else None

    def update_job(self, job_id: int, changes: Dict[str, Any]) -> Optional[JobRecord]:
        unknown = set(changes) - set(_JOB_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        values: Dict[str, Any] = {}
        for key, value in changes.items():
            if key == "status":
                value = JobStatus.parse(value).value
            elif key == "applied_date":
                value = _ts(value if isinstance(value, datetime) else from_iso(value))
            values[key] = value
        values["updated_at"] = _ts(utcnow())

        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                tuple(values.values()) + (job_id,),
            )
            if cur.rowcount == 0:
                return None
        return self.get_job(job_id)

    def delete_job(self, job_id: int) -> bool:
        with self._transaction() as conn:
            return conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,)).rowcount > 0

    # Review entries

    @staticmethod
    def _row_to_review(row: sqlite3.Row) -> ReviewEntry:
        return ReviewEntry(
            id=row["id"],
            message_id=row["message_id"],
            account=row["account"],
            sender=row["sender"],
            subject=row["subject"],
            snippet=row["snippet"],
            received_at=from_iso(row["received_at"]),
            classification=ClassificationResult.from_dict(json.loads(row["classification"])),
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            flagged=bool(row["flagged"]),
        )

    def insert_review(self, entry: ReviewEntry) -> Optional[ReviewEntry]:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO review_entries (message_id, account, sender, subject, snippet,
                    received_at, classification, confidence, created_at, expires_at, flagged)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.message_id,
                    entry.account,
                    entry.sender,
                    entry.subject,
                    entry.snippet,
                    _ts(entry.received_at),
                    json.dumps(entry.classification.to_dict()),
                    entry.confidence,
                    _ts(entry.created_at),
                    _ts(entry.expires_at),
                    int(entry.flagged),
                ),
            )
            if cur.rowcount == 0:
                return None
            entry.id = cur.lastrowid
        return entry

    def get_review(self, entry_id: int) -> Optional[ReviewEntry]:
        rows = self._query("SELECT * FROM review_entries WHERE id = ?", (entry_id,))
        return self._row_to_review(rows[0]) if rows else None

    def list_reviews(self) -> List[ReviewEntry]:
        rows = self._query("SELECT * FROM review_entries ORDER BY created_at, id")
        return [self._row_to_review(r) for r in rows]

    def update_review(self, entry: ReviewEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE review_entries
                SET classification = ?, confidence = ?, expires_at = ?, flagged = ?
                WHERE id = ?
                """,
                (
                    json.dumps(entry.classification.to_dict()),
                    entry.confidence,
                    _ts(entry.expires_at),
                    int(entry.flagged),
                    entry.id,
                ),
            )

    def delete_review(self, entry_id: int) -> bool:
        with self._transaction() as conn:
            return conn.execute(
                "DELETE FROM review_entries WHERE id = ?", (entry_id,)
            ).rowcount > 0

    def delete_expired_reviews(self, now: datetime) -> int:
        with self._transaction() as conn:
            return conn.execute(
                "DELETE FROM review_entries WHERE expires_at <= ?", (_ts(now),)
            ).rowcount

    def log_review_verdict(self, entry: ReviewEntry, verdict: str, at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO review_log (entry_id, message_id, account, verdict, reviewed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.id, entry.message_id, entry.account, verdict, _ts(at)),
            )

    def count_review_verdicts(self) -> int:
        return self._query("SELECT COUNT(*) FROM review_log")[0][0]

    # Processed-message ledger

    def mark_processed(self, account: str, message_id: str, outcome: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO processed_messages (account, message_id, outcome, processed_at)
                VALUES (?, ?, ?, ?)
                """,
                (account, message_id, outcome, _ts(utcnow())),
            )

    def processed_ids(self, account: str) -> Set[str]:
        rows = self._query(
            "SELECT message_id FROM processed_messages WHERE account = ?", (account,)
        )
        return {r["message_id"] for r in rows}

    # Sync history

    def save_sync_run(self, run: SyncRun) -> SyncRun:
        values = (
            json.dumps(run.accounts),
            _ts(run.window_start),
            _ts(run.window_end),
            int(run.classify_only),
            json.dumps(run.counts.to_dict()),
            run.status.value,
            _ts(run.started_at),
            _ts(run.finished_at),
            json.dumps(run.account_errors),
            run.error,
        )
        with self._transaction() as conn:
            if run.id is None:
                cur = conn.execute(
                    """
                    INSERT INTO sync_runs (accounts, window_start, window_end, classify_only,
                        counts, status, started_at, finished_at, account_errors, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                run.id = cur.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE sync_runs SET accounts = ?, window_start = ?, window_end = ?,
                        classify_only = ?, counts = ?, status = ?, started_at = ?,
                        finished_at = ?, account_errors = ?, error = ?
                    WHERE id = ?
                    """,
                    values + (run.id,),
                )
        return run

    def list_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        rows = self._query("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (int(limit),))
        runs = []
        for row in rows:
            runs.append(
                SyncRun(
                    id=row["id"],
                    accounts=json.loads(row["accounts"]),
                    window_start=from_iso(row["window_start"]),
                    window_end=from_iso(row["window_end"]),
                    classify_only=bool(row["classify_only"]),
                    counts=SyncCounts(**json.loads(row["counts"])),
                    status=SyncStatus(row["status"]),
                    started_at=from_iso(row["started_at"]),
                    finished_at=from_iso(row["finished_at"]),
                    account_errors=json.loads(row["account_errors"]),
                    error=row["error"],
                )
            )
        return runs
