"""
Shared data types for the ingestion, classification and review pipeline.

All timestamps are timezone-aware UTC datetimes. They are serialized as ISO
8601 strings for storage and for the host protocol.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStatus(Enum):
    """Lifecycle status of a job application."""
    APPLIED = "Applied"
    INTERVIEWED = "Interviewed"
    OFFER = "Offer"
    DECLINED = "Declined"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["JobStatus"]:
        if value is None or isinstance(value, JobStatus):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown job status: {value!r}")

    def supersedes(self, other: "JobStatus") -> bool:
        """Forward progress in the application lifecycle (Applied -> ... -> Declined)."""
        order = list(JobStatus)
        return order.index(self) > order.index(other)


class ClassificationSource(Enum):
    FAST = "fast"
    DEEP = "deep"


class Route(Enum):
    """Confidence router outcome."""
    AUTO_ACCEPT = "autoAccept"
    AUTO_REJECT = "autoReject"
    NEEDS_REVIEW = "needsReview"


class SyncPhase(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    SAVING = "saving"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class SyncStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Account:
    """A connected mail account and its sync watermark."""
    email: str
    credential_ref: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    sync_enabled: bool = True
    added_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "credential_ref": self.credential_ref,
            "last_synced_at": to_iso(self.last_synced_at),
            "sync_enabled": self.sync_enabled,
            "added_at": to_iso(self.added_at),
        }


@dataclass(frozen=True)
class RawEmail:
    """A fetched message. Only used as classifier input."""
    message_id: str
    account: str
    sender: str
    subject: str
    body: str
    received_at: datetime

    @property
    def text(self) -> str:
        return f"{self.subject}\n{self.body}"


@dataclass(frozen=True)
class ClassificationResult:
    """
    One classification of one email. Never edited: a correction produces a
    new result.
    """
    is_job_related: bool
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[JobStatus] = None
    confidence: float = 0.0
    source: ClassificationSource = ClassificationSource.FAST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_job_related": self.is_job_related,
            "company": self.company,
            "position": self.position,
            "status": self.status.value if self.status else None,
            "confidence": self.confidence,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        return cls(
            is_job_related=bool(data.get("is_job_related", False)),
            company=data.get("company"),
            position=data.get("position"),
            status=JobStatus.parse(data.get("status")),
            confidence=float(data.get("confidence", 0.0)),
            source=ClassificationSource(data.get("source", "fast")),
        )


@dataclass
class JobRecord:
    account: str
    company: str
    position: str
    status: JobStatus
    applied_date: datetime
    source_message_id: str
    confidence: float
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account": self.account,
            "company": self.company,
            "position": self.position,
            "status": self.status.value,
            "applied_date": to_iso(self.applied_date),
            "source_message_id": self.source_message_id,
            "confidence": self.confidence,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "notes": self.notes,
        }


@dataclass
class ReviewEntry:
    """A needs-review item awaiting a human verdict."""
    message_id: str
    account: str
    sender: str
    subject: str
    snippet: str
    received_at: datetime
    classification: ClassificationResult
    expires_at: datetime
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    flagged: bool = False

    @property
    def confidence(self) -> float:
        return self.classification.confidence

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "account": self.account,
            "sender": self.sender,
            "subject": self.subject,
            "snippet": self.snippet,
            "received_at": to_iso(self.received_at),
            "classification": self.classification.to_dict(),
            "confidence": self.confidence,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "flagged": self.flagged,
        }


@dataclass
class SyncCounts:
    fetched: int = 0
    skipped: int = 0
    digests_filtered: int = 0
    classified: int = 0
    jobs_found: int = 0
    jobs_updated: int = 0
    needs_review: int = 0
    auto_rejected: int = 0
    deep_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class SyncRun:
    """Audit record of one pipeline invocation."""
    accounts: List[str]
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    classify_only: bool = False
    counts: SyncCounts = field(default_factory=SyncCounts)
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    account_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    id: Optional[int] = None

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accounts": list(self.accounts),
            "window_start": to_iso(self.window_start),
            "window_end": to_iso(self.window_end),
            "classify_only": self.classify_only,
            "counts": self.counts.to_dict(),
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "duration_seconds": round(self.duration_seconds, 3),
            "account_errors": dict(self.account_errors),
            "error": self.error,
        }
