"""
Review queue: needs-review items and the human verdicts applied to them.

Every verdict is atomic per entry. A JobRecord is written before the entry is
removed, so a failed write leaves the entry pending rather than losing the
verdict. Verdicts are fed back to the Fast Classifier through the feedback
loop.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..utils.sanitize import sanitize_body
from .confidence import ConfidenceRouter
from .errors import (
    JobSyncError,
    PersistenceError,
    ReviewEntryExpiredError,
    ReviewEntryNotFoundError,
)
from .feedback_loop import FeedbackLoop
from .heuristics import guess_company, guess_position, guess_status
from .models import ClassificationResult, JobRecord, JobStatus, RawEmail, ReviewEntry, utcnow
from ..storage.base import RecordStore

logger = logging.getLogger(__name__)

APPROVE_FOR_EXTRACTION = "approve_for_extraction"
REJECT_AS_NOT_JOB = "reject_as_not_job"
MARK_NEEDS_REVIEW = "mark_needs_review"
BULK_OPERATIONS = (APPROVE_FOR_EXTRACTION, REJECT_AS_NOT_JOB, MARK_NEEDS_REVIEW)

UNKNOWN = "Unknown"

# (subject, sender, body) -> structured result; typically DeepClassifier.classify
Extractor = Callable[[str, str, str], ClassificationResult]


@dataclass
class ReviewFilter:
    account: Optional[str] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    flagged: Optional[bool] = None
    include_expired: bool = False
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ReviewFilter":
        data = data or {}
        return cls(
            account=data.get("account"),
            min_confidence=data.get("min_confidence"),
            max_confidence=data.get("max_confidence"),
            flagged=data.get("flagged"),
            include_expired=bool(data.get("include_expired", False)),
            limit=data.get("limit"),
        )

    def matches(self, entry: ReviewEntry, now: datetime) -> bool:
        if not self.include_expired and entry.is_expired(now):
            return False
        if self.account and entry.account != self.account:
            return False
        if self.min_confidence is not None and entry.confidence < self.min_confidence:
            return False
        if self.max_confidence is not None and entry.confidence > self.max_confidence:
            return False
        if self.flagged is not None and entry.flagged != self.flagged:
            return False
        return True


@dataclass
class BulkOutcome:
    id: int
    success: bool
    error: Optional[str] = None  # not_found | expired | persistence_error | ...
    job_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return {"id": self.id, "success": self.success, "error": self.error, "job_id": self.job_id}


@dataclass
class BulkResult:
    operation: str
    outcomes: List[BulkOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    def to_dict(self) -> Dict:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ReviewQueue:
    """
    Usage:
        queue = ReviewQueue(store, router, feedback, config["review"])
        entry = queue.enqueue(email, result)
        record = queue.mark_job_related(entry.id, {"company": "Acme"})
        outcome = queue.bulk_operation([1, 2, 3], "reject_as_not_job")
    """

    def __init__(
        self,
        store: RecordStore,
        router: ConfidenceRouter,
        feedback: Optional[FeedbackLoop] = None,
        config: Optional[Dict] = None,
        extractor: Optional[Extractor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            config: Review configuration with:
                - snippet_length: Body characters kept on an entry (default: 2000)
                - expiring_soon_hours: Window for the expiring_soon stat (default: 48)
            extractor: Structured extractor used by approve_for_extraction
                when the snapshot lacks company or position
            clock: Returns the current aware UTC datetime
        """
        config = config or {}
        self.store = store
        self.router = router
        self.feedback = feedback
        self.extractor = extractor
        self.clock = clock
        self.snippet_length = config.get("snippet_length", 2000)
        self.expiring_soon_hours = config.get("expiring_soon_hours", 48)

    def enqueue(self, email: RawEmail, result: ClassificationResult) -> Optional[ReviewEntry]:
        """
        Add a needs-review entry. Returns None when the message already has one.

        Raises:
            PersistenceError: store write failed
        """
        now = self.clock()
        entry = ReviewEntry(
            message_id=email.message_id,
            account=email.account,
            sender=email.sender,
            subject=email.subject,
            snippet=sanitize_body(email.body, self.snippet_length),
            received_at=email.received_at,
            classification=result,
            created_at=now,
            expires_at=now + timedelta(days=self.router.retention_days(result.confidence)),
        )
        stored = self.store.insert_review(entry)
        if stored is None:
            logger.debug(f"Review entry for {email.message_id} already exists")
        return stored

    def get_pending(self, review_filter: Optional[ReviewFilter] = None) -> List[ReviewEntry]:
        """Pending entries, oldest first. Expired entries are hidden unless asked for."""
        review_filter = review_filter or ReviewFilter()
        now = self.clock()
        entries = [e for e in self.store.list_reviews() if review_filter.matches(e, now)]
        if review_filter.limit is not None:
            entries = entries[: review_filter.limit]
        return entries

    def get_entry(self, entry_id: int) -> ReviewEntry:
        """
        Raises:
            ReviewEntryNotFoundError: unknown id (or already reviewed)
            ReviewEntryExpiredError: retention horizon passed
        """
        entry = self.store.get_review(entry_id)
        if entry is None:
            raise ReviewEntryNotFoundError(f"Review entry {entry_id} not found")
        if entry.is_expired(self.clock()):
            raise ReviewEntryExpiredError(f"Review entry {entry_id} has expired")
        return entry

    # Verdicts

    def mark_job_related(
        self, entry_id: int, metadata: Optional[Dict] = None, extract: bool = False
    ) -> JobRecord:
        """
        Confirm an entry as job-related and create its JobRecord.

        Args:
            metadata: Optional overrides (company, position, status, notes)
            extract: Ask the extractor for missing fields

        Returns:
            The new JobRecord, or the existing one for that message
        """
        entry = self.get_entry(entry_id)
        record = self._build_record(entry, metadata or {}, extract)

        stored = self.store.insert_job(record)
        if stored is None:
            stored = self.store.get_job_by_message(entry.account, entry.message_id)

        self._close(entry, "job_related")
        self._submit_feedback(entry, True)
        logger.info(f"Review entry {entry_id} confirmed as job ({stored.company})")
        return stored

    def confirm_not_job(self, entry_id: int) -> None:
        entry = self.get_entry(entry_id)
        self._close(entry, "not_job")
        self._submit_feedback(entry, False)
        logger.info(f"Review entry {entry_id} confirmed as not job-related")

    def mark_needs_review(self, entry_id: int) -> ReviewEntry:
        """Keep the entry pending, flag it and push its expiry out."""
        entry = self.get_entry(entry_id)
        entry.flagged = True
        entry.expires_at = entry.expires_at + timedelta(
            days=self.router.retention_days(0.0)
        )
        self.store.update_review(entry)
        return entry

    def bulk_operation(
        self, ids: List[int], operation: str, metadata: Optional[Dict] = None
    ) -> BulkResult:
        """
        Apply one verdict to many entries; each id succeeds or fails on its own.

        Raises:
            ValueError: unknown operation
        """
        if operation not in BULK_OPERATIONS:
            raise ValueError(f"Unknown bulk operation: {operation!r}")

        result = BulkResult(operation=operation)
        for entry_id in ids:
            try:
                job_id = None
                if operation == APPROVE_FOR_EXTRACTION:
                    job_id = self.mark_job_related(entry_id, metadata, extract=True).id
                elif operation == REJECT_AS_NOT_JOB:
                    self.confirm_not_job(entry_id)
                else:
                    self.mark_needs_review(entry_id)
                result.outcomes.append(BulkOutcome(id=entry_id, success=True, job_id=job_id))
            except (ReviewEntryNotFoundError, ReviewEntryExpiredError, PersistenceError) as e:
                logger.warning(f"Bulk {operation} failed for entry {entry_id}: {e}")
                result.outcomes.append(BulkOutcome(id=entry_id, success=False, error=e.code))

        logger.info(
            f"Bulk {operation}: {result.succeeded} succeeded, {result.failed} failed"
        )
        return result

    # Housekeeping

    def get_stats(self) -> Dict[str, int]:
        now = self.clock()
        soon = now + timedelta(hours=self.expiring_soon_hours)
        live = [e for e in self.store.list_reviews() if not e.is_expired(now)]
        reviewed = self.store.count_review_verdicts()
        return {
            "total": len(live) + reviewed,
            "pending": len(live),
            "reviewed": reviewed,
            "expiring_soon": sum(1 for e in live if e.expires_at <= soon),
        }

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_reviews(self.clock())
        if removed:
            logger.info(f"Purged {removed} expired review entries")
        return removed

    # Internals

    def _close(self, entry: ReviewEntry, verdict: str) -> None:
        self.store.log_review_verdict(entry, verdict, self.clock())
        self.store.delete_review(entry.id)

    def _submit_feedback(self, entry: ReviewEntry, is_job: bool) -> None:
        if self.feedback is None:
            return
        self.feedback.submit({
            "message_id": entry.message_id,
            "subject": entry.subject,
            "body": entry.snippet,
            "is_job_related": is_job,
            "predicted": entry.classification.is_job_related,
            "confidence": entry.confidence,
            "source": "review",
        })

    def _extract(self, entry: ReviewEntry) -> Optional[ClassificationResult]:
        if self.extractor is None:
            return None
        try:
            return self.extractor(entry.subject, entry.sender, entry.snippet)
        except JobSyncError as e:
            logger.warning(f"Extraction for review entry {entry.id} failed: {e}")
            return None

    def _build_record(self, entry: ReviewEntry, metadata: Dict, extract: bool) -> JobRecord:
        snapshot = entry.classification
        company = metadata.get("company") or snapshot.company
        position = metadata.get("position") or snapshot.position
        status = JobStatus.parse(metadata.get("status")) or snapshot.status

        if extract and not (company and position and status):
            extracted = self._extract(entry)
            if extracted is not None and extracted.is_job_related:
                company = company or extracted.company
                position = position or extracted.position
                status = status or extracted.status

        text = f"{entry.subject}\n{entry.snippet}"
        company = company or guess_company(entry.sender, entry.subject, entry.snippet) or UNKNOWN
        position = position or guess_position(entry.subject, entry.snippet) or UNKNOWN
        status = status or guess_status(text)

        now = self.clock()
        return JobRecord(
            account=entry.account,
            company=company,
            position=position,
            status=status,
            applied_date=entry.received_at,
            source_message_id=entry.message_id,
            confidence=1.0,
            notes=metadata.get("notes", ""),
            created_at=now,
            updated_at=now,
        )
