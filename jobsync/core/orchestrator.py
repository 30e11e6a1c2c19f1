"""
Sync orchestrator - the ingestion pipeline.

Per account: Fetch -> skip processed -> Digest Filter -> batches of
(Fast Classifier -> Deep Classifier when ambiguous -> Confidence Router ->
job record / review entry) -> advance watermark, held at the earliest email
that failed so the next run fetches it again.

A single run is active per process. Counters live on the event loop; worker
threads only classify and write. Cancellation is checked between pages and
between batches, never inside a classification or a write.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..storage.base import RecordStore
from .accounts import AccountRegistry
from .batch_processor import BatchProcessor, ItemOutcome
from .cancellation import CancellationToken
from .confidence import ConfidenceRouter
from .deep_classifier import DeepClassifier
from .digest_filter import DigestFilter
from .errors import (
    BreakerOpenError,
    CancellationRequested,
    ClassifierFormatError,
    JobSyncError,
    PersistenceError,
    PromptBudgetError,
    ProviderError,
    SyncInProgressError,
)
from .events import (
    JOB_FOUND,
    JOB_UPDATED,
    SYNC_ACTIVITY,
    SYNC_COMPLETE,
    SYNC_ERROR,
    SYNC_PROGRESS,
    EventBus,
)
from .fast_classifier import FastClassifier
from .fetcher import Fetcher, SyncWindow
from .heuristics import guess_company, guess_position, guess_status
from .models import (
    Account,
    ClassificationResult,
    ClassificationSource,
    JobRecord,
    JobStatus,
    RawEmail,
    Route,
    SyncPhase,
    SyncRun,
    SyncStatus,
    utcnow,
)
from .review_queue import UNKNOWN, ReviewQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classified:
    """Classification of one email plus how it was obtained."""
    email: RawEmail
    result: ClassificationResult
    deep_attempted: bool = False
    fallback: Optional[str] = None  # error code when Deep was skipped or failed


@dataclass(frozen=True)
class Persisted:
    route: Route
    record: Optional[JobRecord] = None
    duplicate: bool = False
    matched: bool = False  # folded into an existing application


class SyncOrchestrator:
    """
    Usage:
        orchestrator = SyncOrchestrator(registry, store, fetcher, DigestFilter(),
                                        fast, deep, router, queue, bus, config["sync"])
        run = await orchestrator.run_sync(window=SyncWindow.from_days(30))
        orchestrator.cancel()   # from another thread or task
    """

    def __init__(
        self,
        registry: AccountRegistry,
        store: RecordStore,
        fetcher: Fetcher,
        digest_filter: DigestFilter,
        fast: FastClassifier,
        deep: Optional[DeepClassifier],
        router: ConfidenceRouter,
        review_queue: ReviewQueue,
        events: EventBus,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            deep: None runs every sync in classify-only mode
            config: Sync configuration with:
                - batch_size: Emails per batch (default: 25)
                - max_workers: Concurrent classifications (default: 4)
                - default_days: Window for never-synced accounts (default: 90)
                - max_emails: Per-account fetch cap (default: 500)
                - match_window_days: How far back an email can update an
                  existing application (default: 90)
        """
        config = config or {}
        self.registry = registry
        self.store = store
        self.fetcher = fetcher
        self.digest_filter = digest_filter
        self.fast = fast
        self.deep = deep
        self.router = router
        self.review_queue = review_queue
        self.events = events
        self.clock = clock

        self.default_days = config.get("default_days", 90)
        self.max_emails = config.get("max_emails", 500)
        self.match_window = timedelta(days=config.get("match_window_days", 90))
        self.batch_processor = BatchProcessor(config)

        self.phase = SyncPhase.IDLE
        self.last_run: Optional[SyncRun] = None
        self._run_lock = threading.Lock()
        self._token: Optional[CancellationToken] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> bool:
        """Request cooperative cancellation. False when nothing is running."""
        token = self._token
        if token is None:
            return False
        token.cancel()
        logger.info("Sync cancellation requested")
        return True

    def status(self) -> Dict:
        return {
            "running": self.is_running,
            "phase": self.phase.value,
            "last_run": self.last_run.to_dict() if self.last_run else None,
        }

    async def run_sync(
        self,
        accounts: Optional[List[str]] = None,
        window: Optional[SyncWindow] = None,
        classify_only: bool = False,
        max_count: Optional[int] = None,
    ) -> SyncRun:
        """
        Run the pipeline over `accounts` (default: every sync-enabled account).

        Args:
            window: Shared time window; None = from each account's watermark
                (or `default_days` back) up to now
            classify_only: Never call the Deep Classifier; unresolved emails
                go to review with the Fast Classifier snapshot
            max_count: Per-account fetch cap (default: `max_emails`)

        Raises:
            SyncInProgressError: another run is active
        """
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already running")

        token = CancellationToken()
        self._token = token
        try:
            run = await self._run(accounts, window, classify_only or self.deep is None,
                                  max_count or self.max_emails, token)
            self.last_run = run
            return run
        finally:
            self._token = None
            self._run_lock.release()

    async def _run(
        self,
        emails: Optional[List[str]],
        window: Optional[SyncWindow],
        classify_only: bool,
        max_count: int,
        token: CancellationToken,
    ) -> SyncRun:
        now = self.clock()
        run = SyncRun(accounts=list(emails or []), classify_only=classify_only, started_at=now)
        self._set_phase(SyncPhase.IDLE)

        try:
            accounts = await asyncio.to_thread(self.registry.resolve, emails)
            run.accounts = [a.email for a in accounts]
            windows = {a.email: window or self._default_window(a, now) for a in accounts}
            if windows:
                run.window_start = min(w.start for w in windows.values())
                run.window_end = max(w.end for w in windows.values())
            await asyncio.to_thread(self.store.save_sync_run, run)
            await asyncio.to_thread(self.review_queue.purge_expired)

            logger.info(
                f"Sync started for {len(accounts)} account(s)"
                f"{' (classify only)' if classify_only else ''}"
            )
            self._activity("info", f"Starting sync of {len(accounts)} account(s)")

            for index, account in enumerate(accounts):
                token.raise_if_cancelled()
                try:
                    await self._sync_account(
                        run, account, index, len(accounts),
                        windows[account.email], classify_only, max_count, token,
                    )
                except CancellationRequested:
                    raise
                except JobSyncError as e:
                    self._account_failed(run, account, e)
                except Exception as e:
                    logger.exception(f"{account.email}: unexpected sync failure")
                    self._account_failed(run, account, e)

            if accounts and len(run.account_errors) == len(accounts):
                run.status = SyncStatus.ERROR
                run.error = "Every account failed to sync"
            else:
                run.status = SyncStatus.SUCCESS

        except CancellationRequested:
            run.status = SyncStatus.CANCELLED
            logger.info("Sync cancelled")
            self._activity("warning", "Sync cancelled")
        except Exception as e:
            run.status = SyncStatus.ERROR
            run.error = str(e)
            logger.error(f"Sync aborted: {e}")

        run.finished_at = self.clock()
        try:
            await asyncio.to_thread(self.store.save_sync_run, run)
        except PersistenceError as e:
            logger.error(f"Could not save sync run: {e}")

        self._finish(run)
        return run

    def _default_window(self, account: Account, now: datetime) -> SyncWindow:
        start = account.last_synced_at or now - timedelta(days=self.default_days)
        return SyncWindow(start=min(start, now), end=now)

    def _account_failed(self, run: SyncRun, account: Account, error: Exception) -> None:
        run.account_errors[account.email] = str(error)
        logger.warning(f"{account.email}: sync failed, continuing: {error}")
        self._activity("error", f"{account.email}: {error}", {"account": account.email})

    def _finish(self, run: SyncRun) -> None:
        counts = run.counts
        if run.status is SyncStatus.ERROR:
            self._set_phase(SyncPhase.ERROR)
            self.events.publish(SYNC_ERROR, {"message": run.error, "run": run.to_dict()})
            return

        self._set_phase(
            SyncPhase.CANCELLED if run.status is SyncStatus.CANCELLED else SyncPhase.COMPLETE
        )
        logger.info(
            f"Sync {run.status.value}: fetched={counts.fetched} skipped={counts.skipped} "
            f"digests={counts.digests_filtered} classified={counts.classified} "
            f"jobs={counts.jobs_found} updated={counts.jobs_updated} review={counts.needs_review} "
            f"rejected={counts.auto_rejected} errors={counts.errors} "
            f"in {run.duration_seconds:.1f}s"
        )
        self.events.publish(SYNC_COMPLETE, {
            "status": run.status.value,
            "emailsFetched": counts.fetched,
            "emailsSkipped": counts.skipped,
            "jobsFound": counts.jobs_found,
            "jobsUpdated": counts.jobs_updated,
            "digestsFiltered": counts.digests_filtered,
            "needsReview": counts.needs_review,
            "syncDuration": round(run.duration_seconds, 3),
            "run": run.to_dict(),
        })

    # Per account

    async def _sync_account(
        self,
        run: SyncRun,
        account: Account,
        index: int,
        total: int,
        window: SyncWindow,
        classify_only: bool,
        max_count: int,
        token: CancellationToken,
    ) -> None:
        counts = run.counts
        self._set_phase(SyncPhase.FETCHING)
        self._progress(index, total, f"Fetching {account.email}", account.email)

        fetched = await self.fetcher.fetch(account, window, max_count, token)
        counts.fetched += len(fetched)

        processed = await asyncio.to_thread(self.store.processed_ids, account.email)
        fresh = [e for e in fetched if e.message_id not in processed]
        counts.skipped += len(fetched) - len(fresh)

        kept, digests = self.digest_filter.split(fresh)
        counts.digests_filtered += len(digests)
        if digests:
            await asyncio.to_thread(self._mark_digests, account.email, digests)

        batch_total = self.batch_processor.batch_count(len(kept))
        self._activity(
            "info",
            f"{account.email}: {len(fetched)} fetched, {len(fetched) - len(fresh)} already "
            f"processed, {len(digests)} digests filtered, {len(kept)} to classify",
            {
                "account": account.email,
                "digest_reasons": self.digest_filter.statistics(digests)["by_reason"],
                "batches": batch_total,
            },
        )

        done = 0
        failed: List[RawEmail] = []
        for batch_number, batch in enumerate(self.batch_processor.batches(kept), start=1):
            token.raise_if_cancelled()
            self._set_phase(SyncPhase.CLASSIFYING)

            def _item_done(outcome: ItemOutcome) -> None:
                nonlocal done
                done += 1
                self._progress(index, total, f"Classifying {account.email}",
                               account.email, done, len(kept))

            report = await self.batch_processor.run(
                batch, lambda email: self._classify(email, classify_only), _item_done
            )

            self._set_phase(SyncPhase.SAVING)
            for outcome in report.outcomes:
                if not outcome.ok:
                    counts.errors += 1
                    failed.append(outcome.item)
                    self._activity("warning", f"Classification failed: {outcome.error}",
                                   {"account": account.email})
                    continue
                if not await self._persist(run, outcome.result):
                    failed.append(outcome.item)
            logger.debug(f"{account.email}: batch {batch_number}/{batch_total} done")

        await asyncio.to_thread(
            self.registry.advance_watermark, account.email, self._watermark(window, failed)
        )
        self._progress(index + 1, total, f"Finished {account.email}", account.email,
                       len(kept), len(kept))
        logger.info(f"{account.email}: synced")

    @staticmethod
    def _watermark(window: SyncWindow, failed: List[RawEmail]) -> datetime:
        """End of the window, held back to the earliest email that did not make it."""
        if not failed:
            return window.end
        earliest = min(e.received_at for e in failed)
        logger.warning(
            f"{len(failed)} email(s) failed; watermark held at {earliest.isoformat()} for retry"
        )
        return min(window.end, earliest)

    def _mark_digests(self, account: str, digests: List[RawEmail]) -> None:
        for email in digests:
            self.store.mark_processed(account, email.message_id, "digest")

    # Classification (worker threads)

    def _classify(self, email: RawEmail, classify_only: bool) -> Classified:
        verdict = self.fast.classify(email.text)
        fast_result = self._fast_result(email, verdict.is_job_related, verdict.confidence)

        if self.router.can_auto_approve(verdict.confidence) or classify_only:
            return Classified(email=email, result=fast_result)

        try:
            result = self.deep.classify(email.subject, email.sender, email.body)
            return Classified(email=email, result=result, deep_attempted=True)
        except (BreakerOpenError, PromptBudgetError) as e:
            logger.debug(f"Deep classification skipped for {email.message_id}: {e.code}")
            return Classified(email=email, result=fast_result, fallback=e.code)
        except (ClassifierFormatError, ProviderError) as e:
            return Classified(email=email, result=fast_result, deep_attempted=True,
                              fallback=e.code)

    @staticmethod
    def _fast_result(email: RawEmail, is_job: bool, confidence: float) -> ClassificationResult:
        if not is_job:
            return ClassificationResult(
                is_job_related=False, confidence=confidence, source=ClassificationSource.FAST
            )
        return ClassificationResult(
            is_job_related=True,
            company=guess_company(email.sender, email.subject, email.body),
            position=guess_position(email.subject, email.body),
            status=guess_status(email.text),
            confidence=confidence,
            source=ClassificationSource.FAST,
        )

    # Persistence

    async def _persist(self, run: SyncRun, classified: Classified) -> bool:
        """False when the result could not be saved."""
        counts = run.counts
        email = classified.email
        counts.classified += 1
        if classified.deep_attempted:
            counts.deep_calls += 1
        if classified.fallback:
            self._activity(
                "warning",
                f"Deep classification unavailable ({classified.fallback}), sent to review",
                {"account": email.account, "message_id": email.message_id},
            )

        try:
            persisted = await asyncio.to_thread(self._write, classified)
        except PersistenceError as e:
            counts.errors += 1
            logger.warning(f"Could not persist {email.message_id}: {e}")
            self._activity("error", f"Could not save a result: {e}", {"account": email.account})
            return False

        if persisted.duplicate:
            counts.skipped += 1
        elif persisted.matched:
            counts.jobs_updated += 1
            self.events.publish(JOB_UPDATED, {"record": persisted.record.to_dict()})
            self._activity(
                "info",
                f"Updated: {persisted.record.company} - {persisted.record.position} "
                f"({persisted.record.status.value})",
                {"account": email.account},
            )
        elif persisted.route is Route.AUTO_ACCEPT:
            counts.jobs_found += 1
            self.events.publish(JOB_FOUND, {"record": persisted.record.to_dict()})
            self._activity(
                "success",
                f"Found: {persisted.record.company} - {persisted.record.position}",
                {"account": email.account},
            )
        elif persisted.route is Route.NEEDS_REVIEW:
            counts.needs_review += 1
        else:
            counts.auto_rejected += 1
        return True

    def _write(self, classified: Classified) -> Persisted:
        email = classified.email
        result = classified.result
        decision = self.router.route(result)

        persisted = Persisted(route=decision.route)
        if decision.route is Route.AUTO_ACCEPT:
            status = result.status or guess_status(email.text)
            existing = self._matching_application(email, result)
            if existing is not None:
                persisted = self._update_application(existing, email, status)
                self.store.mark_processed(email.account, email.message_id, decision.route.value)
                return persisted

            now = self.clock()
            record = self.store.insert_job(JobRecord(
                account=email.account,
                company=result.company or UNKNOWN,
                position=result.position or UNKNOWN,
                status=status,
                applied_date=email.received_at,
                source_message_id=email.message_id,
                confidence=result.confidence,
                created_at=now,
                updated_at=now,
            ))
            persisted = Persisted(route=decision.route, record=record, duplicate=record is None)
        elif decision.route is Route.NEEDS_REVIEW:
            entry = self.review_queue.enqueue(email, result)
            persisted = Persisted(route=decision.route, duplicate=entry is None)

        self.store.mark_processed(email.account, email.message_id, decision.route.value)
        return persisted

    def _matching_application(
        self, email: RawEmail, result: ClassificationResult
    ) -> Optional[JobRecord]:
        """Earlier record of the same application; needs a known company and position."""
        if not result.company or not result.position:
            return None
        if UNKNOWN in (result.company, result.position):
            return None
        return self.store.find_job(
            email.account, result.company, result.position,
            since=email.received_at - self.match_window,
        )

    def _update_application(
        self, existing: JobRecord, email: RawEmail, status: JobStatus
    ) -> Persisted:
        if existing.source_message_id == email.message_id:
            return Persisted(route=Route.AUTO_ACCEPT, record=existing, duplicate=True)

        changes: Dict = {}
        if status.supersedes(existing.status):
            changes["status"] = status
        if email.received_at < existing.applied_date:
            changes["applied_date"] = email.received_at
        record = existing
        if changes:
            record = self.store.update_job(existing.id, changes) or existing
            logger.info(
                f"Job {existing.id} updated from {email.message_id}: "
                f"{existing.status.value} -> {record.status.value}"
            )
        return Persisted(route=Route.AUTO_ACCEPT, record=record, matched=True)

    # Events

    def _set_phase(self, phase: SyncPhase) -> None:
        if phase is not self.phase:
            logger.debug(f"Sync phase: {self.phase.value} -> {phase.value}")
        self.phase = phase

    def _progress(
        self,
        current: int,
        total: int,
        status: str,
        details: str = "",
        email_current: int = 0,
        email_total: int = 0,
    ) -> None:
        self.events.publish(SYNC_PROGRESS, {
            "current": current,
            "total": total,
            "phase": self.phase.value,
            "status": status,
            "details": details,
            "emailProgress": {"current": email_current, "total": email_total},
        })

    def _activity(self, kind: str, message: str, details: Optional[Dict] = None) -> None:
        self.events.publish(SYNC_ACTIVITY, {
            "type": kind,
            "message": message,
            "details": details or {},
        })
