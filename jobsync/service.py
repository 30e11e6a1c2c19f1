"""
JobSync service facade.

Wires the pipeline together from configuration and exposes every operation
collaborators use (UI host, scheduler, tests). `handle_message` maps host
protocol messages onto those operations and turns library errors into
structured `{"status": "error", ...}` replies.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .core.accounts import AccountRegistry
from .core.circuit_breaker import CircuitBreaker, get_circuit_breaker
from .core.confidence import ConfidenceRouter
from .core.deep_classifier import DeepClassifier
from .core.digest_filter import DigestFilter
from .core.errors import JobSyncError
from .core.events import EventBus, Listener, Subscription
from .core.fast_classifier import FastClassifier
from .core.feedback_loop import FeedbackLoop
from .core.fetcher import Fetcher, MailTransport, SyncWindow
from .core.models import Account, JobRecord, ReviewEntry, SyncRun, from_iso, utcnow
from .core.orchestrator import SyncOrchestrator
from .core.prompt_engine import PromptManager
from .core.review_queue import BulkResult, ReviewFilter, ReviewQueue
from .providers.base import GenerativeProvider
from .providers.factory import ProviderFactory
from .sources.imap_transport import ImapTransport
from .storage.base import RecordStore
from .storage.sqlite_store import SQLiteStore
from .utils.config import load_config

logger = logging.getLogger(__name__)


def parse_window(payload: Optional[Dict], now: Optional[datetime] = None) -> Optional[SyncWindow]:
    """
    `{"days": n}` or `{"from": iso, "to": iso}` (`to` defaults to now).
    Returns None when neither is given.

    Raises:
        ValueError: malformed window
    """
    payload = payload or {}
    if payload.get("days") is not None:
        return SyncWindow.from_days(int(payload["days"]), now)
    if payload.get("from"):
        return SyncWindow(
            start=from_iso(payload["from"]),
            end=from_iso(payload.get("to")) or now or utcnow(),
        )
    return None


class JobSyncService:
    """
    Usage:
        service = JobSyncService()
        service.add_account("me@example.com", secret="app-password")
        run = await service.sync(window=SyncWindow.from_days(30))
        pending = service.review_get_pending()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        store: Optional[RecordStore] = None,
        transport: Optional[MailTransport] = None,
        provider: Optional[GenerativeProvider] = None,
        breaker: Optional[CircuitBreaker] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or load_config()
        cfg = self.config
        self.clock = clock

        self.store = store or SQLiteStore(cfg.get("database", ":memory:"))
        self.events = events or EventBus()
        self.registry = AccountRegistry(self.store)

        self.transport = transport or ImapTransport(cfg.get("imap"))
        self.fetcher = Fetcher(self.transport, cfg.get("sync"))
        self.digest_filter = DigestFilter()

        self.fast = FastClassifier(cfg.get("fast_classifier"))
        self.feedback = FeedbackLoop(cfg.get("feedback"), self.fast)

        self.prompts = PromptManager(cfg.get("prompt"))
        self.breaker = breaker or get_circuit_breaker(cfg.get("circuit_breaker"))
        self.provider = provider or self._create_provider()
        self.deep: Optional[DeepClassifier] = None
        if self.provider is not None:
            self.deep = DeepClassifier(
                self.provider, self.prompts, self.breaker, cfg.get("deep_classifier")
            )

        self.router = ConfidenceRouter(cfg.get("confidence"), cfg.get("review"))
        self.review = ReviewQueue(
            self.store,
            self.router,
            self.feedback,
            cfg.get("review"),
            extractor=self.deep.classify if self.deep else None,
            clock=clock,
        )
        self.orchestrator = SyncOrchestrator(
            self.registry,
            self.store,
            self.fetcher,
            self.digest_filter,
            self.fast,
            self.deep,
            self.router,
            self.review,
            self.events,
            cfg.get("sync"),
            clock=clock,
        )

    def _create_provider(self) -> Optional[GenerativeProvider]:
        try:
            return ProviderFactory.from_config(self.config)
        except ValueError as e:
            logger.warning(f"Deep classifier disabled: {e}")
            return None

    # Accounts

    def add_account(
        self,
        email: str,
        secret: Optional[str] = None,
        credential_ref: Optional[str] = None,
        sync_enabled: bool = True,
    ) -> Account:
        return self.registry.add_account(email, secret, credential_ref, sync_enabled)

    def remove_account(self, email: str) -> None:
        self.registry.remove_account(email)

    def get_accounts(self) -> List[Account]:
        return self.registry.get_accounts()

    # Sync

    async def sync(
        self,
        accounts: Optional[List[str]] = None,
        window: Optional[SyncWindow] = None,
        max_count: Optional[int] = None,
    ) -> SyncRun:
        """Full pipeline, Deep extraction included."""
        return await self.orchestrator.run_sync(accounts, window, max_count=max_count)

    async def sync_classify_only(
        self,
        window: Optional[SyncWindow] = None,
        accounts: Optional[List[str]] = None,
        max_count: Optional[int] = None,
    ) -> SyncRun:
        """Fetch, classify and fill the review queue without calling the Deep Classifier."""
        return await self.orchestrator.run_sync(
            accounts, window, classify_only=True, max_count=max_count
        )

    def cancel_sync(self) -> bool:
        return self.orchestrator.cancel()

    def get_sync_history(self, limit: int = 20) -> List[SyncRun]:
        return self.store.list_sync_runs(limit)

    def subscribe(self, event: str, callback: Listener) -> Subscription:
        return self.events.subscribe(event, callback)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self.events.unsubscribe(subscription)

    # Review

    def review_get_pending(self, review_filter: Optional[ReviewFilter] = None) -> List[ReviewEntry]:
        return self.review.get_pending(review_filter)

    def review_mark_job_related(self, entry_id: int, metadata: Optional[Dict] = None) -> JobRecord:
        return self.review.mark_job_related(entry_id, metadata)

    def review_confirm_not_job(self, entry_id: int) -> None:
        self.review.confirm_not_job(entry_id)

    def review_get_stats(self) -> Dict[str, int]:
        return self.review.get_stats()

    def review_purge_expired(self) -> int:
        """Delete expired entries now; a sync also does this when it starts."""
        return self.review.purge_expired()

    def bulk_operation(
        self, ids: List[int], operation: str, metadata: Optional[Dict] = None
    ) -> BulkResult:
        return self.review.bulk_operation(ids, operation, metadata)

    # Fast classifier

    def ml_get_stats(self) -> Dict:
        stats = self.fast.get_stats()
        stats["feedback"] = self.feedback.get_stats()
        if self.deep is not None:
            stats["deep_cache"] = self.deep.cache.stats()
        return stats

    def ml_retrain(self) -> Dict:
        trained = self.fast.retrain()
        return {"trained": trained, "stats": self.fast.get_stats()}

    def ml_submit_feedback(self, correction: Dict) -> Dict:
        self.feedback.submit(correction)
        return self.feedback.get_stats()

    def ml_export_training_data(self, output_file: Optional[str] = None) -> Optional[str]:
        return self.feedback.export_training_data(output_file)

    # Circuit breaker and prompt

    def get_circuit_breaker_status(self) -> Dict:
        return self.breaker.status().to_dict()

    def reset_circuit_breaker(self) -> Dict:
        self.breaker.reset()
        return self.get_circuit_breaker_status()

    def get_token_info(self, prompt_text: Optional[str] = None) -> Dict:
        return self.prompts.get_token_info(prompt_text).to_dict()

    def get_prompt(self) -> Dict:
        return self.prompts.get_prompt()

    def set_prompt(self, text: str) -> Dict:
        return self.prompts.set_prompt(text)

    def reset_prompt(self) -> Dict:
        return self.prompts.reset_prompt()

    # Job records

    def list_jobs(self, limit: Optional[int] = None) -> List[JobRecord]:
        return self.store.list_jobs(limit)

    def update_job(self, job_id: int, **changes: Any) -> Optional[JobRecord]:
        return self.store.update_job(job_id, changes)

    def delete_job(self, job_id: int) -> bool:
        return self.store.delete_job(job_id)

    def health(self) -> Dict:
        provider_ok = self.provider.health_check() if self.provider else False
        return {
            "status": "ok" if provider_ok else "degraded",
            "provider": self.provider.get_name() if self.provider else None,
            "provider_healthy": provider_ok,
            "circuit_breaker": self.get_circuit_breaker_status(),
            "sync": self.orchestrator.status(),
            "listeners": self.events.listener_count(),
        }

    def close(self) -> None:
        self.transport.close()
        self.store.close()

    # Host protocol

    async def handle_message(self, message: Dict) -> Dict:
        """
        Dispatch one host message (`{"type", "id"?, "payload"?}`).

        Returns `{"status": "ok", "result": ...}` or
        `{"status": "error", "error": ..., "code": ...}`; the request id is
        echoed back when present.
        """
        msg_type = message.get("type")
        payload = message.get("payload") or {}
        handler = self._handlers().get(msg_type)

        if handler is None:
            reply = {"status": "error", "error": f"Unknown message type: {msg_type}",
                     "code": "unknown_type"}
        else:
            try:
                reply = {"status": "ok", "result": await handler(payload)}
            except JobSyncError as e:
                logger.warning(f"{msg_type} failed: {e}")
                reply = {"status": "error", "error": str(e), "code": e.code}
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Invalid {msg_type} request: {e}")
                reply = {"status": "error", "error": str(e), "code": "invalid_request"}

        if "id" in message:
            reply["id"] = message["id"]
        return reply

    def _handlers(self) -> Dict[str, Callable[[Dict], Awaitable[Any]]]:
        return {
            "ping": self._on_ping,
            "health": self._on_health,
            "addAccount": self._on_add_account,
            "removeAccount": self._on_remove_account,
            "getAccounts": self._on_get_accounts,
            "sync": self._on_sync,
            "syncClassifyOnly": self._on_sync_classify_only,
            "cancelSync": self._on_cancel_sync,
            "getSyncHistory": self._on_sync_history,
            "review.getPending": self._on_review_pending,
            "review.markJobRelated": self._on_review_mark_job,
            "review.confirmNotJob": self._on_review_not_job,
            "review.getStats": self._on_review_stats,
            "review.purgeExpired": self._on_review_purge,
            "bulkOperation": self._on_bulk_operation,
            "ml.getStats": self._on_ml_stats,
            "ml.retrain": self._on_ml_retrain,
            "ml.submitFeedback": self._on_ml_feedback,
            "ml.exportTrainingData": self._on_ml_export,
            "getCircuitBreakerStatus": self._on_breaker_status,
            "resetCircuitBreaker": self._on_breaker_reset,
            "getTokenInfo": self._on_token_info,
            "getPrompt": self._on_get_prompt,
            "setPrompt": self._on_set_prompt,
            "resetPrompt": self._on_reset_prompt,
            "listJobs": self._on_list_jobs,
            "updateJob": self._on_update_job,
            "deleteJob": self._on_delete_job,
        }

    async def _on_ping(self, payload: Dict) -> str:
        return "pong"

    async def _on_health(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.health)

    async def _on_add_account(self, payload: Dict) -> Dict:
        account = await asyncio.to_thread(
            self.add_account,
            payload["email"],
            secret=payload.get("secret"),
            credential_ref=payload.get("credential_ref"),
            sync_enabled=payload.get("sync_enabled", True),
        )
        return account.to_dict()

    async def _on_remove_account(self, payload: Dict) -> bool:
        await asyncio.to_thread(self.remove_account, payload["email"])
        return True

    async def _on_get_accounts(self, payload: Dict) -> List[Dict]:
        return [a.to_dict() for a in await asyncio.to_thread(self.get_accounts)]

    async def _on_sync(self, payload: Dict) -> Dict:
        window = parse_window(payload.get("window"), self.clock())
        run = await self.sync(payload.get("accounts"), window, payload.get("max_count"))
        return run.to_dict()

    async def _on_sync_classify_only(self, payload: Dict) -> Dict:
        window = parse_window(payload.get("window"), self.clock())
        run = await self.sync_classify_only(window, payload.get("accounts"), payload.get("max_count"))
        return run.to_dict()

    async def _on_cancel_sync(self, payload: Dict) -> bool:
        return self.cancel_sync()

    async def _on_sync_history(self, payload: Dict) -> List[Dict]:
        runs = await asyncio.to_thread(self.get_sync_history, payload.get("limit", 20))
        return [r.to_dict() for r in runs]

    async def _on_review_pending(self, payload: Dict) -> List[Dict]:
        review_filter = ReviewFilter.from_dict(payload.get("filter"))
        return [e.to_dict() for e in await asyncio.to_thread(self.review_get_pending, review_filter)]

    async def _on_review_mark_job(self, payload: Dict) -> Dict:
        record = await asyncio.to_thread(
            self.review_mark_job_related, payload["id"], payload.get("metadata")
        )
        return record.to_dict()

    async def _on_review_not_job(self, payload: Dict) -> bool:
        await asyncio.to_thread(self.review_confirm_not_job, payload["id"])
        return True

    async def _on_review_stats(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.review_get_stats)

    async def _on_review_purge(self, payload: Dict) -> Dict:
        return {"purged": await asyncio.to_thread(self.review_purge_expired)}

    async def _on_bulk_operation(self, payload: Dict) -> Dict:
        # approve_for_extraction may call the Deep Classifier
        result = await asyncio.to_thread(
            self.bulk_operation, payload["ids"], payload["operation"], payload.get("metadata")
        )
        return result.to_dict()

    async def _on_ml_stats(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.ml_get_stats)

    async def _on_ml_retrain(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.ml_retrain)

    async def _on_ml_feedback(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.ml_submit_feedback, payload["correction"])

    async def _on_ml_export(self, payload: Dict) -> Dict:
        path = await asyncio.to_thread(self.ml_export_training_data, payload.get("output_file"))
        return {"path": path}

    async def _on_breaker_status(self, payload: Dict) -> Dict:
        return self.get_circuit_breaker_status()

    async def _on_breaker_reset(self, payload: Dict) -> Dict:
        return self.reset_circuit_breaker()

    async def _on_token_info(self, payload: Dict) -> Dict:
        return self.get_token_info(payload.get("prompt"))

    async def _on_get_prompt(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.get_prompt)

    async def _on_set_prompt(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.set_prompt, payload["prompt"])

    async def _on_reset_prompt(self, payload: Dict) -> Dict:
        return await asyncio.to_thread(self.reset_prompt)

    async def _on_list_jobs(self, payload: Dict) -> List[Dict]:
        return [j.to_dict() for j in await asyncio.to_thread(self.list_jobs, payload.get("limit"))]

    async def _on_update_job(self, payload: Dict) -> Optional[Dict]:
        record = await asyncio.to_thread(self.update_job, payload["id"], **payload.get("changes", {}))
        return record.to_dict() if record else None

    async def _on_delete_job(self, payload: Dict) -> bool:
        return await asyncio.to_thread(self.delete_job, payload["id"])
