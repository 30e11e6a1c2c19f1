"""
Integration tests: the whole ingestion pipeline wired by JobSyncService.

Only the mail transport and the generative backend are scripted. The Fast
Classifier runs untrained (keyword heuristics, never confident enough to
auto-approve), so every non-digest email reaches the Deep Classifier.
"""

import json
import re

import pytest

from jobsync.core.circuit_breaker import CircuitBreaker, CircuitState
from jobsync.core.errors import ProviderError
from jobsync.core.fetcher import SyncWindow
from jobsync.core.models import SyncStatus
from jobsync.service import JobSyncService

ME = "me@example.com"
WORK = "work@example.com"
COMPANIES = ("Initech", "Globex", "Umbrella")


def scripted_answer(prompt):
    job = re.search(r"DEEPJOB (\w+)", prompt)
    if job:
        return json.dumps({
            "is_job_related": True,
            "company": job.group(1),
            "position": "Engineer",
            "status": "Applied",
        })
    if "DEEPMAYBE" in prompt:
        return json.dumps({
            "is_job_related": True, "company": None, "position": None, "status": None,
        })
    return json.dumps({
        "is_job_related": False, "company": None, "position": None, "status": None,
    })


class TestSyncPipeline:

    @pytest.fixture(autouse=True)
    def setup(self, test_config, tmp_path, transport, clock, fake_time, make_email, scripted_provider):
        test_config["database"] = str(tmp_path / "jobsync.db")
        self.config = test_config
        self.transport = transport
        self.clock = clock
        self.fake_time = fake_time
        self.make_email = make_email
        self.provider = scripted_provider(default=scripted_answer)
        self.breaker = CircuitBreaker(clock=fake_time)
        self.services = []
        self.window = SyncWindow.from_days(7, clock())
        yield
        for service in self.services:
            service.close()

    def _service(self, **sync_overrides):
        self.config["sync"].update(sync_overrides)
        service = JobSyncService(
            self.config,
            transport=self.transport,
            provider=self.provider,
            breaker=self.breaker,
            clock=self.clock,
        )
        self.services.append(service)
        return service

    def _seed(self, account):
        """Ten emails: three jobs, one ambiguous, three personal, three digests."""
        for company in COMPANIES:
            self.transport.add(self.make_email(
                f"DEEPJOB {company} update", "Following up on our conversation.",
                f"recruiting@{company.lower()}.com", account,
            ))
        self.transport.add(
            self.make_email("DEEPMAYBE hello", "Let me know.", "someone@gmail.com", account),
            self.make_email("Dinner on Friday", "Bring dessert.", "friend@example.net", account),
            self.make_email("Book club", "Chapter five tonight.", "club@example.net", account),
            self.make_email("Garden plans", "Tomatoes are in.", "neighbor@example.net", account),
            self.make_email("Weekly roundup", "Fresh listings.", "alerts@ziprecruiter.com", account),
            self.make_email("Your Tuesday picks", "Hand picked.", "alerts@monster.com", account),
            self.make_email("Fresh this week", "Take a look.", "digest@dice.com", account),
        )

    def _collect(self, service, event):
        seen = []
        service.subscribe(event, lambda name, payload: seen.append(payload))
        return seen

    @pytest.mark.asyncio
    async def test_two_accounts_end_to_end(self):
        service = self._service()
        service.add_account(ME)
        service.add_account(WORK)
        self._seed(ME)
        self._seed(WORK)
        found = self._collect(service, "job-found")
        complete = self._collect(service, "sync-complete")

        run = await service.sync(window=self.window)

        assert run.status is SyncStatus.SUCCESS
        counts = run.counts
        assert counts.fetched == 20
        assert counts.digests_filtered == 6
        assert counts.classified == 14
        assert counts.jobs_found == 6
        assert counts.needs_review == 2
        assert counts.auto_rejected == 6
        assert counts.deep_calls == 14

        jobs = service.list_jobs()
        assert sorted((j.account, j.company) for j in jobs) == sorted(
            (a, c) for a in (ME, WORK) for c in COMPANIES
        )
        assert {j.position for j in jobs} == {"Engineer"}
        assert len(found) == 6

        assert len(complete) == 1
        assert complete[0]["emailsFetched"] == 20
        assert complete[0]["digestsFiltered"] == 6

        pending = service.review_get_pending()
        assert [(e.account, e.subject) for e in pending] == [
            (ME, "DEEPMAYBE hello"), (WORK, "DEEPMAYBE hello"),
        ]
        for account in service.get_accounts():
            assert account.last_synced_at == self.window.end

    @pytest.mark.asyncio
    async def test_rerun_processes_nothing_twice(self):
        service = self._service()
        service.add_account(ME)
        self._seed(ME)
        await service.sync(window=self.window)
        calls = self.provider.calls

        run = await service.sync(window=self.window)

        assert run.counts.fetched == 10
        assert run.counts.skipped == 10
        assert run.counts.classified == 0
        assert self.provider.calls == calls
        assert len(service.list_jobs()) == 3
        assert len(service.review_get_pending()) == 1
        assert [r.id for r in service.get_sync_history()] == [2, 1]

    @pytest.mark.asyncio
    async def test_state_survives_restart(self):
        first = self._service()
        first.add_account(ME, secret="app-password")
        self._seed(ME)
        await first.sync(window=self.window)
        first.close()
        self.services.remove(first)

        second = self._service()
        assert [a.email for a in second.get_accounts()] == [ME]
        run = await second.sync(window=self.window)

        assert run.counts.skipped == 10
        assert len(second.list_jobs()) == 3
        assert len(second.get_sync_history()) == 2

    @pytest.mark.asyncio
    async def test_cancel_then_resume(self):
        """A cancelled run keeps its saved work and a later run completes the rest."""
        service = self._service(batch_size=2, max_workers=1)
        service.add_account(ME)
        self._seed(ME)
        subscription = service.subscribe("job-found", lambda name, payload: service.cancel_sync())

        cancelled = await service.sync(window=self.window)

        assert cancelled.status is SyncStatus.CANCELLED
        assert cancelled.counts.jobs_found == 2
        assert service.get_accounts()[0].last_synced_at is None

        service.unsubscribe(subscription)
        resumed = await service.sync(window=self.window)

        assert resumed.status is SyncStatus.SUCCESS
        assert resumed.counts.jobs_found == 1
        jobs = service.list_jobs()
        assert len(jobs) == 3
        assert len({j.source_message_id for j in jobs}) == 3
        assert [r.status for r in service.get_sync_history()] == [
            SyncStatus.SUCCESS, SyncStatus.CANCELLED,
        ]

    @pytest.mark.asyncio
    async def test_breaker_fallback_and_recovery(self):
        """An unreachable model sends ambiguous mail to review until the breaker recovers."""
        self.breaker = CircuitBreaker(max_failures=2, cooldown_seconds=30, clock=self.fake_time)
        self.provider.default = ProviderError("connection refused")
        service = self._service(max_workers=1)
        service.add_account(ME)
        self._seed(ME)

        run = await service.sync(window=self.window)

        assert run.status is SyncStatus.SUCCESS
        assert run.counts.deep_calls == 2
        assert run.counts.needs_review == 7
        assert run.counts.jobs_found == 0
        assert self.provider.calls == 2
        assert service.get_circuit_breaker_status()["state"] == "open"

        self.provider.default = scripted_answer
        self.fake_time.advance(31)
        self.transport.add(self.make_email(
            "DEEPJOB Hooli update", "Following up.", "recruiting@hooli.com", ME,
        ))

        run = await service.sync(window=self.window)

        assert run.counts.jobs_found == 1
        assert service.list_jobs()[0].company == "Hooli"
        assert self.breaker.status().state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_one_account_down(self):
        service = self._service()
        service.add_account(ME)
        service.add_account(WORK)
        self._seed(ME)
        self._seed(WORK)
        self.transport.failing_accounts.add(WORK)

        run = await service.sync(window=self.window)

        assert run.status is SyncStatus.SUCCESS
        assert list(run.account_errors) == [WORK]
        assert run.counts.jobs_found == 3
        watermarks = {a.email: a.last_synced_at for a in service.get_accounts()}
        assert watermarks == {ME: self.window.end, WORK: None}

    @pytest.mark.asyncio
    async def test_every_account_down(self):
        service = self._service()
        service.add_account(ME)
        errors = self._collect(service, "sync-error")
        self.transport.failing_accounts.add(ME)

        run = await service.sync(window=self.window)

        assert run.status is SyncStatus.ERROR
        assert len(errors) == 1
        assert service.orchestrator.status()["phase"] == "error"
