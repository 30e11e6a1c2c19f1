"""
Integration tests: classify-only sync, human review and the feedback loop
feeding the Fast Classifier.
"""

import json
import os
import re
from datetime import timedelta

import pytest

from jobsync.core.circuit_breaker import CircuitBreaker
from jobsync.core.fast_classifier import FastClassifier
from jobsync.core.fetcher import SyncWindow
from jobsync.core.review_queue import (
    APPROVE_FOR_EXTRACTION,
    MARK_NEEDS_REVIEW,
    REJECT_AS_NOT_JOB,
)
from jobsync.service import JobSyncService

ME = "me@example.com"

JOB_TEXTS = [
    "Interview invitation for the backend engineer position",
    "Thank you for your application to the data analyst role",
    "We would like to schedule a phone screen with the recruiter",
    "Your candidacy for the platform engineer opening",
]
PERSONAL_TEXTS = [
    "Your order has shipped and the invoice is attached",
    "Dinner at grandma's on Sunday, bring the kids",
    "Monthly statement for your checking account",
    "Photos from the hiking trip last weekend",
]


def extraction_answer(prompt):
    job = re.search(r"DEEPJOB (\w+)", prompt)
    return json.dumps({
        "is_job_related": bool(job),
        "company": job.group(1) if job else None,
        "position": "Engineer" if job else None,
        "status": "Applied" if job else None,
    })


class TestReviewWorkflow:

    @pytest.fixture(autouse=True)
    def setup(self, test_config, transport, clock, fake_time, make_email, scripted_provider):
        self.config = test_config
        self.clock = clock
        self.provider = scripted_provider(default=extraction_answer)
        self.service = JobSyncService(
            test_config,
            transport=transport,
            provider=self.provider,
            breaker=CircuitBreaker(clock=fake_time),
            clock=clock,
        )
        self.service.add_account(ME)
        transport.add(
            make_email("DEEPJOB Initech update", "Following up on our call.", "recruiting@initech.com"),
            make_email("DEEPJOB Globex update", "Following up on our call.", "talent@globex.com"),
            make_email("DEEPMAYBE hello", "Let me know.", "someone@gmail.com"),
            make_email("Dinner on Friday", "Bring dessert.", "friend@example.net"),
            make_email("Book club", "Chapter five tonight.", "club@example.net"),
        )
        yield
        self.service.close()

    async def _classify_only(self):
        run = await self.service.sync_classify_only()
        entries = self.service.review_get_pending()
        return run, {e.subject: e for e in entries}

    @pytest.mark.asyncio
    async def test_classify_only_fills_queue(self):
        run, entries = await self._classify_only()

        assert run.classify_only is True
        assert run.counts.needs_review == 5
        assert self.provider.calls == 0
        assert set(entries) == {
            "DEEPJOB Initech update", "DEEPJOB Globex update", "DEEPMAYBE hello",
            "Dinner on Friday", "Book club",
        }
        # Fast Classifier snapshot travels with the entry
        initech = entries["DEEPJOB Initech update"]
        assert initech.classification.source.value == "fast"
        assert initech.expires_at == self.clock() + timedelta(days=14)

    @pytest.mark.asyncio
    async def test_review_session(self):
        _, entries = await self._classify_only()
        jobs = [entries["DEEPJOB Initech update"].id, entries["DEEPJOB Globex update"].id]
        personal = [entries["Dinner on Friday"].id, entries["Book club"].id]
        maybe = entries["DEEPMAYBE hello"]

        approved = self.service.bulk_operation(jobs, APPROVE_FOR_EXTRACTION)

        assert approved.succeeded == 2
        assert self.provider.calls == 2
        records = {r.company: r for r in self.service.list_jobs()}
        assert set(records) == {"Initech", "Globex"}
        assert {r.position for r in records.values()} == {"Engineer"}
        assert {r.confidence for r in records.values()} == {1.0}

        # Let one entry lapse before the reviewer gets to it
        maybe.expires_at = self.clock() - timedelta(minutes=1)
        self.service.store.update_review(maybe)

        rejected = self.service.bulk_operation(personal + [maybe.id], REJECT_AS_NOT_JOB)

        assert rejected.succeeded == 2
        assert [(o.id, o.error) for o in rejected.outcomes if not o.success] == [
            (maybe.id, "expired"),
        ]
        assert self.service.review_get_stats() == {
            "total": 4, "pending": 0, "reviewed": 4, "expiring_soon": 0,
        }
        assert self.service.review.purge_expired() == 1

        feedback = self.service.ml_get_stats()["feedback"]
        assert feedback["total_entries"] == 4
        assert feedback["job_samples"] == 2
        assert feedback["non_job_samples"] == 2

    @pytest.mark.asyncio
    async def test_manual_verdict_with_metadata(self):
        _, entries = await self._classify_only()
        entry = entries["DEEPMAYBE hello"]

        record = self.service.review_mark_job_related(
            entry.id, {"company": "Hooli", "position": "Designer", "status": "Offer"}
        )

        assert (record.company, record.position, record.status.value) == ("Hooli", "Designer", "Offer")
        assert self.provider.calls == 0
        assert self.service.list_jobs()[0].source_message_id == entry.message_id

    @pytest.mark.asyncio
    async def test_flag_keeps_entry_longer(self):
        _, entries = await self._classify_only()
        entry = entries["Book club"]

        result = self.service.bulk_operation([entry.id], MARK_NEEDS_REVIEW)

        assert result.succeeded == 1
        self.clock.advance(days=20)
        flagged = self.service.review_get_pending()
        assert [(e.id, e.flagged) for e in flagged] == [(entry.id, True)]

    @pytest.mark.asyncio
    async def test_resync_does_not_requeue_reviewed_mail(self):
        window = SyncWindow.from_days(7, self.clock())
        await self.service.sync_classify_only(window=window)
        entries = {e.subject: e for e in self.service.review_get_pending()}
        self.service.review_confirm_not_job(entries["Dinner on Friday"].id)

        run = await self.service.sync_classify_only(window=window)

        assert run.counts.skipped == 5
        assert run.counts.needs_review == 0
        assert len(self.service.review_get_pending()) == 4

    def test_feedback_trains_fast_classifier(self):
        """Enough corrections of both kinds turn the heuristics into a trained model."""
        for i, text in enumerate(JOB_TEXTS + PERSONAL_TEXTS):
            self.service.ml_submit_feedback({
                "message_id": f"<fb-{i}@example.org>",
                "subject": text,
                "body": "",
                "is_job_related": text in JOB_TEXTS,
            })
        assert self.service.ml_retrain()["trained"] is False

        for i, text in enumerate(JOB_TEXTS + PERSONAL_TEXTS):
            self.service.ml_submit_feedback({
                "message_id": f"<fb-more-{i}@example.org>",
                "subject": text + " (follow-up)",
                "body": "",
                "is_job_related": text in JOB_TEXTS,
            })

        result = self.service.ml_retrain()

        assert result["trained"] is True
        assert result["stats"]["total_samples"] == 16
        assert result["stats"]["method"] == "model"
        assert self.service.fast.classify("Interview for the engineer position").method == "model"

        model_file = self.config["fast_classifier"]["model_file"]
        assert os.path.exists(model_file)
        assert FastClassifier(self.config["fast_classifier"]).is_trained
