import atexit
import faulthandler
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Union

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from jobsync.core.circuit_breaker import reset_circuit_breaker
from jobsync.core.errors import TransientFetchError
from jobsync.core.fast_classifier import FastVerdict
from jobsync.core.fetcher import MailTransport, MessagePage
from jobsync.core.models import Account, RawEmail
from jobsync.providers.base import GenerativeProvider
from jobsync.providers.factory import ProviderFactory
from jobsync.storage.sqlite_store import SQLiteStore
from jobsync.utils.config import default_config, reset_config_cache


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        # Hard exit: guarantees CI can't hang forever.
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    faulthandler.enable(all_threads=True)

    # Absolute upper bound for the whole test run
    watchdog_seconds = _env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 10 * 60)
    timer = _start_watchdog(watchdog_seconds)
    if timer is not None:
        atexit.register(timer.cancel)


# Keyring


class MemoryKeyring(KeyringBackend):
    """In-process keyring so tests never touch the OS credential store."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords: Dict[tuple, str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("Password not found")
        del self.passwords[(service, username)]


@pytest.fixture(autouse=True)
def memory_keyring():
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture(autouse=True)
def fresh_singletons():
    reset_circuit_breaker()
    reset_config_cache()
    ProviderFactory.clear_cache()
    yield
    reset_circuit_breaker()
    reset_config_cache()
    ProviderFactory.clear_cache()


# Time


START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable datetime clock for orchestrator / review queue."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTime:
    """Callable float clock for the circuit breaker."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_time():
    return FakeTime()


# Mail


class FakeTransport(MailTransport):
    """Paged in-memory mailbox; page tokens are list offsets."""

    def __init__(self):
        self.mailboxes: Dict[str, List[RawEmail]] = {}
        self.fail_times = 0
        self.failing_accounts: Set[str] = set()
        self.calls = 0
        self.closed = False

    def add(self, *emails: RawEmail) -> None:
        for email in emails:
            self.mailboxes.setdefault(email.account, []).append(email)

    def list_messages(self, account, since, until, page_token=None, page_size=50):
        self.calls += 1
        if account.email in self.failing_accounts:
            raise TransientFetchError(f"{account.email} unreachable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientFetchError("temporary failure")

        messages = self.mailboxes.get(account.email, [])
        start = int(page_token or 0)
        end = start + page_size
        next_token = str(end) if end < len(messages) else None
        return MessagePage(messages=list(messages[start:end]), next_page_token=next_token)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_email(clock):
    counter = {"n": 0}

    def _make(
        subject: str = "Hello",
        body: str = "",
        sender: str = "someone@example.org",
        account: str = "me@example.com",
        message_id: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> RawEmail:
        counter["n"] += 1
        return RawEmail(
            message_id=message_id or f"<msg-{counter['n']}@example.org>",
            account=account,
            sender=sender,
            subject=subject,
            body=body,
            received_at=received_at or clock() - timedelta(hours=counter["n"]),
        )

    return _make


@pytest.fixture
def account():
    return Account(email="me@example.com", credential_ref="account:me@example.com")


# Classifiers


class ScriptedProvider(GenerativeProvider):
    """
    Returns queued answers, then `default`. An answer may be a string, an
    exception instance (raised) or a callable taking the prompt.
    """

    def __init__(self, answers=None, default: Union[str, Callable, Exception, None] = None):
        self.answers = list(answers or [])
        self.default = default
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def generate(self, prompt, max_tokens=None, temperature=None):
        with self._lock:
            self.prompts.append(prompt)
            answer = self.answers.pop(0) if self.answers else self.default
        if callable(answer) and not isinstance(answer, Exception):
            answer = answer(prompt)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def health_check(self):
        return True

    def get_name(self):
        return "scripted"

    @property
    def is_local(self):
        return True

    @property
    def calls(self) -> int:
        return len(self.prompts)


class ScriptedFast:
    """Fast Classifier stand-in: P(job) chosen by a marker found in the text."""

    def __init__(self, probabilities: Dict[str, float], default: float = 0.6):
        self.probabilities = probabilities
        self.default = default
        self.seen: List[str] = []

    def classify(self, text: str) -> FastVerdict:
        self.seen.append(text)
        p = self.default
        for marker, probability in self.probabilities.items():
            if marker in text:
                p = probability
                break
        return FastVerdict(
            is_job_related=p >= 0.5, probability=p, confidence=max(p, 1 - p), method="model"
        )


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def scripted_fast():
    return ScriptedFast


# Storage and config


@pytest.fixture
def store():
    s = SQLiteStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def test_config(tmp_path):
    cfg = default_config()
    cfg["data_dir"] = str(tmp_path)
    cfg["database"] = ":memory:"
    cfg["prompt"]["prompt_file"] = str(tmp_path / "prompt.txt")
    cfg["fast_classifier"]["model_file"] = str(tmp_path / "fast_model.joblib")
    cfg["feedback"]["data_file"] = str(tmp_path / "feedback.json")
    cfg["sync"]["retry_base_delay"] = 0.0
    return cfg
