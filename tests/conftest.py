"""Shared fixtures for snapsync tests."""

import threading

import pytest

from fake_github import LOGIN, TOKEN, FakeGitHub
from snapsync.auth import StaticTokenProvider
from snapsync.github_client import GitHubClient
from snapsync.rate_limit import RateLimiter
from snapsync.retry import RetryPolicy


class FakeClock:
    """Epoch clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    @property
    def percents(self):
        return [event.percent for event in self.events]

    @property
    def stages(self):
        return [event.stage for event in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def github(clock):
    return FakeGitHub(clock=clock.time)


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def client(github, rate_limiter):
    with GitHubClient(StaticTokenProvider(TOKEN), rate_limiter, transport=github.transport) as gh:
        yield gh


@pytest.fixture
def retry_policy(rate_limiter, clock):
    return RetryPolicy(rate_limiter=rate_limiter, jitter=False, sleep=clock.sleep)


@pytest.fixture
def owner():
    return LOGIN


@pytest.fixture
def seeded_repo(github):
    """Existing repository whose main branch holds a.txt and b.txt."""
    return github.add_repo(LOGIN, "site", {"a.txt": "1", "b.txt": "2"})


@pytest.fixture
def sink():
    return RecordingSink()
