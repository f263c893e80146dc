import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from booking_engine.main import wait_for_database


class _FlakyEngine:
    def __init__(self, engine, failures):
        self._engine = engine
        self.failures = failures
        self.attempts = 0

    def connect(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        return self._engine.connect()


@pytest.fixture
def memory_engine():
    engine = create_engine("sqlite://")
    yield engine
    engine.dispose()


def test_database_reachable_at_once(memory_engine):
    sleeps = []

    assert wait_for_database(memory_engine, max_retries=3, retry_delay=1.0, sleep=sleeps.append) == 1
    assert sleeps == []


def test_database_comes_up_after_retries(memory_engine):
    flaky = _FlakyEngine(memory_engine, failures=2)
    sleeps = []

    attempts = wait_for_database(flaky, max_retries=5, retry_delay=0.5, sleep=sleeps.append)

    assert attempts == 3
    assert sleeps == [0.5, 0.5]


def test_database_never_comes_up(memory_engine):
    flaky = _FlakyEngine(memory_engine, failures=10)
    sleeps = []

    with pytest.raises(OperationalError):
        wait_for_database(flaky, max_retries=3, retry_delay=0.5, sleep=sleeps.append)

    assert flaky.attempts == 3
    assert len(sleeps) == 2
