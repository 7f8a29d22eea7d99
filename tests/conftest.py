import os
import sys

import pytest

os.environ.setdefault("CHECK_ACCOUNT_QUOTA", "false")

# Ensure project root is on sys.path so top-level packages (e.g., engine, config) are importable
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from engine.planner.plan import ClusterPlan, worker_shape  # noqa: E402
from engine.storage.results import InMemoryResultStore  # noqa: E402
from tests.fakes import FakeClock, FakeExecutor  # noqa: E402


def pytest_sessionstart(session):
    os.environ["CUMULUS_TEST_MODE"] = "1"


@pytest.fixture
def store():
    return InMemoryResultStore()


@pytest.fixture
def executor(store):
    return FakeExecutor(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_plan():
    def _make(quota=2, cpu=1, memory="2GB", **options):
        options.setdefault("wait_initial_interval", 0.01)
        options.setdefault("wait_max_interval", 0.05)
        options.setdefault("poll_interval", 0.01)
        options.setdefault("poll_concurrency", 1)
        return ClusterPlan(quota=quota, worker_shape=worker_shape(cpu, memory), **options)

    return _make
