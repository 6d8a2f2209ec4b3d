import sys
from pathlib import Path

import pytest

# Ensure repo root on path when running as script
TESTS_DIR = Path(__file__).resolve().parent
REPO_ROOT = TESTS_DIR.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from config import Credentials, Settings
from progress import ProgressTracker
from state_store import MemoryJobStore


@pytest.fixture
def credentials():
    return Credentials(
        bearer_token="test-token",
        ad_account_id="123456",
        page_id="page_1",
        pixel_id="pixel_1",
    )


@pytest.fixture
def settings():
    return Settings(
        batch_delay_s=1.0,
        resolver_initial_wait_s=0,
        resolver_delays_s=(0, 0, 0, 0),
    )


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def tracker(store):
    return ProgressTracker(store)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep
