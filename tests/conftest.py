import sys
from pathlib import Path

import pytest

# Add project root to Python path to allow importing 'complaint_pipeline'
sys.path.append(str(Path(__file__).parent.parent))

from complaint_pipeline.storage.memory_store import InMemoryStore  # noqa: E402
from helpers import FakeClock, RecordingSleep, make_posts  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def seeded_store(store):
    store.seed("posts", make_posts(5))
    return store
