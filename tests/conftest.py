import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config import Config
from classroom_sync import create_data_service
from classroom_sync.firestore_models import User
from classroom_sync.memory_store import MemoryStore
from classroom_sync.notices import NoticeBoard
from seed import seed_store


class FastConfig(Config):
    """Config for tests: short timeout, no retries."""
    NETWORK_TIMEOUT_SECONDS = 2.0
    NETWORK_RETRY_ATTEMPTS = 1


async def settle(rounds=5):
    """Let background subscription consumers process pending snapshots."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def utcnow():
    return datetime.now(timezone.utc)


def ago(**kwargs):
    return utcnow() - timedelta(**kwargs)


def ahead(**kwargs):
    return utcnow() + timedelta(**kwargs)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notices():
    return NoticeBoard()


@pytest.fixture
def student():
    return User(id='student1', name='Student 1', email='student1@example.com', role='student', series='9')


@pytest.fixture
def teacher():
    return User(id='teacher1', name='Ana Souza', email='teacher1@example.com', role='teacher')


@pytest_asyncio.fixture
async def seeded_store(store):
    """MemoryStore populated with the demo data set."""
    await seed_store(store)
    return store


@pytest_asyncio.fixture
async def student_service(seeded_store, student, notices):
    service = create_data_service(student, store=seeded_store, config_class=FastConfig, notices=notices)
    yield service
    await service.close()


@pytest_asyncio.fixture
async def teacher_service(seeded_store, teacher):
    service = create_data_service(teacher, store=seeded_store, config_class=FastConfig, notices=NoticeBoard())
    yield service
    await service.close()
