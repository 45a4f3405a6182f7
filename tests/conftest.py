from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep test output readable; the logger reads this at import time.
os.environ.setdefault("COGNIPATH_DEBUG", "0")

from cognipath.database import DatabaseClient  # noqa: E402
from cognipath.library import CourseLibrary, WriteQueue  # noqa: E402

from fakes import FakeClock, FakeFirestore, FakeOpenAI  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def openai_client() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def firestore() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def database() -> DatabaseClient:
    """Cache-mode client (no Firebase credentials)."""
    return DatabaseClient()


@pytest.fixture
def library(database: DatabaseClient) -> CourseLibrary:
    """Library whose writes only happen on flush()."""
    return CourseLibrary(database, WriteQueue(database, autostart=False))
