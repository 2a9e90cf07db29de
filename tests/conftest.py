"""
Pytest configuration for Task Governance Engine tests.

This module provides:
1. Isolated configuration and singletons per test
2. A temporary JSONL store and the services built on it
3. Project/task factories
"""

import shutil
import tempfile
import uuid
from pathlib import Path

import pytest

from governance.config import reset_config
from governance.governance_store import GovernanceStore, reset_governance_store
from governance.records_service import RecordsService
from governance.task_lifecycle import TaskLifecycleCoordinator, reset_coordinator


# -----------------------------------------------------------------------------
# Isolation
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Drop GOVERNANCE_* overrides and cached singletons around each test."""
    for name in ("GOVERNANCE_CONFIG", "GOVERNANCE_DATA_DIR", "GOVERNANCE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    reset_governance_store()
    reset_coordinator()
    yield
    reset_config()
    reset_governance_store()
    reset_coordinator()


# -----------------------------------------------------------------------------
# Store & Services
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory."""
    path = Path(tempfile.mkdtemp(prefix="test_governance_"))
    yield path

    # Cleanup
    if path.exists():
        shutil.rmtree(path)


@pytest.fixture
def store(temp_data_dir):
    return GovernanceStore(temp_data_dir)


@pytest.fixture
def records(store):
    return RecordsService(store)


@pytest.fixture
def coordinator(records):
    return TaskLifecycleCoordinator(records)


@pytest.fixture
def user_id():
    return str(uuid.uuid4())


@pytest.fixture
def other_user_id():
    return str(uuid.uuid4())


# -----------------------------------------------------------------------------
# Factories
# -----------------------------------------------------------------------------
@pytest.fixture
def make_project(records, user_id):
    """Create a project for the default user."""
    def _make(rules=None, name="Payments Service"):
        return records.create_project(user_id, name, "Test project", rules)
    return _make


@pytest.fixture
def project(make_project):
    return make_project()


@pytest.fixture
def make_task(records, user_id, project):
    """Create a task in the default project."""
    def _make(project_id=None, **kwargs):
        kwargs.setdefault("title", "Add retry logic")
        return records.create_task(user_id, project_id or project.id, **kwargs)
    return _make


@pytest.fixture
def task(make_task):
    return make_task()
