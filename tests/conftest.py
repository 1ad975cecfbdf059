"""Shared fixtures: in-memory store and directory, a recording notifier, wired services."""

import os

# The API and worker modules build their services from the environment on first use.
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest

from deskroute import activity
from deskroute.runtime import build_services, set_services
from deskroute.services.agent_directory import MemoryAgentDirectory
from deskroute.store.memory_store import MemoryStore
from tests.factories import RecordingNotifier


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def directory():
    return MemoryAgentDirectory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def clean_activity():
    activity.clear()
    yield
    activity.clear()


@pytest.fixture
def services(store, directory):
    """Services wired on fresh in-memory state and installed for the API/worker."""
    svc = build_services(store=store, directory=directory)
    set_services(svc)
    yield svc
    set_services(None)
