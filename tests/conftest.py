"""Pytest configuration and fixtures for the test suite."""

import os
import sys
from pathlib import Path

import pytest

# no test talks to a real Firebase project
os.environ.setdefault("FIREBASE_API_KEY", "test-key")

root = Path(__file__).parent.parent
tests_dir = Path(__file__).parent
for path in (root, tests_dir):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from helpers.fakes import DeferredRunner, ImmediateRunner, InMemoryBackend, make_user  # noqa: E402
from query_cache import QueryCache  # noqa: E402
from queries import QueryClient  # noqa: E402
from session import AuthSession  # noqa: E402


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def cache():
    return QueryCache()


@pytest.fixture
def queries(backend, cache):
    return QueryClient(backend, cache)


@pytest.fixture
def runner():
    return ImmediateRunner()


@pytest.fixture
def deferred():
    return DeferredRunner()


@pytest.fixture
def catalog(backend):
    """Two departments with one category each."""
    backend.seed("departments", "it", name="IT Services")
    backend.seed("departments", "hostel", name="Hostel")
    backend.seed("categories", "wifi", name="WiFi", department_id="it")
    backend.seed("categories", "rooms", name="Rooms", department_id="hostel")
    return backend


@pytest.fixture
def signed_in(backend):
    """Factory: sign a new user with `role` into a fresh AuthSession."""

    def factory(role="student", email=None, department_id=None):
        email = email or f"{role}@example.edu"
        make_user(backend, email, role=role, department_id=department_id)
        auth = AuthSession(backend)
        auth.loading = False
        auth.sign_in(email, "password123")
        return auth

    return factory
