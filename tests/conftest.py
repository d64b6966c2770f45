# tests/conftest.py
"""
Shared fixtures.

- Every test starts from an empty process-default mock store.
- Fixture scripts live in tests/fixtures/.
"""

import os

import pytest

from audit import configure_audit_log
from mock_backend.store import MockStateStore, reset_store

FIXTURES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures")


@pytest.fixture(autouse=True)
def clean_store():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def store():
    return MockStateStore()


@pytest.fixture
def fixtures_dir():
    return FIXTURES_DIR


@pytest.fixture
def fixture_script():
    def _path(name):
        return os.path.join(FIXTURES_DIR, name)
    return _path


@pytest.fixture
def audit_path(tmp_path):
    # point the process-wide audit log at a temp file, restore afterwards
    path = str(tmp_path / "audit.log")
    configure_audit_log(path)
    yield path
    configure_audit_log(None)
