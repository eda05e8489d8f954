"""Shared fixtures for the Smart Park tests."""

import pytest

from smartpark.sync import FallbackStore


@pytest.fixture
def store():
    """Create an in-memory fallback store."""
    s = FallbackStore(":memory:", context_id="test-context")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def shared_db(tmp_path):
    """Path to a database file shared by several contexts."""
    return tmp_path / "state.db"
