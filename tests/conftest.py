"""Pytest configuration and shared fixtures."""

import os

import pytest

from rabbit_communications import InMemoryBroker


@pytest.fixture(autouse=True)
def clean_namespace_env():
    """Keep the default namespace deterministic."""
    saved = os.environ.pop("RABBIT_COMMUNICATIONS_NAMESPACE", None)
    yield
    if saved is not None:
        os.environ["RABBIT_COMMUNICATIONS_NAMESPACE"] = saved


@pytest.fixture
def broker() -> InMemoryBroker:
    """Fresh in-memory broker per test."""
    return InMemoryBroker()
