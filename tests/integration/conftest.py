"""Pytest configuration for integration tests."""

import logging

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (real files, CLI, processes)",
    )


def pytest_collection_modifyitems(config, items):
    """Add integration marker to all tests in this directory."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def broker_home(tmp_path, monkeypatch):
    """Point the CLI at a throwaway broker home."""
    home = tmp_path / "home"
    monkeypatch.setenv("SECRETBROKER_HOME", str(home))
    monkeypatch.delenv("SECRETBROKER_CONFIG", raising=False)
    monkeypatch.delenv("SECRETBROKER_LOG_LEVEL", raising=False)
    return home


@pytest.fixture(autouse=True)
def restore_root_logging():
    """The CLI reconfigures the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
