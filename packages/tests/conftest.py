"""Pytest configuration and shared fixtures."""

import logging
from collections.abc import Iterator

import pytest

# The telemqtt testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:telemqtt``) and load explicitly here
# instead, because conftest-based loading is processed during
# ``pytest_load_initial_conftests`` (after ``pytest-cov`` starts
# coverage tracing) so the telemqtt import chain is measured.
pytest_plugins = ["telemqtt.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may require external services)"
    )


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """Undo the handler/level changes made by configure_logging()."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
