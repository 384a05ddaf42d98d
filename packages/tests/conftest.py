"""Pytest configuration and shared fixtures."""

import logging
from collections.abc import Iterator
from typing import Any

import pytest

# The panelsync testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:panelsync``) and load explicitly here
# instead, because conftest-based loading happens after ``pytest-cov``
# starts tracing, so the panelsync import chain is measured.
pytest_plugins = ["panelsync.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (in-memory broker and HID doubles)"
    )


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """Undo root logger changes made by ``configure_logging()``."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


@pytest.fixture
def app_caplog(
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> pytest.LogCaptureFixture:
    """``caplog`` that keeps capturing after the app configures logging."""
    from panelsync import _app

    configure = _app.configure_logging

    def configure_and_capture(*args: Any, **kwargs: Any) -> None:
        configure(*args, **kwargs)
        logging.getLogger().addHandler(caplog.handler)

    monkeypatch.setattr(_app, "configure_logging", configure_and_capture)
    return caplog
