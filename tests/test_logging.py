"""Tests for :mod:`notechat.utils.logging`."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from notechat.utils import logging as logging_utils


@pytest.fixture
def isolated_root(monkeypatch: pytest.MonkeyPatch):
    """Restore root handlers and module state after each test."""

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_to_rotating_file(tmp_path: Path, isolated_root: logging.Logger) -> None:
    path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False)

    logging.getLogger("notechat.test").info("hello from the test")
    for handler in isolated_root.handlers:
        handler.flush()

    assert path == tmp_path / "notechat.log"
    assert "hello from the test" in path.read_text(encoding="utf-8")
    assert logging_utils.get_log_path() == path
    assert logging.getLogger("httpx").level == logging.WARNING


def test_repeated_setup_is_a_no_op_unless_forced(tmp_path: Path, isolated_root: logging.Logger) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)
    forced = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False, force=True)

    assert second == first
    assert forced == tmp_path / "b" / "notechat.log"


def test_log_dir_from_environment(
    tmp_path: Path, isolated_root: logging.Logger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("NOTECHAT_LOG_DIR", str(tmp_path / "env"))

    path = logging_utils.setup_logging(console=False)

    assert path.parent == tmp_path / "env"


def test_level_for() -> None:
    assert logging_utils.level_for(True) == logging.DEBUG
    assert logging_utils.level_for(False) == logging.INFO
