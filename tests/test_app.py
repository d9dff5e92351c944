"""Tests for the command-line bootstrap."""

from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import pytest

from notechat import app
from notechat.chat.message_store import MessageStore
from notechat.chat.orchestrator import ChatOrchestrator
from notechat.delivery.connectivity import ConnectivitySignal
from notechat.delivery.offline_queue import OfflineQueue
from notechat.delivery.retry import RetryEngine, RetryOptions
from notechat.services.persistence import MemoryStore
from notechat.services.settings import Settings, SecretVault, SettingsStore
from notechat.utils import logging as logging_utils
from tests.helpers import FakeAIClient, FakeMessagesAPI, RecordingSleep


@pytest.fixture(autouse=True)
def _isolated_logging(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setenv("NOTECHAT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "model=gpt-4o",
            "max_retries=5",
            "request_timeout=12.5",
            "debug_logging=yes",
            "health_check_url=none",
            'default_headers={"X-Test": "1"}',
        ]
    )

    assert overrides == {
        "model": "gpt-4o",
        "max_retries": 5,
        "request_timeout": 12.5,
        "debug_logging": True,
        "health_check_url": None,
        "default_headers": {"X-Test": "1"},
    }


@pytest.mark.parametrize("entry", ["model", "=x", "nope=1", "max_retries=many", "debug_logging=maybe"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_dump_settings_redacts_api_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path, vault=SecretVault(key_path=path.with_suffix(".key"))).save(Settings(api_key="sk-secret-key"))

    code = app.main(["--settings-path", str(path), "--set", "page_size=20", "--dump-settings"])

    output = json.loads(capsys.readouterr().out)
    assert code == 0
    assert output["settings"]["api_key"] == "sk*********ey"
    assert output["settings"]["page_size"] == 20
    assert output["meta"]["cli_overrides"] == ["page_size"]
    assert output["meta"]["path"] == str(path)


def test_invalid_override_exits_with_usage_error(tmp_path: Path) -> None:
    assert app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "bogus=1", "hi"]) == 2


def test_missing_message_exits_with_usage_error(tmp_path: Path) -> None:
    assert app.main(["--settings-path", str(tmp_path / "s.json")]) == 2


@pytest.mark.asyncio
async def test_send_message_streams_reply(monkeypatch: pytest.MonkeyPatch) -> None:
    api = FakeMessagesAPI()
    ai = FakeAIClient(["Noted", "!"])
    built: list[ChatOrchestrator] = []

    def _build(settings, conversation_id, *, event_bus=None, **_kwargs):
        signal = ConnectivitySignal()
        store = MessageStore(event_bus=event_bus)
        retry = RetryEngine(RetryOptions(sleep=RecordingSleep()))
        queue = OfflineQueue(
            storage=MemoryStore(),
            signal=signal,
            deliver=api.deliver_entry,
            sink=store,
            retry=retry,
            event_bus=event_bus,
        )
        orchestrator = ChatOrchestrator(
            conversation_id,
            store=store,
            queue=queue,
            retry=retry,
            ai_client=ai,
            messages_api=api,
            signal=signal,
            event_bus=event_bus,
            resources=(api, ai),
        )
        built.append(orchestrator)
        return orchestrator

    monkeypatch.setattr(app, "build_orchestrator", _build)
    out = io.StringIO()

    await app.send_message(Settings(), "c1", "remember milk", stream=out)

    assert out.getvalue() == "Noted!\n"
    assert [m.content for m in built[0].messages] == ["remember milk", "Noted!"]
    assert api.closed and ai.closed
