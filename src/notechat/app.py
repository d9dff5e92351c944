"""Command-line bootstrap for NoteChat."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .chat.orchestrator import build_orchestrator
from .delivery.errors import DeliveryError
from .events import EventBus, NoticePosted, StreamChunk
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file and console logging for the application."""

    level = logging_utils.level_for(debug)
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``notechat`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("NOTECHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("NOTECHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not args.message:
        print("Nothing to send; pass a message or --dump-settings.", file=sys.stderr)
        return 2

    try:
        asyncio.run(send_message(settings, args.conversation, " ".join(args.message)))
    except DeliveryError as exc:
        _LOGGER.debug("Delivery failed: %s", exc)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130
    return 0


async def send_message(
    settings: Settings,
    conversation_id: str,
    text: str,
    *,
    stream: TextIO | None = None,
) -> None:
    """Send one message and write the streamed reply to ``stream``."""

    destination = stream or sys.stdout
    bus: EventBus[Any] = EventBus()

    def _write_chunk(event: StreamChunk) -> None:
        destination.write(event.content)
        destination.flush()

    def _write_notice(event: NoticePosted) -> None:
        print(f"[{event.level}] {event.message}", file=sys.stderr)

    bus.subscribe(StreamChunk, _write_chunk)
    bus.subscribe(NoticePosted, _write_notice)
    orchestrator = build_orchestrator(settings, conversation_id, event_bus=bus)
    try:
        await orchestrator.start()
        await orchestrator.submit(text)
        destination.write("\n")
    finally:
        await orchestrator.close()


def _env_flag(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    return default if raw is None else raw.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="notechat",
        description="Send a chat message through the resilient delivery pipeline or inspect configuration.",
    )
    parser.add_argument("message", nargs="*", help="Message text to send.")
    parser.add_argument(
        "--conversation",
        default="default",
        metavar="ID",
        help="Conversation to post into (default: %(default)s).",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.notechat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` strings into typed :class:`Settings` overrides."""

    annotations = get_type_hints(Settings)
    overrides: Dict[str, Any] = {}
    for entry in items:
        name, sep, raw_value = entry.partition("=")
        name = name.strip()
        if not sep:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        if not name:
            raise ValueError("Override is missing a field name.")
        if name not in annotations:
            raise ValueError(f"Unknown setting '{name}'.")
        overrides[name] = _coerce_value(annotations[name], raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    converter = _CONVERTERS.get(_base_type(annotation))
    return converter(raw_value) if converter is not None else raw_value


def _base_type(annotation: Any) -> Any:
    """Reduce ``X | None`` and ``dict[K, V]`` to the runtime type that parses them."""

    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return dict
    members = [member for member in get_args(annotation) if member is not type(None)]
    return _base_type(members[0]) if members else origin


def _parse_bool(value: str) -> bool:
    token = value.strip().lower()
    if token in _TRUE_VALUES or token in _FALSE_VALUES:
        return token in _TRUE_VALUES
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _parse_json_object(value: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(value or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Expected a JSON object, got {value!r}") from exc
    if not isinstance(decoded, dict):
        raise ValueError(f"Expected a JSON object, got {value!r}")
    return decoded


_CONVERTERS: Dict[Any, Callable[[str], Any]] = {
    bool: _parse_bool,
    int: lambda value: int(value, 10),
    float: float,
    dict: _parse_json_object,
}


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("NOTECHAT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
