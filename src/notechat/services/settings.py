"""User settings for the chat client and how they are stored on disk.

Settings live in ``~/.notechat/settings.json``. The API key never touches the
file in plaintext: it is encrypted with a Fernet key kept next to the
settings file and stored as ``fernet:<token>``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Tuple

from cryptography.fernet import Fernet, InvalidToken

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..ai.client import ClientSettings
    from ..delivery.retry import RetryOptions

__all__ = ["Settings", "SettingsStore", "SecretVault", "redact_secret"]

LOGGER = logging.getLogger(__name__)

_HOME = Path.home() / ".notechat"
_FORMAT_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _as_flag(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _as_int(raw: str) -> int:
    return int(raw, 10)


# Environment variable -> (field, parser). Parse failures are logged and skipped.
_ENVIRONMENT: Mapping[str, Tuple[str, Callable[[str], Any]]] = {
    "NOTECHAT_API_KEY": ("api_key", str),
    "NOTECHAT_BASE_URL": ("base_url", str),
    "NOTECHAT_MODEL": ("model", str),
    "NOTECHAT_API_BASE_URL": ("api_base_url", str),
    "NOTECHAT_ORGANIZATION": ("organization", str),
    "NOTECHAT_DEBUG_LOGGING": ("debug_logging", _as_flag),
    "NOTECHAT_MAX_RETRIES": ("max_retries", _as_int),
    "NOTECHAT_REQUEST_TIMEOUT": ("request_timeout", float),
}


@dataclass(slots=True)
class Settings:
    """Everything a user can configure about delivery and the assistant."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    organization: str | None = None
    request_timeout: float = 90.0
    api_base_url: str = "http://localhost:3000"
    max_retries: int = 3
    retry_initial_delay_ms: float = 1000.0
    retry_max_delay_ms: float = 10000.0
    retry_backoff_factor: float = 2.0
    retry_timeout_ms: float = 30000.0
    page_size: int = 50
    max_cached_conversations: int = 50
    max_persisted_conversations: int = 10
    persist_debounce_seconds: float = 0.5
    health_check_url: str | None = None
    health_check_interval: float = 15.0
    data_dir: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def retry_options(self) -> "RetryOptions":
        """Default retry policy for message and reply requests."""

        from ..delivery.retry import RetryOptions

        return RetryOptions(
            max_retries=max(1, int(self.max_retries)),
            initial_delay=float(self.retry_initial_delay_ms),
            max_delay=float(self.retry_max_delay_ms),
            backoff_factor=float(self.retry_backoff_factor),
            timeout=float(self.retry_timeout_ms) if self.retry_timeout_ms else None,
        )

    def client_settings(self) -> "ClientSettings":
        from ..ai.client import ClientSettings

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            temperature=self.temperature,
            default_headers=dict(self.default_headers) or None,
            metadata={str(key): str(value) for key, value in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )


class SecretVault:
    """Fernet encryption for the API key, keyed by a file created on first use."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_HOME / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{token}"

    def decrypt(self, stored: str | None) -> str:
        """Return the plaintext for ``stored``; raise ``ValueError`` if it is unreadable."""

        if not stored:
            return ""
        backend, sep, token = stored.partition(":")
        if not sep:
            backend, token = self.strategy, stored
        if backend != self.strategy:
            raise ValueError(f"Secret was encrypted with unknown backend {backend!r}")
        try:
            return self._cipher().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("API key does not match the local encryption key") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            staging.chmod(0o600)
        staging.replace(self._key_path)
        return key


class SettingsStore:
    """Reads and writes :class:`Settings`, layering runtime and environment overrides."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_HOME / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return persisted settings with ``overrides`` and then ``NOTECHAT_*`` applied."""

        stored = self._read()
        settings, plaintext_on_disk = self._decode(stored) if stored else (Settings(), False)
        if plaintext_on_disk:
            LOGGER.info("Encrypting API key that was stored in plaintext.")
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Could not rewrite %s with an encrypted key: %s", self._path, exc)

        if overrides:
            settings = _overlay(settings, overrides, source="runtime")
        return _overlay(settings, _environment_values(), source="environment")

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically and return the file path."""

        document = asdict(settings)
        secret = document.pop("api_key", "")
        if secret:
            document[_CIPHERTEXT_KEY] = self._vault.encrypt(secret)
        document["version"] = _FORMAT_VERSION
        document["secret_backend"] = self._vault.strategy

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        return document if isinstance(document, dict) else {}

    def _decode(self, stored: Dict[str, Any]) -> Tuple[Settings, bool]:
        ciphertext = stored.pop(_CIPHERTEXT_KEY, None)
        legacy_key = stored.pop("api_key", None)
        known = {item.name for item in fields(Settings)}
        values = {key: value for key, value in stored.items() if key in known}
        if not isinstance(values.get("metadata", {}), Mapping):
            del values["metadata"]
        try:
            settings = Settings(**values)
        except TypeError as exc:
            LOGGER.warning("Settings file has unexpected values, using defaults: %s", exc)
            settings = Settings()

        if ciphertext:
            try:
                return replace(settings, api_key=self._vault.decrypt(ciphertext)), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return settings, False
        if legacy_key:
            return replace(settings, api_key=str(legacy_key)), True
        return settings, False


def _environment_values() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_name, (field_name, parse) in _ENVIRONMENT.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            values[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, getattr(parse, "__name__", parse))
    return values


def _overlay(settings: Settings, values: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    changes = {key: value for key, value in values.items() if key in known and value is not None}
    if isinstance(changes.get("metadata"), Mapping):
        changes["metadata"] = {**settings.metadata, **changes["metadata"]}
    if not changes:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def redact_secret(value: str) -> str:
    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
