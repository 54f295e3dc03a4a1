"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings
from ..ai.orchestration.envelope import TimeoutBudgets
from ..ai.providers import default_fallback_models

__all__ = [
    "Settings",
    "SettingsStore",
    "parse_override",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".kalai"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "KALAI_API_KEY": "api_key",
    "KALAI_API_ENDPOINT": "api_endpoint",
    "KALAI_MODEL": "model_name",
    "KALAI_ORGANIZATION": "organization",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "KALAI_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "KALAI_TEMPERATURE": "temperature",
    "KALAI_TIMEOUT_NET": "request_timeout_net",
    "KALAI_TIMEOUT_QUEUE": "request_timeout_queue",
    "KALAI_TIMEOUT_UI": "request_timeout_ui",
    "KALAI_DEBOUNCE_SECONDS": "debounce_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "KALAI_MAX_TOKENS": "max_tokens",
    "KALAI_MAX_ATTEMPTS": "max_attempts",
    "KALAI_MODEL_MAX_TOKENS": "model_max_tokens",
}
_LIST_ENV_OVERRIDES: Mapping[str, str] = {
    "KALAI_FALLBACK_MODELS": "fallback_models",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_SECRET_FIELDS = frozenset({"api_key"})


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions.

    ``api_key`` is only ever read from the environment or CLI overrides and is
    never written to disk.
    """

    model_name: str = "moonshotai/kimi-k2:free"
    api_endpoint: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    organization: str | None = None
    max_tokens: int = 2_048
    temperature: float = 0.7
    fallback_models: list[str] = field(default_factory=default_fallback_models)
    request_timeout_net: float = 30.0
    request_timeout_queue: float = 75.0
    request_timeout_ui: float = 90.0
    max_attempts: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    model_max_tokens: int = 32_000
    reserved_response_tokens: int = 2_048
    preserve_recent_exchanges: int = 2
    debounce_seconds: float = 0.5
    feed_capacity: int = 10
    history_limit: int = 50
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def timeout_budgets(self) -> TimeoutBudgets:
        """Return the nested timeout budgets; raises ``ValueError`` when misordered."""

        return TimeoutBudgets(
            ui=self.request_timeout_ui,
            queue=self.request_timeout_queue,
            net=self.request_timeout_net,
        )

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.api_endpoint,
            api_key=self.api_key,
            model=self.model_name,
            organization=self.organization,
            request_timeout=self.request_timeout_net,
            default_headers=dict(self.default_headers) or None,
            metadata={str(k): str(v) for k, v in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )

    def model_chain(self) -> list[str]:
        """Primary model followed by distinct fallbacks, in order."""

        chain = [self.model_name]
        for model in self.fallback_models:
            if model and model not in chain:
                chain.append(model)
        return chain


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path else _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s (%d field(s))", self._path, len(data))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for name in _SECRET_FIELDS:
            data.pop(name, None)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return data

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        for env_name, field_name in _LIST_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = _split_list(value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def parse_override(raw: str) -> tuple[str, Any]:
    """Parse a ``key=value`` CLI override, coercing the value to the field's type."""

    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Override must look like key=value, got {raw!r}")
    defaults = Settings()
    if not hasattr(defaults, key):
        raise ValueError(f"Unknown setting {key!r}")
    current = getattr(defaults, key)
    value = value.strip()
    if isinstance(current, bool):
        return key, value.lower() in _TRUE_VALUES
    if isinstance(current, int):
        return key, int(value, 10)
    if isinstance(current, float):
        return key, float(value)
    if isinstance(current, list):
        return key, _split_list(value)
    if isinstance(current, dict):
        parsed = json.loads(value)
        if not isinstance(parsed, dict):
            raise ValueError(f"Setting {key!r} expects a JSON object")
        return key, parsed
    return key, value


def redact_secret(value: str | None) -> str:
    """Return a display-safe version of a secret."""

    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}…{value[-4:]}"


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - _SECRET_FIELDS
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result
