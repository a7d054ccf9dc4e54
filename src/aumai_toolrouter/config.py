"""Router settings.

Sources, highest precedence first:

1. Keyword overrides passed to :func:`load_settings`
2. Environment variables (``AUMAI_TOOLROUTER_<FIELD>``)
3. A JSON settings file
4. Built-in defaults

Examples:
    AUMAI_TOOLROUTER_TOP_K=10
    AUMAI_TOOLROUTER_SIMILARITY_THRESHOLD=0.35
    AUMAI_TOOLROUTER_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from aumai_toolrouter.errors import ConfigError

__all__ = ["RouterSettings", "load_settings", "DEFAULT_PRIMARY_MODEL", "DEFAULT_FALLBACK_MODEL"]

DEFAULT_PRIMARY_MODEL = "thenlper/gte-small"
DEFAULT_FALLBACK_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class _JsonFileSource(PydanticBaseSettingsSource):
    """Settings source backed by an already-parsed JSON document."""

    def __init__(self, settings_cls: type[BaseSettings], data: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._data = data

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:  # noqa: ARG002
        value = self._data.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return {key: value for key, value in self._data.items() if key in self.settings_cls.model_fields}


class RouterSettings(BaseSettings):
    """Tunables for the embedding pipeline, the index and the matcher."""

    model_config = SettingsConfigDict(
        env_prefix="AUMAI_TOOLROUTER_",
        case_sensitive=False,
        extra="ignore",
    )

    primary_model: str = Field(default=DEFAULT_PRIMARY_MODEL, description="Model tried first")
    fallback_model: str = Field(default=DEFAULT_FALLBACK_MODEL, description="Model tried when the primary fails")
    top_k: int = Field(default=5, ge=1, description="Maximum number of matches returned per query")
    similarity_threshold: float = Field(
        default=0.5, ge=-1.0, le=1.0, description="Minimum cosine similarity for a match"
    )
    max_concurrency: int = Field(default=4, ge=1, description="In-flight embedding requests during indexing")
    request_timeout: float = Field(default=15.0, gt=0, description="Seconds to wait for one embedding")
    load_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the model to load")
    auto_invoke: bool = Field(default=False, description="Invoke the best match after each submission")
    log_level: LogLevel = "INFO"
    log_format: Literal["console", "json"] = "console"


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError.parse_error(str(path), "file does not exist")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError.parse_error(str(path), str(exc)) from exc
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top-level value must be an object")
    return data


def load_settings(path: Path | str | None = None, **overrides: Any) -> RouterSettings:
    """Build :class:`RouterSettings` from overrides, environment and *path*.

    Args:
        path: Optional JSON settings file.
        **overrides: Field values that win over every other source.

    Raises:
        ConfigError: When the file cannot be parsed or a value is invalid.
    """
    file_data = _read_json(Path(path)) if path is not None else {}

    class _Settings(RouterSettings):
        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            return (init_settings, env_settings, _JsonFileSource(settings_cls, file_data))

    clean = {key: value for key, value in overrides.items() if value is not None}
    try:
        settings = _Settings(**clean)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc
    return settings
