"""Settings management for lessonrag."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from lessonrag.indexer.errors import ConfigurationError

from .loader import ConfigPaths, expand_env_vars, get_config_paths

DEFAULT_API_BASE_URL = "https://api.openai.com/v1"
DEFAULT_INDEX_DB = Path(".lessonrag") / "embeddings.db"


@dataclass
class Settings:
    """Application settings loaded from environment and config files."""

    # API settings
    api_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    api_headers: dict[str, str] = field(default_factory=dict)
    request_timeout: float = 60.0

    # Embedding model
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 768
    embedding_request_dimensions: bool = True

    # Paths
    index_db_path: Path = DEFAULT_INDEX_DB
    lessons_db_path: Optional[Path] = None
    config_paths: Optional[ConfigPaths] = None

    # Indexing defaults
    max_chars: int = 1200
    max_embeddings_per_run: int = 200
    concurrency: int = 2
    retry_attempts: int = 2

    # Retrieval defaults
    top_k: int = 5
    query_retry_attempts: int = 1

    # Runtime
    verbose: bool = False


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings_yaml(paths: ConfigPaths) -> dict[str, Any]:
    """
    Load settings.yaml from all config locations and merge them.

    Priority (later takes precedence):
    1. Package defaults
    2. User config
    3. Local config
    """
    merged: dict[str, Any] = {}
    for settings_file in paths.settings_files():
        try:
            with open(settings_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Could not read {settings_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{settings_file} must contain a mapping")
        merged = _deep_merge(merged, data)
    return merged


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"settings.yaml section '{name}' must be a mapping")
    return value


def _env_or(name: str, fallback: Any) -> Any:
    raw = os.getenv(name, "").strip()
    return raw if raw else fallback


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def load_settings() -> Settings:
    """
    Load settings from all configuration sources.

    Priority (highest to lowest):
    1. Environment variables (including from .env files)
    2. Local .lessonrag/ directory
    3. User ~/.config/lessonrag/ directory
    4. Package defaults

    Raises:
        ConfigurationError: If a config file is malformed or a numeric
            value cannot be parsed.
    """
    paths = get_config_paths()

    # Load .env file (local takes priority)
    if paths.env_file:
        load_dotenv(paths.env_file, override=True)

    data = load_settings_yaml(paths)
    api = _section(data, "api")
    embedding = _section(data, "embedding")
    storage = _section(data, "storage")
    indexing = _section(data, "indexing")
    retrieval = _section(data, "retrieval")

    api_key = (
        os.getenv("LESSONRAG_API_KEY", "").strip()
        or expand_env_vars(str(api.get("key") or ""))
        or os.getenv("OPENAI_API_KEY", "").strip()
    )
    headers = {
        str(name): expand_env_vars(str(value))
        for name, value in (api.get("headers") or {}).items()
    }

    lessons_db = _env_or("LESSONRAG_LESSONS_DB", storage.get("lessons_db"))

    return Settings(
        api_key=api_key,
        api_base_url=_env_or(
            "LESSONRAG_API_BASE_URL", api.get("base_url") or DEFAULT_API_BASE_URL
        ),
        api_headers=headers,
        request_timeout=_as_float("api.timeout", api.get("timeout", 60.0)),
        embedding_model=_env_or(
            "LESSONRAG_EMBEDDING_MODEL", embedding.get("model") or "text-embedding-3-small"
        ),
        embedding_dimension=_as_int(
            "LESSONRAG_EMBEDDING_DIMENSION",
            _env_or("LESSONRAG_EMBEDDING_DIMENSION", embedding.get("dimension", 768)),
        ),
        embedding_request_dimensions=_as_bool(embedding.get("send_dimensions", True)),
        index_db_path=Path(
            expand_env_vars(
                str(_env_or("LESSONRAG_INDEX_DB", storage.get("index_db") or DEFAULT_INDEX_DB))
            )
        ),
        lessons_db_path=Path(expand_env_vars(str(lessons_db))) if lessons_db else None,
        config_paths=paths,
        max_chars=_as_int(
            "LESSONRAG_MAX_CHARS", _env_or("LESSONRAG_MAX_CHARS", indexing.get("max_chars", 1200))
        ),
        max_embeddings_per_run=_as_int(
            "LESSONRAG_MAX_EMBEDDINGS",
            _env_or("LESSONRAG_MAX_EMBEDDINGS", indexing.get("max_embeddings_per_run", 200)),
        ),
        concurrency=_as_int(
            "LESSONRAG_CONCURRENCY",
            _env_or("LESSONRAG_CONCURRENCY", indexing.get("concurrency", 2)),
        ),
        retry_attempts=_as_int(
            "LESSONRAG_RETRY_ATTEMPTS",
            _env_or("LESSONRAG_RETRY_ATTEMPTS", indexing.get("retry_attempts", 2)),
        ),
        top_k=_as_int("LESSONRAG_TOP_K", _env_or("LESSONRAG_TOP_K", retrieval.get("top_k", 5))),
        query_retry_attempts=_as_int(
            "LESSONRAG_QUERY_RETRY_ATTEMPTS",
            _env_or("LESSONRAG_QUERY_RETRY_ATTEMPTS", retrieval.get("retry_attempts", 1)),
        ),
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset global settings (useful for testing or directory change)."""
    global _settings
    _settings = None
