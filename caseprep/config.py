"""
Settings for the CasePrep feedback pipeline.

Values are resolved in three layers: dataclass defaults, then
``config/config.yaml``, then ``CASEPREP_<SECTION>_<KEY>`` environment
variables (``.env`` is loaded into the environment first).
:func:`get_settings` caches the result for the life of the process.
"""

import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class ApiSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    version: str = "1.0.0"


@dataclass
class CacheSettings:
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "caseprep"
    max_size: int = 10000
    ttl_by_category: Dict[str, int] = field(default_factory=lambda: {
        "drill": 3600,
        "user": 1800,
        "simulation": 7200,
        "feedback": 300,
    })


@dataclass
class AISettings:
    api_key: str = ""
    model: str = "gpt-4"
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass
class RetrySettings:
    max_attempts: int = 3
    inter_attempt_delay_seconds: float = 1.0
    per_attempt_timeout_seconds: float = 10.0


@dataclass
class FeedbackSettings:
    freshness_seconds: int = 300
    cache_category: str = "feedback"


@dataclass
class DatabaseSettings:
    url: str = ""
    echo: bool = False


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "json"


@dataclass
class Settings:
    """Top-level settings container."""
    api: ApiSettings = field(default_factory=ApiSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    ai: AISettings = field(default_factory=AISettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    feedback: FeedbackSettings = field(default_factory=FeedbackSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


ENV_PREFIX = "CASEPREP_"
DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.yaml"
DEFAULT_DOTENV_PATH = _PROJECT_ROOT / ".env"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _section_names() -> List[str]:
    return [f.name for f in fields(Settings)]


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Parse *path* as a YAML mapping; a missing or non-mapping file gives ``{}``."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Config file not found: %s", path)
        return {}
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


def _merge_section(section: object, values: Dict[str, Any]) -> None:
    """Copy known keys from *values* onto *section*.

    Mapping-valued settings (the TTL table) are updated key by key so a
    partial override keeps the remaining defaults.
    """
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            continue
        current = getattr(section, key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = {**current, **value}
        setattr(section, key, value)


def _coerce(raw: str, current: Any) -> Any:
    # bool is checked first: it is also an int
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUTHY
    if isinstance(current, (int, float, str)):
        return type(current)(raw)
    raise TypeError(f"unsupported setting type {type(current).__name__}")


def _apply_env_overrides(settings: Settings) -> None:
    """Apply ``CASEPREP_<SECTION>_<KEY>`` variables to scalar settings."""
    for section_name in _section_names():
        section = getattr(settings, section_name)
        for f in fields(section):
            env_key = f"{ENV_PREFIX}{section_name.upper()}_{f.name.upper()}"
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            try:
                setattr(section, f.name, _coerce(raw, getattr(section, f.name)))
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring %s: %s", env_key, exc)

    if not settings.ai.api_key:
        settings.ai.api_key = os.environ.get("OPENAI_API_KEY", "")


def load_settings(yaml_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Build a fresh :class:`Settings` from *yaml_path* and the environment."""
    raw = _read_yaml(yaml_path)
    settings = Settings()
    for section_name in _section_names():
        values = raw.get(section_name)
        if isinstance(values, dict):
            _merge_section(getattr(settings, section_name), values)
    _apply_env_overrides(settings)
    logger.info("Settings loaded from %s", yaml_path)
    return settings


_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the process-wide settings, loading them on first use.

    ``.env`` is read before the YAML file and never overrides variables
    already present in the environment.

    Args:
        yaml_path: Alternative YAML file.
        env_path: Alternative ``.env`` file.
        _force_reload: Discard the cached instance and load again.
    """
    global _settings

    with _settings_lock:
        if _settings is None or _force_reload:
            load_dotenv(env_path or DEFAULT_DOTENV_PATH, override=False)
            _settings = load_settings(yaml_path or DEFAULT_CONFIG_PATH)
        return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call reloads them."""
    global _settings
    with _settings_lock:
        _settings = None
