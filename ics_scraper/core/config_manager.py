"""Configuration management for ics_scraper runs."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config_models import ICSMethod, ScraperConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "ICS_SCRAPER_"
_TRUTHY = ("1", "true", "yes", "on")


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs from the .env file.
        Empty dict if file doesn't exist or cannot be read.

    Note:
        - Skips empty lines and comments (lines starting with #)
        - Strips quotes (both single and double) from values
        - Handles KEY=VALUE format with optional whitespace
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}

    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)
        return {}

    for raw_line in content.splitlines():
        line = raw_line.strip()

        if not line or line.startswith("#") or "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        val = val.strip().strip('"').strip("'")

        if key:
            result[key] = val

    return result


def _env(name: str) -> Optional[str]:
    """Read ``ICS_SCRAPER_<name>`` falling back to the bare ``<name>``."""
    value = os.environ.get(f"{ENV_PREFIX}{name}") or os.environ.get(name)
    return value if value else None


def _env_int(name: str) -> Optional[int]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; ignoring", name, raw)
        return None


def _env_float(name: str) -> Optional[float]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; ignoring", name, raw)
        return None


def _env_bool(name: str) -> Optional[bool]:
    raw = _env(name)
    if raw is None:
        return None
    return raw.strip().lower() in _TRUTHY


class ConfigManager:
    """Manages scrape configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load .env file and set environment variables.

        Only sets variables that are not already in the environment.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        parsed = parse_env_file(self.env_file_path)

        set_keys = []
        for key, val in parsed.items():
            if key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))

        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build a nested configuration dictionary from environment variables.

        Each variable is read as ``ICS_SCRAPER_<NAME>`` first and ``<NAME>`` second:
        - SOURCE_URL, SOURCE_USER_AGENT -> source
        - ANTHROPIC_API_KEY, AI_MODEL, MAX_CONTINUATIONS -> processing.ai
        - BATCH_SIZE, DEADLINE_SECONDS -> processing
        - RETRY_ATTEMPTS -> processing.retry.max_attempts
        - CACHE_ENABLED, CACHE_TTL -> processing.cache
        - DEFAULT_TIMEZONE, DETECT_TIMEZONE -> processing.timezone (and ics.timezone)
        - CALENDAR_NAME, INCLUDE_ALARMS -> ics

        Returns:
            Dictionary suitable for ``ScraperConfig.model_validate``
        """
        source: dict[str, Any] = {}
        processing: dict[str, Any] = {}
        ai: dict[str, Any] = {}
        retry: dict[str, Any] = {}
        cache: dict[str, Any] = {}
        timezone: dict[str, Any] = {}
        ics: dict[str, Any] = {}

        url = _env("SOURCE_URL")
        if url:
            source["url"] = url
        user_agent = _env("SOURCE_USER_AGENT")
        if user_agent:
            source["user_agent"] = user_agent

        api_key = _env("ANTHROPIC_API_KEY")
        if api_key:
            ai["api_key"] = api_key
        model = _env("AI_MODEL")
        if model:
            ai["model"] = model
        continuations = _env_int("MAX_CONTINUATIONS")
        if continuations is not None:
            ai["max_continuations"] = continuations

        batch_size = _env_int("BATCH_SIZE")
        if batch_size is not None:
            processing["batch_size"] = batch_size
        deadline = _env_float("DEADLINE_SECONDS")
        if deadline is not None:
            processing["deadline_seconds"] = deadline

        attempts = _env_int("RETRY_ATTEMPTS")
        if attempts is not None:
            retry["max_attempts"] = attempts

        cache_enabled = _env_bool("CACHE_ENABLED")
        if cache_enabled is not None:
            cache["enabled"] = cache_enabled
        cache_ttl = _env_int("CACHE_TTL")
        if cache_ttl is not None:
            cache["ttl"] = cache_ttl

        default_tz = _env("DEFAULT_TIMEZONE")
        if default_tz:
            timezone["default"] = default_tz
            ics["timezone"] = default_tz
        detect = _env_bool("DETECT_TIMEZONE")
        if detect is not None:
            timezone["auto_detect"] = detect

        calendar_name = _env("CALENDAR_NAME")
        if calendar_name:
            ics["calendar_name"] = calendar_name
        alarms = _env_bool("INCLUDE_ALARMS")
        if alarms is not None:
            ics["include_alarms"] = alarms

        for key, section in (("ai", ai), ("retry", retry), ("cache", cache), ("timezone", timezone)):
            if section:
                processing[key] = section

        cfg: dict[str, Any] = {}
        if source:
            cfg["source"] = source
        if processing:
            cfg["processing"] = processing
        if ics:
            cfg["ics"] = ics
        return cfg

    def load_full_config(self) -> dict[str, Any]:
        """Load .env file and build configuration from environment.

        Returns:
            Configuration dictionary
        """
        self.load_env_file()
        return self.build_config_from_env()


def create_config_from_env(
    env_file_path: Path | None = None, overrides: Optional[dict[str, Any]] = None
) -> ScraperConfig:
    """Build a validated ``ScraperConfig`` from the environment.

    Args:
        env_file_path: Optional .env file to load first
        overrides: Nested values applied on top of the environment

    Returns:
        Scraper configuration
    """
    cfg = ConfigManager(env_file_path).load_full_config()
    if overrides:
        cfg = _deep_merge(cfg, overrides)
    return ScraperConfig.model_validate(cfg)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def is_valid_url(url: str) -> bool:
    """Check that ``url`` is an absolute http(s) URL with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def validate_config(config: ScraperConfig, require_api_key: bool = True) -> list[str]:
    """Check a configuration before any processing starts.

    Args:
        config: Configuration to check
        require_api_key: False when an LLM client is injected directly

    Returns:
        List of human readable problems; empty when the configuration is usable
    """
    errors: list[str] = []

    if not config.source.url and config.source.content is None:
        errors.append("Source URL is required")
    elif config.source.url and not is_valid_url(config.source.url):
        errors.append(f"Invalid source URL: {config.source.url}")

    if require_api_key and not config.processing.ai.api_key:
        errors.append("Anthropic API key is required")

    if config.processing.batch_size < 1:
        errors.append("Batch size must be at least 1")

    if config.processing.ai.max_continuations < 0:
        errors.append("Max continuations cannot be negative")

    if config.ics.method not in {m.value for m in ICSMethod}:
        errors.append(f"Unsupported ICS method: {config.ics.method}")

    for label, tz in (
        ("default timezone", config.processing.timezone.default),
        ("calendar timezone", config.ics.timezone),
    ):
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Invalid {label}: {tz}")

    return errors

