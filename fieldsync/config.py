"""Configuration for fieldsync.

Settings resolve in priority order:
1. Explicit keyword arguments
2. ``FIELDSYNC_*`` environment variables
3. ``<home>/config.json``
4. Defaults below
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fieldsync.utils import get_fieldsync_home

logger = logging.getLogger(__name__)

ENV_PREFIX = "FIELDSYNC_"


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        if (parsed.hostname or "") not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


@dataclass
class Settings:
    """Tunable parameters for storage, sync and encryption."""

    home: Path = field(default_factory=get_fieldsync_home)
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    device_id: Optional[str] = None

    # Outbox retry policy
    retry_base_delay_ms: int = 1000
    backoff_multiplier: int = 2
    max_backoff_ms: int = 5 * 60 * 1000
    max_retries: int = 10

    # Sync engine
    batch_size: int = 50
    network_timeout: float = 10.0
    breaker_threshold: int = 5
    connectivity_ttl: float = 30.0

    # Scheduler (seconds)
    inactivity_delay: float = 50.0
    periodic_interval: float = 30.0
    min_sync_interval: float = 30.0
    max_sync_interval: float = 300.0
    startup_delay: float = 2.0

    # Storage
    backup_max_bytes: int = 5 * 1024 * 1024

    # Encryption
    pbkdf2_iterations: int = 100_000

    @property
    def data_dir(self) -> Path:
        return Path(self.home) / "data"

    @classmethod
    def load(cls, home: Optional[Path] = None, **overrides: Any) -> "Settings":
        """Build settings from config.json, environment and ``overrides``."""
        home = Path(home) if home is not None else get_fieldsync_home()
        values: Dict[str, Any] = {"home": home}
        values.update(_read_config_file(home / "config.json"))
        values.update(_read_env())
        values.update({k: v for k, v in overrides.items() if v is not None})

        known = {f.name: f for f in fields(cls)}
        unknown = set(values) - set(known)
        for name in sorted(unknown):
            logger.debug(f"Ignoring unknown setting '{name}'")
            values.pop(name)

        settings = cls(**{k: _coerce(known[k].type, v) for k, v in values.items()})
        if settings.backend_url:
            settings = replace(settings, backend_url=validate_backend_url(settings.backend_url))
        return settings


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to load config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return data


def _read_env() -> Dict[str, Any]:
    values = {}
    for f in fields(Settings):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is not None and f.name != "home":
            values[f.name] = raw
    return values


def _coerce(type_hint: Any, value: Any) -> Any:
    if value is None:
        return None
    if type_hint is int:
        return int(value)
    if type_hint is float:
        return float(value)
    if type_hint is Path:
        return Path(value).expanduser()
    return value
