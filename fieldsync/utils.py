"""Shared helpers for fieldsync."""

import os
import time
import uuid
from pathlib import Path


def get_fieldsync_home() -> Path:
    """Return the fieldsync data directory.

    Uses ``FIELDSYNC_HOME`` when set, otherwise ``~/.fieldsync``.
    """
    env_home = os.environ.get("FIELDSYNC_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".fieldsync"


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())
