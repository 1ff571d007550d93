from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from core.settings import SYNC_LOG_PATH

ROOT_LOGGER = "taskshoot.sync"


def ensure_logger(name: str = ROOT_LOGGER, path: Optional[Path] = None) -> logging.Logger:
    """Return a logger under ``taskshoot.sync`` writing to the rotating sync log."""

    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        target = Path(path or SYNC_LOG_PATH)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = RotatingFileHandler(
                target, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
            )
        except OSError:
            handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s %(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return logging.getLogger(name)


def kv(name: str, /, **fields: Any) -> str:
    """Format a structured log line: ``name key=value ...``.

    ``name`` is positional-only so callers may log an ``event=`` field.
    """
    parts = [name]
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return " ".join(parts)


__all__ = ["ROOT_LOGGER", "ensure_logger", "kv"]
