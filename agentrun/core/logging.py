from __future__ import annotations

import logging
import sys

from agentrun.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Keep transport libraries quiet unless explicitly debugging.
_NOISY_LOGGERS = ("httpx", "httpcore", "arq.worker")

_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; safe to call repeatedly.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
