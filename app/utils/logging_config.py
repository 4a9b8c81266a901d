"""
Logging setup for the calendar sync service.

Reconciliation passes log every remote and local mutation with a
bracketed prefix ("[Remote->Local][Conn:...]"), so the formatter only adds
the logger name and level. Container runtimes stamp their own time, so
the timestamp is dropped there.

Environment:
    LOG_LEVEL       root level (default INFO)
    SYNC_LOG_LEVEL  level for the reconciliation loggers only, e.g. DEBUG
                    to trace one clinician's sync without flooding the rest

Usage:
    from app.utils.logging_config import configure_logging
    configure_logging()
"""
import os
import sys
import logging
from typing import Optional, TextIO

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers that emit the per-event reconciliation trail
SYNC_LOGGERS = ('app.services', 'app.calendar', 'app.utils.circuit_breaker')

# Every Nylas and PostgREST call goes through httpx; one INFO line per request is noise
QUIET_LOGGERS = ('httpx', 'httpcore', 'hpack', 'postgrest', 'supabase')


def running_in_container() -> bool:
    return bool(
        os.environ.get('FLY_APP_NAME') or
        os.environ.get('KUBERNETES_SERVICE_HOST') or
        os.path.exists('/.dockerenv')
    )


def resolve_level(name: Optional[str], default: int) -> int:
    """Map a level name such as 'debug' to its number, falling back to default."""
    if not name:
        return default
    resolved = logging.getLevelName(name.upper())
    # getLevelName returns "Level X" for unknown names
    return resolved if isinstance(resolved, int) else default


def configure_logging(
    level: int = logging.INFO,
    force: bool = False,
    stream: Optional[TextIO] = None
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Root level when LOG_LEVEL is unset
        force: Replace handlers that are already installed
        stream: Output stream (default: stdout)
    """
    root_logger = logging.getLogger()

    if root_logger.handlers and not force:
        return

    if force:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    root_level = resolve_level(os.environ.get('LOG_LEVEL'), level)
    containerized = running_in_container()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(
        CONTAINER_FORMAT if containerized else LOCAL_FORMAT,
        datefmt=None if containerized else DATE_FORMAT
    ))

    root_logger.setLevel(root_level)
    root_logger.addHandler(handler)

    sync_level = resolve_level(os.environ.get('SYNC_LOG_LEVEL'), root_level)
    for name in SYNC_LOGGERS:
        logging.getLogger(name).setLevel(sync_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_level))
