"""
Logging setup for calsync.

Everything logs through ``logging.getLogger(__name__)``; this module only
decides where records go and at which level. Two channels can be tuned on
their own, without raising the whole service to DEBUG:

- sync: the orchestrator and pass claims (LOG_LEVEL_SYNC)
- providers: CalDAV and other provider clients (LOG_LEVEL_PROVIDERS)

In containers (Docker/Kubernetes/Fly.io) timestamps are left to the runtime.

Usage:
    from calsync.utils.logging_config import configure_logging
    configure_logging()
"""
import logging
import os
import sys
from typing import Dict, Optional, Tuple

IS_CONTAINERIZED = bool(
    os.environ.get('FLY_APP_NAME') or
    os.environ.get('KUBERNETES_SERVICE_HOST') or
    os.path.exists('/.dockerenv')
)

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# channel -> (env var, logger names)
CHANNELS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "sync": ("LOG_LEVEL_SYNC", ("calsync.services.sync_orchestrator", "calsync.services.sync_guard")),
    "providers": ("LOG_LEVEL_PROVIDERS", ("calsync.providers",)),
}

# Request/connection chatter from the HTTP stack
QUIET_LOGGERS = ("httpx", "httpcore", "hpack")


def parse_level(raw: Optional[str], default: Optional[int]) -> Optional[int]:
    """Level name or number; ``default`` for anything unrecognised."""
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else default


def level_from_env(default: int = logging.INFO) -> int:
    """Resolve LOG_LEVEL (name or number) to a logging level."""
    return parse_level(os.getenv("LOG_LEVEL"), default)


def configure_channels() -> Dict[str, int]:
    """Apply LOG_LEVEL_<CHANNEL> overrides; returns the levels that were set."""
    applied = {}
    for channel, (env_var, names) in CHANNELS.items():
        level = parse_level(os.getenv(env_var), None)
        if level is None:
            continue
        for name in names:
            logging.getLogger(name).setLevel(level)
        applied[channel] = level
    return applied


def configure_logging(level: int = None, force: bool = False) -> None:
    """
    Configure logging for the service.

    Args:
        level: Root level (default: LOG_LEVEL env or INFO)
        force: Replace handlers installed by an earlier call
    """
    level = level if level is not None else level_from_env()
    root_logger = logging.getLogger()

    if root_logger.handlers and not force:
        return

    if force:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    log_format = CONTAINER_FORMAT if IS_CONTAINERIZED else LOCAL_FORMAT
    datefmt = None if IS_CONTAINERIZED else DATE_FORMAT

    # no handler level: channel overrides below the root level must get through
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(log_format, datefmt=datefmt))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    applied = configure_channels()
    if applied:
        logging.getLogger(__name__).info(
            "Channel log levels: " + ", ".join(f"{c}={logging.getLevelName(l)}" for c, l in applied.items())
        )
