"""Root logger wiring for quotaflow.

Output goes to stdout and, when a path is configured, to a size-rotated file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(message)s'
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

# Third-party loggers held at WARNING unless the app runs at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "groq")


def resolve_level(level: Union[int, str, None]) -> int:
    """Accepts ``logging.DEBUG``, ``"debug"`` or ``"DEBUG"``."""
    if level is None:
        return DEFAULT_LOG_LEVEL
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else DEFAULT_LOG_LEVEL


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def setup_logging(
    log_level: Union[int, str] = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> None:
    """Replaces the root logger's handlers with quotaflow's.

    Args:
        log_level: Level as an int or a name such as ``"info"``.
        log_format: ``logging.Formatter`` format string.
        log_file: File to mirror output into; rotated at ``max_bytes``.
        max_bytes: Rotation size of the log file.
        backup_count: Rotated files to keep.
    """
    level = resolve_level(log_level)
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    formatter = logging.Formatter(log_format)
    _attach(root, logging.StreamHandler(sys.stdout), level, formatter)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            rotating = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
        except OSError as e:
            logging.error(f"File logging disabled, cannot open {log_file}: {e}", exc_info=True)
        else:
            _attach(root, rotating, level, formatter)
            logging.info(f"Mirroring log output to {log_file}")

    quiet_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logging.info(f"Logging ready at {logging.getLevelName(level)}")
