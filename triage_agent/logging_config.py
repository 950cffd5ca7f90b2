"""
logging_config.py — Logging setup for the triage entry points.

Call `setup_logging()` once from cli.py or app.py before other project
imports. Levels, the log file and its rotation come from config.py.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from triage_agent.config import LOG_BACKUP_COUNT, LOG_FILE, LOG_LEVEL, LOG_MAX_BYTES

LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# transport and SDK chatter stays at WARNING whatever the app level
_QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "mcp", "anyio")


def _file_handler(log_file: Path) -> logging.handlers.RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )


def setup_logging(level: str | None = None, log_file: Path = LOG_FILE) -> None:
    """
    Attach a stdout handler and a rotating file handler to the root logger.

    Repeat calls only change the level, so the CLI can lower it after
    parsing --log-level.

    Args:
        level:    "DEBUG", "INFO" or "WARNING"; defaults to LOG_LEVEL.
        log_file: Rotating log destination; defaults to LOG_FILE.
    """
    level = (level or LOG_LEVEL).upper()
    numeric_level = getattr(logging, level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    ours = [h for h in root.handlers if getattr(h, "_triage_handler", False)]
    if ours:
        for handler in ours:
            handler.setLevel(numeric_level)
        return

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in (logging.StreamHandler(sys.stdout), _file_handler(log_file)):
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler._triage_handler = True
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info("Logging initialised — level=%s, file=%s", level, log_file)
