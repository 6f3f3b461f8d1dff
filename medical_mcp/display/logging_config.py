"""File logging for the server, with API keys scrubbed from every record."""

import logging
import logging.config
import os
import re
import sys
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple

from medical_mcp.constants import LOG_DIR

_MASK = "***REDACTED***"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Loggers that follow the requested level. Chatty third-party loggers
# are listed in _QUIET_UNLESS_DEBUG instead.
_FOLLOW_LEVEL = ("medical_mcp", "mcp", "uvicorn", "uvicorn.error", "starlette")
# httpx logs every request line at INFO, query string included.
_QUIET_UNLESS_DEBUG = ("uvicorn.access", "httpx")


class SecretRedactionFilter(logging.Filter):
    """Masks registered secrets in a record's message and arguments.

    SerpAPI takes its key as a query parameter and upstream URLs are
    logged on failure, hence the filter on every handler.
    """

    def __init__(self) -> None:
        super().__init__()
        self._known: Set[str] = set()
        self._matcher: Optional["re.Pattern[str]"] = None

    def register(self, value: str) -> None:
        # Values under four characters would mask ordinary words.
        if not value or len(value) < 4:
            return
        self._known.add(value)
        # Longest first, so a secret containing another is masked whole.
        alternatives = sorted(self._known, key=len, reverse=True)
        self._matcher = re.compile("|".join(map(re.escape, alternatives)))

    def redact(self, text: str) -> str:
        return text if self._matcher is None else self._matcher.sub(_MASK, text)

    def _scrub(self, value: Any) -> Any:
        return self.redact(value) if isinstance(value, str) else value

    def filter(self, record: logging.LogRecord) -> bool:
        if self._matcher is not None:
            record.msg = self._scrub(record.msg)
            if isinstance(record.args, dict):
                record.args = {key: self._scrub(val) for key, val in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(map(self._scrub, record.args))
        return True


# Shared with the config loader, which registers keys as it reads them.
secret_redaction_filter = SecretRedactionFilter()


def _logger_entry(level: str) -> Dict[str, Any]:
    return {"handlers": ["logfile"], "propagate": False, "level": level}


def build_log_config(log_fpath: str, level: str) -> Dict[str, Any]:
    """Return a ``dictConfig`` mapping that writes everything to *log_fpath*."""
    debug = level == "DEBUG"
    loggers = {name: _logger_entry(level) for name in _FOLLOW_LEVEL}
    loggers.update({name: _logger_entry("INFO" if debug else "WARNING") for name in _QUIET_UNLESS_DEBUG})
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"redact": {"()": lambda: secret_redaction_filter}},
        "formatters": {
            "file": {
                "format": "%(asctime)s %(levelname)-7s [%(name)s:%(lineno)d] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "logfile": {
                "class": "logging.FileHandler",
                "level": "DEBUG",
                "formatter": "file",
                "filters": ["redact"],
                "filename": log_fpath,
                "encoding": "utf-8",
            },
        },
        "loggers": loggers,
        "root": {"handlers": ["logfile"], "level": level if debug else "WARNING"},
    }


def setup_logging(log_lvl_str: str, *, quiet: bool = False) -> Tuple[str, str]:
    """Point logging at a fresh timestamped file under ``LOG_DIR``.

    An unknown *log_lvl_str* falls back to ``INFO``. With *quiet* set,
    nothing is printed. Returns ``(log_file_path, level)``.
    """
    level = log_lvl_str.upper()
    if level not in _LEVELS:
        if not quiet:
            print(f"Warning: invalid log level '{log_lvl_str}'. Using 'INFO'.")
        level = "INFO"

    os.makedirs(LOG_DIR, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_fpath = os.path.join(LOG_DIR, f"medical_mcp_{stamp}_{level}.log")

    try:
        logging.config.dictConfig(build_log_config(log_fpath, level))
    except (ValueError, TypeError, AttributeError, ImportError, OSError) as e_log_cfg:
        if not quiet:
            print(f"Error applying logging configuration: {e_log_cfg}", file=sys.stderr)
    else:
        if not quiet:
            print(f"Logging initialized. File log level: {level}, log file: {log_fpath}")
    return log_fpath, level
