"""Logging setup for the generator.

Plain text for terminals, JSON lines (``--json-logs``) for CI jobs that
collect generator diagnostics. Everything is written to stderr; stdout is
reserved for the CLI's summary tables.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Pipeline context a caller may attach with ``extra={...}``
CONTEXT_ATTRIBUTES = ("phase", "module_id", "bundle_file", "full_url", "element_path")

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class StructuredFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for attribute in CONTEXT_ATTRIBUTES:
            value = getattr(record, attribute, None)
            if value is not None:
                entry[attribute] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)

        return json.dumps(entry, default=str)


def setup_logging(use_json: bool = False, log_level: Optional[str] = None) -> None:
    """Configure the root logger for a generator run.

    Parameters:
        use_json: Emit JSON lines instead of plain text
        log_level: Level name; falls back to FHIRGEN_LOG_LEVEL, then INFO.
            Unknown names mean INFO.
    """
    level_name = log_level or os.getenv("FHIRGEN_LOG_LEVEL", "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if use_json else logging.Formatter(PLAIN_FORMAT, datefmt="%H:%M:%S"))
    root_logger.addHandler(handler)

    logger.debug(f"Logging configured at {logging.getLevelName(level)} ({'json' if use_json else 'plain'})")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
