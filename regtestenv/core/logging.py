"""Logging setup for the CLI and long-running pipelines."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from regtestenv.core.json_canonical import canonical_json_dumps


class _JsonFormatter(logging.Formatter):
    """Render logs as compact JSON for machine-readable ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object | None] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return canonical_json_dumps(payload)


def setup_logging(
    level: int | str = logging.INFO,
    json_output: bool = False,
    log_file: Path | None = None,
) -> None:
    """
    Configure root logging once.

    Args:
        level: Root log level.
        json_output: Emit one JSON object per record instead of text.
        log_file: Optional file that receives the same records, e.g. the
            active profile's ``logs/`` directory.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if json_output:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


__all__ = ["setup_logging"]
