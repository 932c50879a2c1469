"""Logging helpers.

The runtime uses Python logging with a JSON formatter so job, agent and lock
activity can be correlated from the log stream.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from conveyor.errors import PolicyViolationError

_STRUCTURED_KEYS = ("job_id", "agent_id", "stage", "lock", "event", "reason", "attempt", "hook")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Common structured extras (when provided).
        for k in _STRUCTURED_KEYS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True)


def apply_logging_config(logging_config_path: Path) -> None:
    raw = yaml.safe_load(logging_config_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise PolicyViolationError(f"Invalid logging config YAML root object: {logging_config_path}")
    logging.config.dictConfig(raw)
