import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

# Context fields callers may pass through `extra=`
CONTEXT_FIELDS = ("provider", "channel", "handler_id", "resolution", "state")

def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {f: getattr(record, f) for f in CONTEXT_FIELDS if getattr(record, f, None) is not None}

class JsonFormatter(logging.Formatter):
    """One JSON object per line, UTC millisecond timestamps"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            **record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)

def setup_logger(name: str = "chartfeed", level: str = "INFO", stream: Optional[TextIO] = None):
    log = logging.getLogger(name)
    log.setLevel(level.upper())

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    # A second setup call swaps the handler instead of adding one
    log.handlers = [handler]
    log.propagate = False
    return log

logger = setup_logger()
