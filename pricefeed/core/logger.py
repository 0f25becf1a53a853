import logging
import json
import sys
from datetime import datetime
from pricefeed.config import settings

# Attributes every LogRecord carries; anything else came from `extra=`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_record:
                log_record[key] = value
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)

def setup_logger(name: str = "pricefeed", level: str = "INFO"):
    logger = logging.getLogger(name)
    logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    # Remove existing handlers to avoid duplicates
    logger.handlers = []
    logger.addHandler(handler)
    return logger

logger = setup_logger(level=settings.LOG_LEVEL.upper())
