"""
Structured logging configuration
"""

import logging
import sys
import json
from datetime import datetime, timezone

# Scheduler context passed through ``extra=`` and emitted as top-level fields
CONTEXT_FIELDS = (
    "conversation_id",
    "organization_id",
    "stuck_reason",
    "action",
    "worker_id",
    "backoff_ms",
    "job",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter for production"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Setup production logging configuration"""

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = [console_handler]

    # Configure specific loggers
    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # Reduce SQL noise


class LoggerMixin:
    """Mixin to add logging capabilities to classes"""

    @property
    def logger(self) -> logging.Logger:
        """Get logger for this class"""
        return logging.getLogger(self.__class__.__name__)

    def log_info(self, message: str, **kwargs):
        """Log info message with context"""
        self.logger.info(message, extra=kwargs)

    def log_error(self, message: str, **kwargs):
        """Log error message with context"""
        self.logger.error(message, extra=kwargs)

    def log_warning(self, message: str, **kwargs):
        """Log warning message with context"""
        self.logger.warning(message, extra=kwargs)

    def log_debug(self, message: str, **kwargs):
        """Log debug message with context"""
        self.logger.debug(message, extra=kwargs)
