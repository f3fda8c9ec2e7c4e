import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from hemolink.config import settings

# Context variables for request tracking
request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
caller_id: ContextVar[Optional[str]] = ContextVar("caller_id", default=None)
caller_role: ContextVar[Optional[str]] = ContextVar("caller_role", default=None)

LOG_DIR = "logs"
SERVICE_NAME = "hemolink-engine"


class ContextualJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every record with the request context"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["environment"] = settings.ENVIRONMENT
        log_record["service"] = SERVICE_NAME

        if request_id.get():
            log_record["request_id"] = request_id.get()
        if caller_id.get():
            log_record["user_id"] = caller_id.get()
        if caller_role.get():
            log_record["role"] = caller_role.get()

        if record.exc_info and record.exc_info[0] is not None:
            log_record["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_fields"):
            log_record.update(record.extra_fields)


class ApplicationLogger:
    """Configures the root logger once per process"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._setup_logging()
        return cls._instance

    def _setup_logging(self):
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        formatter = ContextualJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

        if settings.ENABLE_FILE_LOGGING:
            self._setup_file_handlers(formatter)

        self._configure_third_party_loggers()

    def _setup_file_handlers(self, formatter):
        os.makedirs(LOG_DIR, exist_ok=True)
        root_logger = logging.getLogger()

        app_handler = RotatingFileHandler(
            f"{LOG_DIR}/app.log", maxBytes=10_000_000, backupCount=10
        )
        app_handler.setFormatter(formatter)
        app_handler.setLevel(logging.INFO)
        root_logger.addHandler(app_handler)

        error_handler = TimedRotatingFileHandler(
            f"{LOG_DIR}/error.log", when="midnight", interval=1, backupCount=30
        )
        error_handler.setFormatter(formatter)
        error_handler.setLevel(logging.ERROR)
        root_logger.addHandler(error_handler)

        access_handler = TimedRotatingFileHandler(
            f"{LOG_DIR}/access.log", when="midnight", interval=1, backupCount=30
        )
        access_handler.setFormatter(formatter)
        access_logger = logging.getLogger("access")
        access_logger.addHandler(access_handler)
        access_logger.setLevel(logging.INFO)

        perf_handler = RotatingFileHandler(
            f"{LOG_DIR}/performance.log", maxBytes=5_000_000, backupCount=5
        )
        perf_handler.setFormatter(formatter)
        perf_logger = logging.getLogger("performance")
        perf_logger.addHandler(perf_handler)
        perf_logger.setLevel(logging.INFO)

    def _configure_third_party_loggers(self):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
        logging.getLogger("apscheduler").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").handlers.clear()


def configure_logging() -> logging.Logger:
    """Install the JSON handlers and return the root logger."""
    ApplicationLogger()
    return logging.getLogger()


def log_security_event(
    event_type: str,
    subject: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log access-control events (denied scope, bad tokens)"""
    security_logger = logging.getLogger("security")

    log_data = {"event_type": event_type, "ip_address": ip_address}
    if subject:
        log_data["target_user_id"] = subject
    if details:
        log_data.update(details)

    security_logger.warning(
        f"Security event: {event_type}", extra={"extra_fields": log_data}
    )


def log_performance_metric(
    operation: str,
    duration_seconds: float,
    additional_metrics: Optional[Dict[str, Any]] = None,
):
    perf_logger = logging.getLogger("performance")

    log_data = {
        "operation": operation,
        "duration_seconds": round(duration_seconds, 4),
        "performance_category": "slow" if duration_seconds > 1.0 else "normal",
    }
    if additional_metrics:
        log_data.update(additional_metrics)

    perf_logger.info(
        f"Performance metric: {operation}", extra={"extra_fields": log_data}
    )


def log_api_access(
    method: str,
    path: str,
    status_code: int,
    response_time: float,
    subject: Optional[str] = None,
    ip_address: Optional[str] = None,
):
    access_logger = logging.getLogger("access")

    log_data = {
        "http_method": method,
        "path": path,
        "status_code": status_code,
        "response_time_seconds": round(response_time, 4),
        "ip_address": ip_address,
    }
    if subject:
        log_data["user_id"] = subject

    access_logger.info(
        f"{method} {path} - {status_code}", extra={"extra_fields": log_data}
    )


class LogContext:
    """Context manager for setting request context"""

    def __init__(
        self,
        req_id: Optional[str] = None,
        subject: Optional[str] = None,
        role: Optional[str] = None,
    ):
        self.request_id = req_id
        self.subject = subject
        self.role = role
        self.tokens = []

    def __enter__(self):
        if self.request_id:
            self.tokens.append(request_id.set(self.request_id))
        if self.subject:
            self.tokens.append(caller_id.set(self.subject))
        if self.role:
            self.tokens.append(caller_role.set(self.role))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self.tokens):
            token.var.reset(token)
