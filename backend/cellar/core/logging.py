"""
Structured Logging Module
Provides operation-scoped logging with operation_id propagation.
"""
import asyncio
import logging
import uuid
import time
import json
from contextvars import ContextVar
from typing import Optional, Any, Dict
from functools import wraps

from cellar.core.config import settings

# Context variable for operation-scoped data
operation_id_var: ContextVar[Optional[str]] = ContextVar('operation_id', default=None)
operation_start_var: ContextVar[Optional[float]] = ContextVar('operation_start', default=None)


def get_operation_id() -> Optional[str]:
    """Get current operation ID from context."""
    return operation_id_var.get()


def set_operation_id(operation_id: str) -> None:
    """Set operation ID in context."""
    operation_id_var.set(operation_id)


def generate_operation_id() -> str:
    """Generate a new unique operation ID."""
    return str(uuid.uuid4())[:8]


class StructuredLogger:
    """
    Structured JSON logger with operation context support.
    Logs in JSON format for production, human-readable for development.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name
        self._is_json = settings.APP_ENV == 'production'

    def _build_log_record(
        self,
        level: str,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> Dict[str, Any]:
        record = {
            'timestamp': time.strftime('%Y-%m-%dT%H:%M:%S%z'),
            'level': level,
            'logger': self.name,
            'message': message,
            'env': settings.APP_ENV,
        }

        operation_id = get_operation_id()
        if operation_id:
            record['operation_id'] = operation_id

        start = operation_start_var.get()
        if start:
            record['elapsed_ms'] = round((time.time() - start) * 1000, 2)

        if extra:
            record['context'] = extra

        if error:
            record['error'] = {
                'type': type(error).__name__,
                'message': str(error),
            }

        return record

    def _format_message(self, record: Dict[str, Any]) -> str:
        if self._is_json:
            return json.dumps(record, default=str)

        parts = [
            f"[{record.get('operation_id', '-')}]",
            record['message'],
        ]

        if 'context' in record:
            parts.append(f"| {record['context']}")

        if 'error' in record:
            parts.append(f"| error={record['error']['type']}: {record['error']['message']}")

        return ' '.join(parts)

    def debug(self, message: str, **extra):
        record = self._build_log_record('DEBUG', message, extra if extra else None)
        self.logger.debug(self._format_message(record))

    def info(self, message: str, **extra):
        record = self._build_log_record('INFO', message, extra if extra else None)
        self.logger.info(self._format_message(record))

    def warning(self, message: str, **extra):
        record = self._build_log_record('WARNING', message, extra if extra else None)
        self.logger.warning(self._format_message(record))

    def error(self, message: str, error: Optional[Exception] = None, **extra):
        record = self._build_log_record('ERROR', message, extra if extra else None, error)
        self.logger.error(self._format_message(record))


def get_logger(name: str = 'cellar') -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


# Pre-configured loggers for different domains
batch_logger = get_logger('cellar.batches')
ledger_logger = get_logger('cellar.ledger')
measurement_logger = get_logger('cellar.measurements')
lineage_logger = get_logger('cellar.lineage')
report_logger = get_logger('cellar.reports')
db_logger = get_logger('cellar.database')


def log_operation(operation: str, logger: Optional[StructuredLogger] = None):
    """
    Decorator for logging function entry/exit with timing.

    Usage:
        @log_operation("rack_batch", batch_logger)
        async def rack_batch(...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            log = logger or batch_logger
            token = operation_id_var.set(get_operation_id() or generate_operation_id())
            start = time.time()
            log.debug(f"{operation} started")
            try:
                result = await func(*args, **kwargs)
                duration = round((time.time() - start) * 1000, 2)
                log.info(f"{operation} completed", duration_ms=duration)
                return result
            except Exception as e:
                duration = round((time.time() - start) * 1000, 2)
                log.error(f"{operation} failed", error=e, duration_ms=duration)
                raise
            finally:
                operation_id_var.reset(token)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            log = logger or batch_logger
            start = time.time()
            log.debug(f"{operation} started")
            try:
                result = func(*args, **kwargs)
                duration = round((time.time() - start) * 1000, 2)
                log.info(f"{operation} completed", duration_ms=duration)
                return result
            except Exception as e:
                duration = round((time.time() - start) * 1000, 2)
                log.error(f"{operation} failed", error=e, duration_ms=duration)
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
