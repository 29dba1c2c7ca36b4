"""
Logging configuration: JSON or text output, request context and masking of credentials
"""
import json
import logging
import re
import sys
from contextvars import ContextVar
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

from caseflow.core.config import get_settings

# Request-scoped fields (request_id, actor_id, ...) added to every JSON record
request_context: ContextVar[Dict[str, Any]] = ContextVar('request_context', default={})

_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName',
])

_ROTATION_WHEN = ('midnight', 'W0', 'W1', 'W2', 'W3', 'W4', 'W5', 'W6')


class SensitiveDataFilter(logging.Filter):
    """Masks credentials, e.g. a token in the notification webhook URL"""

    SENSITIVE_PATTERNS = [
        (re.compile(r'(password|token|secret)(["\']?\s*[:=]\s*["\']?)[^"\'\s&]+', re.IGNORECASE), r'\1\2***'),
        (re.compile(r'Bearer\s+[^\s"]+', re.IGNORECASE), 'Bearer ***'),
        (re.compile(r'(postgresql(?:\+\w+)?://[^:/\s]+:)[^@\s]+@', re.IGNORECASE), r'\1***@'),
    ]

    def __init__(self, enabled: bool = True):
        super().__init__()
        self.enabled = enabled

    def _mask(self, value: str) -> str:
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            value = pattern.sub(replacement, value)
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.enabled:
            return True

        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._mask(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class ContextualFormatter(logging.Formatter):
    """JSON formatter carrying request context and extra= fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_dict = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        ctx = request_context.get({})
        if ctx:
            log_dict.update(ctx)

        if record.exc_info:
            log_dict['exception'] = self.formatException(record.exc_info)

        # case_id, operation, from_stage, to_stage and the like
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key in log_dict:
                continue
            try:
                json.dumps(value, default=str)
                log_dict[key] = value
            except (TypeError, ValueError):
                log_dict[key] = str(value)

        return json.dumps(log_dict, ensure_ascii=False, default=str)


class LoggingConfig:
    """Centralized logging configuration"""

    _configured = False

    @classmethod
    def _module_levels(cls, settings) -> Dict[str, str]:
        levels = {
            "sqlalchemy.engine": "INFO" if settings.log_sqlalchemy else "WARNING",
            "sqlalchemy.pool": "WARNING",
            "uvicorn.access": "INFO" if settings.log_uvicorn_access else "WARNING",
            "uvicorn.error": "INFO",
            "httpx": "WARNING",
            "caseflow": settings.log_level,
        }
        if settings.log_module_levels:
            levels.update(json.loads(settings.log_module_levels))
        return levels

    @classmethod
    def _handlers(cls, settings) -> List[logging.Handler]:
        if settings.log_format.lower() == "json":
            formatter = ContextualFormatter(datefmt='%Y-%m-%d %H:%M:%S')
        else:
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
        masking = SensitiveDataFilter(enabled=not settings.log_sensitive_data)

        console_handler = logging.StreamHandler(sys.stdout)
        handlers: List[logging.Handler] = [console_handler]

        if settings.log_file_enabled:
            log_path = Path(settings.log_file_path)
            if not log_path.is_absolute():
                # Relative paths are resolved from the project root
                log_path = Path(__file__).resolve().parents[3] / log_path
            log_path.parent.mkdir(parents=True, exist_ok=True)

            when = settings.log_file_rotation if settings.log_file_rotation in _ROTATION_WHEN else 'midnight'
            handlers.append(TimedRotatingFileHandler(
                filename=str(log_path),
                when=when,
                backupCount=settings.log_file_retention,
                encoding='utf-8'
            ))

        for handler in handlers:
            handler.setFormatter(formatter)
            handler.addFilter(masking)
        return handlers

    @classmethod
    def configure(cls):
        """Configure root handlers and per-module levels from settings (once)"""
        if cls._configured:
            return

        settings = get_settings()
        logging.basicConfig(
            level=getattr(logging, settings.log_level),
            handlers=cls._handlers(settings),
            force=True
        )

        for module, level in cls._module_levels(settings).items():
            logger = logging.getLogger(module)
            logger.setLevel(getattr(logging, level.upper()))
            if module.startswith("sqlalchemy") or module.startswith("uvicorn"):
                logger.propagate = False

        cls._configured = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._configured:
            cls.configure()
        return logging.getLogger(name)

    @classmethod
    def set_context(cls, **kwargs):
        """Bind fields to every log record of the current request"""
        ctx = request_context.get({}).copy()
        ctx.update(kwargs)
        request_context.set(ctx)

    @classmethod
    def clear_context(cls):
        request_context.set({})


# Initialize on import
LoggingConfig.configure()
