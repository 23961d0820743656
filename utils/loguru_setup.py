import asyncio
import contextvars
import json
import logging
import os
import re
import sys
import traceback
import uuid
from typing import Dict, Any, Optional

from loguru import logger as _loguru_logger

CONTEXT_FIELDS = ('trace_id', 'prospect_id', 'operation')

# Context variables attached to every log record
trace_id_var = contextvars.ContextVar('trace_id', default=None)
prospect_id_var = contextvars.ContextVar('prospect_id', default=None)
operation_var = contextvars.ContextVar('operation', default=None)

_CONTEXT_VARS = {
    'trace_id': trace_id_var,
    'prospect_id': prospect_id_var,
    'operation': operation_var,
}


def capture_context() -> Dict[str, Any]:
    """Capture current trace context variables."""
    context = {}
    for name, var in _CONTEXT_VARS.items():
        value = var.get()
        if value is not None:
            context[name] = value
    return context


def restore_context(context: Dict[str, Any]) -> None:
    """Restore captured context variables."""
    for name, value in context.items():
        var = _CONTEXT_VARS.get(name)
        if var is not None:
            var.set(value)


def setup_context_preserving_task_factory():
    """
    Configure asyncio to preserve context variables across task boundaries.
    Call this once during application startup.

    Only affects tasks created after this function is called.
    """
    loop = asyncio.get_running_loop()
    original_task_factory = loop.get_task_factory()

    def context_preserving_task_factory(loop, coro, **kwargs):
        context = capture_context()

        async def context_wrapper():
            restore_context(context)
            return await coro

        if original_task_factory is not None:
            return original_task_factory(loop, context_wrapper(), **kwargs)
        return asyncio.tasks.Task(context_wrapper(), loop=loop, **kwargs)

    loop.set_task_factory(context_preserving_task_factory)


def set_trace_context(trace_id: Optional[str] = None,
                      prospect_id: Optional[str] = None,
                      operation: Optional[str] = None) -> Dict[str, Any]:
    """
    Set trace context variables and return a token dictionary that can be used to reset context.

    Args:
        trace_id: Trace ID to set (generates new UUID if None)
        prospect_id: Prospect the current work is about
        operation: Engine operation name, e.g. compute_intelligence

    Returns:
        Dictionary of reset tokens
    """
    tokens = {'trace_id': trace_id_var.set(trace_id if trace_id else str(uuid.uuid4()))}

    if prospect_id is not None:
        tokens['prospect_id'] = prospect_id_var.set(prospect_id)

    if operation is not None:
        tokens['operation'] = operation_var.set(operation)

    return tokens


def reset_trace_context(tokens: Dict[str, Any]) -> None:
    """Reset context variables using tokens from set_trace_context."""
    for var_name, token in tokens.items():
        var = _CONTEXT_VARS.get(var_name)
        if var is not None and token:
            var.reset(token)


class SafeFormattingMixin:
    """
    Prevents formatting errors when a message contains curly braces
    (e.g. a JSON payload) that are not meant as format fields.
    """

    def _safe_format_message(self, message, **kwargs):
        if not isinstance(message, str):
            message = str(message)

        format_names = re.findall(r'\{([^{}]+)\}', message)
        format_vars = {}
        extra_vars = {}
        for key, value in kwargs.items():
            if key in format_names:
                format_vars[key] = value
            else:
                extra_vars[key] = value

        if format_vars:
            try:
                message = message.format(**format_vars)
            except (KeyError, ValueError, IndexError):
                pass

        return message, extra_vars


class TraceContextAdapter(SafeFormattingMixin):
    """Adapter class to add trace context to logger calls with safe formatting."""

    def __init__(self, logger_instance, opt_options=None):
        self._logger = logger_instance
        self._opt_options = opt_options or {}

    def _add_context(self, kwargs):
        for name, var in _CONTEXT_VARS.items():
            if name not in kwargs:
                value = var.get()
                if value:
                    kwargs[name] = value
        return kwargs

    def _emit(self, level, message, exception=False, **kwargs):
        formatted_message, extra_kwargs = self._safe_format_message(message, **kwargs)
        extra_kwargs = self._add_context(extra_kwargs)
        # loguru opt() replaces earlier options, so merge them here
        options = dict(self._opt_options)
        options["depth"] = options.get("depth", 0) + 2
        options["exception"] = options.get("exception") or exception
        return self._logger.opt(**options).bind(**extra_kwargs).log(level, formatted_message)

    def debug(self, message, **kwargs):
        return self._emit("DEBUG", message, **kwargs)

    def info(self, message, **kwargs):
        return self._emit("INFO", message, **kwargs)

    def warning(self, message, **kwargs):
        return self._emit("WARNING", message, **kwargs)

    def error(self, message, **kwargs):
        return self._emit("ERROR", message, **kwargs)

    def critical(self, message, **kwargs):
        return self._emit("CRITICAL", message, **kwargs)

    def exception(self, message, **kwargs):
        return self._emit("ERROR", message, exception=True, **kwargs)

    def opt(self, **kwargs):
        return TraceContextAdapter(self._logger, {**self._opt_options, **kwargs})

    def bind(self, **kwargs):
        return TraceContextAdapter(self._logger.bind(**kwargs), self._opt_options)

    def __getattr__(self, name):
        return getattr(self._logger, name)


class _JSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if hasattr(obj, 'isoformat'):
            return obj.isoformat()
        if isinstance(obj, type):
            return obj.__name__
        return str(obj)


def _json_sink(message):
    record = message.record

    log_data = {
        "timestamp": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "severity": record["level"].name,
        "message": record["message"],
        "name": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    # Context fields first so they lead every line
    for field in CONTEXT_FIELDS:
        value = record["extra"].get(field)
        if value:
            log_data[field] = value

    for key, value in record["extra"].items():
        if key in CONTEXT_FIELDS or key == "exc_info":
            continue
        try:
            json.dumps({key: value}, cls=_JSONEncoder)
            log_data[key] = value
        except (TypeError, OverflowError, ValueError):
            log_data[key] = str(value)

    if record["exception"]:
        exc_type, exc_value, exc_tb = record["exception"]
        log_data["error"] = {
            "type": exc_type.__name__ if exc_type else "Exception",
            "message": str(exc_value),
            "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        }

    print(json.dumps(log_data, cls=_JSONEncoder))


class InterceptHandler(logging.Handler):
    """Route standard library logging (uvicorn, httpx, google-cloud) into loguru."""

    def emit(self, record):
        try:
            level = _loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extras = {'logger_name': record.name}
        for name, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                extras[name] = value

        _loguru_logger.bind(**extras).opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure loguru with JSON output and stdlib interception."""
    _loguru_logger.remove()

    log_level = os.getenv('LOG_LEVEL', 'DEBUG').upper()

    _loguru_logger.add(
        _json_sink,
        level=log_level,
        format="{message}",
        backtrace=True,
        diagnose=False,
        enqueue=False,
        catch=True
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Configure third-party loggers to avoid noise
    for logger_name in ["httpcore", "httpx", "urllib3", "google.auth"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    original_excepthook = sys.excepthook

    def exception_logger(exc_type, exc_value, exc_traceback):
        """Log uncaught exceptions with full traceback before system handling."""
        if not issubclass(exc_type, KeyboardInterrupt):
            _loguru_logger.opt(exception=(exc_type, exc_value, exc_traceback)).bind(**capture_context()).critical(
                "Uncaught exception: {}", str(exc_value)
            )
        return original_excepthook(exc_type, exc_value, exc_traceback)

    sys.excepthook = exception_logger

    return TraceContextAdapter(_loguru_logger)


# Initialize logger with trace context
logger = setup_logging()
