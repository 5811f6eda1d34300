"""
Structured Logging Configuration

This module configures structured logging using the 'structlog' library.
It sets up processors for adding timestamps, log levels, the active call id
and service context, and renders logs in JSON (default) or colorized console
format based on env.
"""

import os
import logging
import sys
import contextvars
import time

import structlog
from structlog import dev as structlog_dev
from logging.handlers import RotatingFileHandler

# Context variable holding the id of the call currently being recovered
call_id_var = contextvars.ContextVar('call_id', default=None)


def get_call_id():
    """Get the active call ID."""
    return call_id_var.get()


def set_call_id(value=None):
    """Set (or clear, with None) the active call ID."""
    call_id_var.set(value)


def add_call_id(logger, method_name, event_dict):
    """Add the active call ID to the log record unless one was passed explicitly."""
    call_id = get_call_id()
    if call_id and 'call_id' not in event_dict:
        event_dict['call_id'] = call_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service context to the log record."""
    event_dict['service'] = 'voipfix'
    # Prefer stdlib logger name injected by structlog.stdlib.add_logger_name
    component = event_dict.get('logger')
    if not component:
        try:
            component = getattr(getattr(logger, 'logger', None), 'name', None) or getattr(logger, 'name')
        except AttributeError:
            component = 'unknown'
    event_dict['component'] = component
    return event_dict


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="voipfix.log", service_name="voipfix"):
    """
    Set up structured logging.

    Environment overrides (optional):
      - LOG_LEVEL: debug|info|warning|error|critical (default: INFO)
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR:  0|1 (console only; default: 1)
      - LOG_TO_FILE: 0|1 (default: 0)
      - LOG_FILE_PATH: path (default: voipfix.log)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level.upper()
    try:
        if os.getenv("LOG_TO_FILE") is not None:
            log_to_file = bool(int(os.getenv("LOG_TO_FILE", "0")))
    except ValueError:
        pass
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    # Only show stack traces when LOG_LEVEL=debug unless forced
    log_level_upper = log_level.upper() if isinstance(log_level, str) else logging.getLevelName(log_level)
    tb_mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()  # auto|always|never
    if tb_mode == "always":
        show_tracebacks = True
    elif tb_mode == "never":
        show_tracebacks = False
    else:
        show_tracebacks = (log_level_upper == "DEBUG")

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        """Remove exc_info from event when tracebacks are disabled by policy."""
        if not show_tracebacks and event_dict.get("exc_info"):
            event_dict.pop("exc_info", None)
        return event_dict

    if isinstance(log_level, str):
        level_value = getattr(logging, log_level_upper, logging.INFO)
    else:
        level_value = int(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_call_id,
            suppress_exc_info_if_disabled,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer(colors=log_color) if log_format == "console" else structlog.processors.JSONRenderer()

    # Stdlib ProcessorFormatter for both structlog and foreign loggers
    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            ts = time.strftime("%Y%m%d-%H%M%S")
            path = log_file_path
            if path.endswith(os.sep) or os.path.isdir(path):
                path = os.path.join(path, f"{service_name}-{ts}.log")
            elif "{ts}" in path:
                path = path.replace("{ts}", ts)
            dirname = os.path.dirname(path)
            if dirname:
                os.makedirs(dirname, exist_ok=True)
            file_handler = RotatingFileHandler(
                path, maxBytes=10*1024*1024, backupCount=5
            )
            file_handler.setFormatter(processor_formatter)
            root_logger.addHandler(file_handler)
            get_logger(__name__).info("File logging configured", log_file_path=path)
        except OSError as e:
            # Fall back to console-only if file logging fails
            get_logger(__name__).warning(
                "File logging disabled due to error; continuing with console only",
                error=str(e),
                configured_path=log_file_path,
            )

    logging.getLogger('asyncio').setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
