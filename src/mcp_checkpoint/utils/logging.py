"""
Logging configuration for the checkpoint MCP server.

This module provides centralized logging setup with:
- Structured event logging through structlog
- Rich console output outside of stdio mode
- A rotating JSON debug log that the debug tools can read back and clear
"""

import logging
import logging.handlers
import sys
import os
import io
from pathlib import Path
from typing import Optional, Dict, Any
import json
from datetime import datetime, timezone
import structlog
from rich.logging import RichHandler
from rich.console import Console
from rich.traceback import install as install_rich_traceback


DEBUG_LOG_NAME = "debug.log"

# Reconfigured in setup_logging once the transport mode is known
console = Console(file=sys.stderr)

_debug_log_path: Optional[Path] = None


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    _RESERVED = frozenset((
        'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
        'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
        'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
        'exc_text', 'stack_info', 'taskName',
    ))

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': record.process,
        }

        for key, value in record.__dict__.items():
            if key in self._RESERVED:
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        if record.exc_info:
            log_obj['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


def is_stdio_mode() -> bool:
    """True when the server speaks JSON-RPC over stdio."""
    return os.environ.get('CHECKPOINT_MCP_MODE') == 'stdio'


def setup_logging(
    app_name: str = "mcp-checkpoint",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> Dict[str, Any]:
    """
    Set up logging for the application.

    Args:
        app_name: Application name for log identification
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for the debug log (defaults to ~/.mcp-checkpoint/logs)
        enable_json: Render structlog events as JSON
        max_bytes: Rotation threshold for the debug log
        backup_count: Number of rotated debug logs to keep

    Returns:
        Dictionary with the main logger, the debug log path and the config used
    """
    global console, _debug_log_path

    stdio_mode = is_stdio_mode()
    if stdio_mode:
        # Nothing may reach stdout/stderr besides the JSON-RPC stream
        console = Console(file=io.StringIO(), force_terminal=False)
    else:
        console = Console(file=sys.stderr)
        install_rich_traceback(console=console)

    if log_dir is None:
        log_dir = Path.home() / ".mcp-checkpoint" / "logs"
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if (enable_json or stdio_mode)
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if not stdio_mode:
        console_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_suppress=["asyncio"],
        )
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)
    else:
        root_logger.addHandler(logging.NullHandler())

    debug_log_path = log_dir / DEBUG_LOG_NAME
    file_handler = logging.handlers.RotatingFileHandler(
        debug_log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    if enable_json:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
    root_logger.addHandler(file_handler)
    _debug_log_path = debug_log_path

    main_logger = structlog.get_logger(app_name)
    main_logger.info(
        "logging_initialized",
        app_name=app_name,
        log_level=log_level,
        log_dir=str(log_dir),
        enable_json=enable_json,
        stdio_mode=stdio_mode,
        pid=os.getpid(),
    )

    return {
        'logger': main_logger,
        'debug_log': debug_log_path,
        'console': console,
        'config': {
            'app_name': app_name,
            'log_level': log_level,
            'enable_json': enable_json,
        }
    }


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


def get_debug_log_path() -> Optional[Path]:
    """Path of the debug log configured by setup_logging, if any."""
    return _debug_log_path


def clear_debug_log(path: Optional[Path] = None) -> Path:
    """Truncate the debug log in place so the rotating handler keeps writing to it."""
    target = path or _debug_log_path
    if target is None:
        raise RuntimeError("Debug log is not configured; call setup_logging first")
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, 'w', encoding='utf-8'):
        pass
    return target


def log_function_call(logger: structlog.BoundLogger):
    """Decorator to log coroutine calls with timing."""
    def decorator(func):
        import functools

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = datetime.now(timezone.utc)
            logger.debug(f"calling_{func.__name__}")
            try:
                result = await func(*args, **kwargs)
                duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
                logger.info(
                    f"completed_{func.__name__}",
                    duration_ms=round(duration_ms, 2),
                    success=True
                )
                return result
            except Exception as e:
                duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
                logger.error(
                    f"failed_{func.__name__}",
                    duration_ms=round(duration_ms, 2),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return async_wrapper

    return decorator


__all__ = [
    'setup_logging',
    'get_logger',
    'get_debug_log_path',
    'clear_debug_log',
    'log_function_call',
    'is_stdio_mode',
    'JSONFormatter',
]
