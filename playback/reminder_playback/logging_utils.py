"""
Logging utilities for structured logging
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import ExecutionResult

_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message',
))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ReminderPlaybackFilter(logging.Filter):
    """Filter for reminder playback specific logging"""

    def filter(self, record: logging.LogRecord) -> bool:
        # discord.py logs every ffmpeg shutdown at INFO
        if record.name == "discord.player" and record.levelno <= logging.INFO:
            msg = record.getMessage()
            if "ffmpeg process" in msg and "terminated" in msg:
                return False

        if hasattr(record, 'event_name'):
            record.event_context = {"event_name": record.event_name}

        if hasattr(record, 'channel_id'):
            record.channel_context = {"channel_id": record.channel_id}

        return True


def setup_logging(log_level: str = "INFO", log_format: str = "text",
                  log_file: Optional[str] = None) -> None:
    """
    Setup structured logging for reminder playback system.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ("json", "simple" or "text")
        log_file: Optional log file path
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    root_logger.handlers.clear()

    if log_format.lower() == "json":
        formatter = JSONFormatter()
    elif log_format.lower() == "simple":
        formatter = logging.Formatter(
            '%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ReminderPlaybackFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ReminderPlaybackFilter())
        root_logger.addHandler(file_handler)

    logging.getLogger('discord').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('edge_tts').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_phase_start(logger: logging.Logger, phase: str, event_name: str,
                    channel_id: str, **kwargs) -> None:
    """
    Log the start of a pipeline phase.

    Args:
        logger: Logger instance
        phase: Phase name (gate, connect, settle, resolve, play, disconnect)
        event_name: Event being executed
        channel_id: Target channel
        **kwargs: Additional context
    """
    logger.debug(
        f"Starting phase: {phase}",
        extra={
            "phase": phase,
            "event_name": event_name,
            "channel_id": channel_id,
            "phase_action": "start",
            **kwargs
        }
    )


def log_phase_end(logger: logging.Logger, phase: str, event_name: str, channel_id: str,
                  duration_ms: Optional[int] = None, success: bool = True,
                  **kwargs) -> None:
    """
    Log the end of a pipeline phase.

    Args:
        logger: Logger instance
        phase: Phase name
        event_name: Event being executed
        channel_id: Target channel
        duration_ms: Phase duration in milliseconds
        success: Whether phase was successful
        **kwargs: Additional context
    """
    logger.debug(
        f"Completed phase: {phase} (success: {success})",
        extra={
            "phase": phase,
            "event_name": event_name,
            "channel_id": channel_id,
            "phase_action": "end",
            "duration_ms": duration_ms,
            "success": success,
            **kwargs
        }
    )


def log_session_state_change(logger: logging.Logger, guild_id: str,
                             old_state: str, new_state: str, **kwargs) -> None:
    logger.debug(
        f"Voice session state change: {old_state} -> {new_state}",
        extra={
            "guild_id": guild_id,
            "event_type": "state_change",
            "old_state": old_state,
            "new_state": new_state,
            **kwargs
        }
    )


def log_error(logger: logging.Logger, event_name: str, channel_id: str, error: BaseException,
              context: Optional[Dict[str, Any]] = None) -> None:
    """
    Log an execution failure with event and channel context.

    Args:
        logger: Logger instance
        event_name: Event being executed
        channel_id: Target channel
        error: Exception that occurred
        context: Additional context
    """
    logger.error(
        f"Event execution failed: {error}",
        extra={
            "event_name": event_name,
            "channel_id": channel_id,
            "event_type": "error",
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": context or {}
        },
        exc_info=(type(error), error, error.__traceback__)
    )


def log_execution(logger: logging.Logger, result: ExecutionResult) -> None:
    """Log the outcome and timings of one (event, channel) execution"""
    logger.info(
        f"Execution finished for {result.event_name} in {result.channel_id}: "
        f"{result.outcome.value if result.outcome else 'unknown'}",
        extra={
            "event_name": result.event_name,
            "channel_id": result.channel_id,
            "event_type": "execution",
            "execution": result.to_dict()
        }
    )
