"""
Structured logging with automatic run context propagation.

Key Features:
- Standard logger.info() calls pick up run context automatically
- ContextVar-based propagation: safe across concurrent walks of many runs
- Dual output modes: JSON for production, human-readable for development

Context flow:
    WorkflowEngine.start_run() / handle_callback() -> sets run_id, version_id
        ↓ (automatic propagation via ContextVar)
    EdgeWalker.fire_node() -> adds node_id for the duration of the firing
        ↓
    Handler code -> logger.info("message") gets all of it
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Optional LogRecord attributes copied into JSON output when present
_EXTRA_FIELDS = ("node_id", "latency_ms", "endpoint", "status", "attempt")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each entry carries timestamp, level, logger and message, the current run
    context (run_id, version_id, node_id), and the ``event`` extra if given.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        event = getattr(record, "event", None)
        if event is not None:
            log_entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized formatter for development, prefixed with run context."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        run_id = context.get("run_id", "")
        node_id = context.get("node_id", "")

        prefix_parts = []
        if run_id:
            prefix_parts.append(f"run:{run_id[-8:]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the process. Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route HTTP client/server library logs through the JSON formatter too
        for logger_name in ("httpx", "httpcore", "aiohttp.access", "aiohttp.server"):
            logger = logging.getLogger(logger_name)
            logger.handlers.clear()
            logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Add fields to the current context.

    Set by the engine at run start, resume and callback handling (run_id,
    version_id) and around each node firing (node_id).
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Copy of the current context; empty dict if none is set."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear the context, e.g. between tests."""
    trace_context.set(None)
