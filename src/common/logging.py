"""
Structured JSON logging setup for the session core using structlog.

- Use structlog for structured JSON logging
- Include event, module, and elapsed_ms fields
- Never write logs to stdout: it carries the stdio JSON-RPC stream
"""

import json
import logging
import logging.handlers
import subprocess
import sys
import time
from typing import Any, Optional

import structlog

from common.config import Config

# Global config reference for renderer settings
_config: Optional[Config] = None


def jq_format_json(json_str: str) -> str:
    """
    Format JSON string using jq-style pretty printing.
    Falls back to regular JSON pretty printing if jq is not available.
    """
    try:
        result = subprocess.run(
            ["jq", "."], input=json_str, text=True, capture_output=True, timeout=1
        )
        if result.returncode == 0:
            return result.stdout.rstrip()
    except (subprocess.TimeoutExpired, FileNotFoundError, subprocess.SubprocessError):
        pass

    try:
        parsed = json.loads(json_str)
        return json.dumps(parsed, indent=2)
    except json.JSONDecodeError:
        return json_str


def pretty_renderer(_, __, event_dict) -> str:
    """
    Custom renderer that formats logs based on configuration:
    - enable_jq_json_formatting: Uses jq-style JSON formatting
    - enable_pretty_print: Uses custom pretty format (removes timestamps, etc.)
    - Neither: Uses compact JSON format
    """
    json_str = str(structlog.processors.JSONRenderer()(_, __, event_dict))

    if _config and _config.enable_jq_json_formatting:
        return jq_format_json(json_str)

    if _config and _config.enable_pretty_print:
        filtered_dict = {
            k: v for k, v in event_dict.items() if k not in ["timestamp", "level", "logger"]
        }

        event = filtered_dict.pop("event", "unknown_event")
        output_lines = [f"EVENT: {event}"]

        for key, value in filtered_dict.items():
            if isinstance(value, (dict, list)):
                formatted_value = str(value).replace(", ", ",\n    ")
                output_lines.append(f"{key}: {formatted_value}")
            else:
                output_lines.append(f"{key}: {value}")

        output_lines.append("-" * 50)
        return "\n".join(output_lines)

    return json_str


def setup_logging(config: Config) -> None:
    """
    Setup structured JSON logging using structlog.

    Args:
        config: Application configuration
    """
    global _config
    _config = config

    log_level = getattr(logging, config.log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            pretty_renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = []

    # stderr only, stdout belongs to the wire
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(console_handler)

    if config.save_to_file:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=config.log_file_path,
            maxBytes=config.max_log_file_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        format="%(message)s",
        force=True,
    )


class TimedLogger:
    """Context manager for timing operations and logging elapsed time using structlog."""

    def __init__(self, logger: structlog.BoundLogger, event: str, **context: Any):
        """
        Initialize timed logger.

        Args:
            logger: structlog logger instance
            event: Event name for the log entry
            **context: Additional context to include in logs
        """
        self.logger = logger
        self.event = event
        self.context = context
        self.start_time: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def __enter__(self) -> "TimedLogger":
        """Start timing."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Log elapsed time, and the failure type if the block raised."""
        if self.start_time is None:
            return
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        if exc_type is not None:
            self.logger.warning(
                event=f"{self.event}_failed",
                elapsed_ms=self.elapsed_ms,
                error_type=exc_type.__name__,
                **self.context,
            )
        else:
            self.logger.info(event=self.event, elapsed_ms=self.elapsed_ms, **self.context)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a configured structlog logger."""
    return structlog.get_logger(name)


def log_startup_message(message: str, **kwargs: Any) -> None:
    """Log a startup message through the "startup" logger."""
    logger = get_logger("startup")
    logger.info(event=message, **kwargs)


def log_wire_frame(direction: str, frame: Any, session_id: Optional[str] = None) -> None:
    """
    Trace a JSON-RPC frame when log_wire_frames is enabled.

    Frames go to stderr (and the log file, if enabled) as raw JSON, bypassing
    structlog so that they stay copy-pasteable.

    Args:
        direction: "inbound" or "outbound"
        frame: Decoded frame (dict or list) or raw bytes
        session_id: Session the frame belongs to
    """
    if not _config or not _config.log_wire_frames:
        return

    if isinstance(frame, (bytes, bytearray)):
        frame = frame.decode("utf-8", errors="replace")

    log_entry = {
        "direction": direction,
        "session_id": session_id,
        "timestamp": time.time(),
        "frame": frame,
    }
    json_output = json.dumps(log_entry, indent=2, default=str)
    print(json_output, file=sys.stderr, flush=True)

    if _config.save_to_file:
        with open(_config.log_file_path, "a", encoding="utf-8") as f:
            f.write(json_output + "\n")
