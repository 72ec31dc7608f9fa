"""
Logging utilities for Warden.

Provides:
- Structured logging with key=value fields
- Correlation context (run, node, agent) carried into worker threads
- Optional JSON output
"""
import contextvars
import json
import logging
import os
import threading
from contextvars import ContextVar
from typing import Callable, Dict, Any, Optional
from contextlib import contextmanager


_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)
_node: ContextVar[Optional[str]] = ContextVar('node', default=None)
_agent: ContextVar[Optional[str]] = ContextVar('agent', default=None)

_VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds correlation IDs and structured fields.

    Format: [timestamp] [level] [component] correlation_ids key=value message
    """

    def __init__(self, json_output: bool = False):
        """
        Initialize formatter.

        Args:
            json_output: If True, output JSON lines instead of human-readable
        """
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return self._format_human(record)

    def _timestamp(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        return f"{timestamp}.{int(record.msecs):03d}Z"

    def _format_human(self, record: logging.LogRecord) -> str:
        """Human-readable format with key=value pairs."""
        parts = [
            f"[{self._timestamp(record)}]",
            f"[{record.levelname}]",
            f"[{record.name.split('.')[-1]}]"
        ]

        for key, value in get_correlation_ids().items():
            if value:
                parts.append(f"{key}={value}")

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            parts.extend(f"{key}={value}" for key, value in fields.items())

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        """JSON format for machine parsing."""
        log_entry: Dict[str, Any] = {
            "timestamp": self._timestamp(record),
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        for key, value in get_correlation_ids().items():
            if value:
                log_entry[key] = value

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            log_entry.update(fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


def get_correlation_ids() -> Dict[str, Optional[str]]:
    """Get current correlation IDs."""
    return {
        'run': _run_id.get(),
        'node': _node.get(),
        'agent': _agent.get(),
    }


@contextmanager
def correlation_context(
    run_id: Optional[str] = None,
    node: Optional[str] = None,
    agent: Optional[str] = None
):
    """
    Context manager for temporary correlation IDs.

    IDs are restored to previous values when context exits.

    Example:
        with correlation_context(run_id="a1b2c3", node="worker-01"):
            logger.info("Polling job")  # IDs automatically included
    """
    tokens = []
    if run_id is not None:
        tokens.append((_run_id, _run_id.set(run_id)))
    if node is not None:
        tokens.append((_node, _node.set(node)))
    if agent is not None:
        tokens.append((_agent, _agent.set(agent)))

    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def start_thread(target: Callable[[], None], name: str) -> threading.Thread:
    """
    Start a daemon thread that inherits the caller's correlation IDs.

    Threads do not copy context variables on their own, so the target
    runs inside a snapshot of the starting thread's context.

    Args:
        target: Callable run by the thread
        name: Thread name

    Returns:
        The started thread
    """
    ctx = contextvars.copy_context()
    thread = threading.Thread(target=ctx.run, args=(target,), name=name, daemon=True)
    thread.start()
    return thread


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Example:
        log_with_fields(logger, logging.INFO, "State changed",
                       old="polling", new="draining")
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Setup logging configuration for warden.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stdout)
        module_levels: Per-module log levels, e.g. {'liveness': 'DEBUG'}

    Environment Variables:
        WARDEN_LOG_LEVEL: Override log level
        WARDEN_LOG_JSON: Enable JSON output (1 or 0)
    """
    level = os.getenv('WARDEN_LOG_LEVEL', level).upper()
    json_output = os.getenv('WARDEN_LOG_JSON', '0') == '1' or json_output

    if level not in _VALID_LEVELS:
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file: {log_file}")
        except OSError as e:
            logging.error(f"Failed to setup file logging: {e}")

    if module_levels:
        for module_name, module_level in module_levels.items():
            module_level_upper = module_level.upper()
            if module_level_upper in _VALID_LEVELS:
                module_logger = logging.getLogger(f'warden.{module_name}')
                module_logger.setLevel(getattr(logging, module_level_upper))
                logging.debug(f"Set log level for {module_name}: {module_level_upper}")
            else:
                logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    logging.info(f"Logging initialized: level={level}, json={json_output}, file={log_file}")
