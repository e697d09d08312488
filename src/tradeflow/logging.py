"""
Structured logging for the orchestration core.

Provides:
- Context variables for run_id, phase, agent and attempt (contextvars, so
  they follow detached asyncio tasks)
- JSONFormatter for machine-readable logs to file
- ContextRichHandler for pretty console output
- ContextLogger wrapper that turns keyword arguments into structured extra
- setup_logging() and get_logger()
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

ROOT_LOGGER = "tradeflow"

_run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
_phase_var: ContextVar[str | None] = ContextVar("phase", default=None)
_agent_var: ContextVar[str | None] = ContextVar("agent", default=None)
_attempt_var: ContextVar[int | None] = ContextVar("attempt", default=None)

_CONTEXT_VARS: dict[str, ContextVar[Any]] = {
    "run_id": _run_id_var,
    "phase": _phase_var,
    "agent": _agent_var,
    "attempt": _attempt_var,
}


def current_context() -> dict[str, Any]:
    """Return the logging context that is currently set."""
    return {key: var.get() for key, var in _CONTEXT_VARS.items() if var.get() is not None}


def get_run_id() -> str | None:
    """Get the current run ID from context."""
    return _run_id_var.get()


@contextmanager
def log_context(
    run_id: str | None = None,
    phase: str | None = None,
    agent: str | None = None,
    attempt: int | None = None,
) -> Generator[None, None, None]:
    """Scope logging context to a block.

    Only the values passed are changed; previous values are restored on exit.

    Args:
        run_id: Run ID to set in context.
        phase: Phase to set in context.
        agent: Agent function name to set in context.
        attempt: Retry attempt to set in context.
    """
    values = {"run_id": run_id, "phase": phase, "agent": agent, "attempt": attempt}
    tokens = [
        (var, var.set(values[key]))
        for key, var in _CONTEXT_VARS.items()
        if values[key] is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """JSON Lines formatter with the structured context attached."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(current_context())

        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class ContextRichHandler(RichHandler):
    """Rich handler that prefixes the level with run/phase/agent context."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        ctx = current_context()

        parts: list[str] = []
        if "run_id" in ctx:
            run_id = ctx["run_id"]
            parts.append(f"[dim]{run_id.split('_')[-1][-8:]}[/dim]")
        if "phase" in ctx:
            parts.append(f"[cyan]{ctx['phase']}[/cyan]")
        if "agent" in ctx:
            agent = ctx["agent"]
            if ctx.get("attempt"):
                agent = f"{agent}#{ctx['attempt']}"
            parts.append(f"[magenta]{agent}[/magenta]")

        if parts:
            return Text.from_markup(f"{level_text} {' '.join(parts)}")
        return level_text


class ContextLogger:
    """Logger wrapper that attaches context and keyword fields to records.

    Usage:
        logger.info("Step status updated", step=name, status="completed")
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra: dict[str, Any] = dict(kwargs.pop("extra", {}))
        extra.update(current_context())
        extra.update(kwargs)
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with the current exception's traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the shared stderr console used for log output."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the tradeflow logger tree.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional JSON Lines log file.
        console_output: Whether to log to the rich console.
    """
    global _setup_done

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ("httpx", "httpcore", "anthropic", "aiosqlite", "asyncio"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the tradeflow namespace.

    Args:
        name: Logger name (usually __name__).

    Returns:
        ContextLogger wrapper around the standard logger.
    """
    if not _setup_done:
        setup_logging()

    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name))
