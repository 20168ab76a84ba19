"""
Logging for flowexec.

Diagnostics go through structlog, configured once per process with
`configure_logging`. The human-readable transcript of a single flow run (what a
user sees as the run's log) is collected separately by `RunLog` and returned
with the run's result or attached to the error that aborted it.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

import structlog

if TYPE_CHECKING:  # pragma: no cover
    from structlog.types import Processor

_configured = False


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["console", "json"] = "console",
    force: bool = False,
) -> None:
    """
    Configure structlog over stdlib logging. Subsequent calls are no-ops unless
    `force` is set.
    """
    global _configured

    if _configured and not force:
        return

    processors: list["Processor"] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level),
        force=True,
    )
    logging.getLogger("flowexec").setLevel(getattr(logging, level))

    _configured = True


def _render(parts: tuple[Any, ...]) -> str:
    return " ".join(
        part if isinstance(part, str) else json.dumps(part, indent=2, default=str)
        for part in parts
    )


class RunLog:
    """Timestamped transcript of a flow run, nested runs included."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self._lines: list[str] = []

    def _stamp(self) -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds")

    def _append(self, line: str) -> None:
        self._lines.append(f"[{self._stamp()}] {self.prefix}{line}")

    def info(self, *parts: Any) -> None:
        self._append(_render(parts))

    def warn(self, *parts: Any) -> None:
        self._append(f"[WARN] {_render(parts)}")

    def error(self, *parts: Any) -> None:
        self._append(f"ERROR: {_render(parts)}")

    def nested(self) -> "RunLog":
        """A view that shares this transcript but marks lines as nested."""
        child = RunLog(prefix=f"{self.prefix}[Nested] ")
        child._lines = self._lines
        return child

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)
