from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, final

import structlog

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from pathlib import Path
    from typing import ClassVar

    from flowexec.codec import RawResult
    from flowexec.config import Config
    from flowexec.job import Job, Result
    from flowexec.processes import ProcessManager

logger = structlog.get_logger(__name__)


@dataclass
class RunContext:
    job: "Job"
    code: str
    """Source to run: the contents of the job's code file, or its embedded code."""
    code_file: "Path | None"
    """Resolved code file the source was loaded from, if any."""
    cwd: "Path"
    scratch: "Path"
    processes: "ProcessManager"
    config: "Config"
    should_stop: "Callable[[], bool]"


@dataclass
class Request:
    argv: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    source: str = ""
    output_path: "Path | None" = None
    temp_files: list["Path"] = field(default_factory=list)


class Backend(ABC):
    """
    Runs the code of one kind of job. A run is split into preparing a request
    (materializing files, building a command line), running it and decoding the
    raw outcome into a result.
    """

    kinds: "ClassVar[tuple[str, ...]]" = ()

    @abstractmethod
    def prepare(self, ctx: RunContext) -> Request:
        raise NotImplementedError()

    @abstractmethod
    async def run(self, request: Request, ctx: RunContext) -> "RawResult":
        raise NotImplementedError()

    @abstractmethod
    def decode(self, raw: "RawResult", ctx: RunContext) -> "Result":
        raise NotImplementedError()

    @final
    async def execute(self, ctx: RunContext) -> "Result":
        request = self.prepare(ctx)
        try:
            raw = await self.run(request, ctx)
            return self.decode(raw, ctx)
        finally:
            for path in request.temp_files:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(
                        "failed to remove temporary file", path=str(path), error=str(e)
                    )
