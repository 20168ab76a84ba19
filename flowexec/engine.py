from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio
import sniffio
import structlog

from .config import Config
from .context import ExecutionContext
from .dispatch import NodeDispatcher
from .document import FlowDocument
from .entry import resolve_entry
from .exceptions import FlowExecError
from .job import Result
from .log import RunLog
from .queue import JobQueue
from .scheduler import Scheduler

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Sequence

    from .backends import Backend
    from .job import Job

logger = structlog.get_logger(__name__)


@dataclass(kw_only=True, slots=True)
class FlowRun:
    output: Any
    logs: list[str] = field(default_factory=list)
    execution_time: int = 0
    """Wall clock duration of the run in milliseconds."""


class Engine:
    """
    Runs flow documents. Each engine owns its job queue, and with it the registry
    of processes started for its jobs; engines do not share state.

    By default the engine serves its own queue while a flow runs. With
    `serve=False` the jobs it submits must be picked up by a serve loop running
    elsewhere on the same working root (e.g. `flowexec serve`).
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        backends: "dict[str, Backend] | None" = None,
        serve: bool = True,
        **settings: Any,
    ) -> None:
        self.config = config or Config(**settings)
        self.serve = serve
        self.queue = JobQueue(
            self.config, backends=backends, flow_runner=self.run_flow_job
        )
        self.scheduler = Scheduler(NodeDispatcher(self, self.queue), self.config)

    async def run_flow(
        self,
        path: str | Path,
        flow_input: Any = None,
        *,
        timeout_ms: int | None = None,
    ) -> FlowRun:
        """
        Run a flow document to completion and return its final output together with
        the run log. Errors carry the run log up to the failure in `error.logs`.
        """
        if timeout_ms is None:
            timeout_ms = self.config.default_timeout_ms

        run_log = RunLog()
        started = anyio.current_time()
        failure: FlowExecError | None = None
        output: Any = None

        async with anyio.create_task_group() as tg:
            if self.serve:
                await tg.start(self.queue.serve)

            try:
                output = await self.execute(
                    path, flow_input, timeout_ms=timeout_ms, run_log=run_log
                )
                # let jobs that nobody waits for finish before the serve loop stops
                await self.queue.drain()
            except FlowExecError as e:
                failure = e
            finally:
                tg.cancel_scope.cancel()

        if failure is not None:
            failure.logs = run_log.lines
            logger.error("flow failed", flow=str(path), error=str(failure))
            raise failure

        return FlowRun(
            output=output,
            logs=run_log.lines,
            execution_time=round((anyio.current_time() - started) * 1000),
        )

    def run_flow_sync(
        self,
        path: str | Path,
        flow_input: Any = None,
        *,
        timeout_ms: int | None = None,
        backend: str = "asyncio",
    ) -> FlowRun:
        try:
            sniffio.current_async_library()
        except sniffio.AsyncLibraryNotFoundError:
            return anyio.run(
                partial(self.run_flow, path, flow_input, timeout_ms=timeout_ms),
                backend=backend,
            )

        raise RuntimeError(
            "run_flow_sync() cannot be called from a running event loop; await"
            " run_flow() instead."
        )

    async def execute(
        self,
        path: str | Path,
        flow_input: Any = None,
        *,
        ancestry: "Sequence[Path]" = (),
        timeout_ms: int = 0,
        run_log: RunLog | None = None,
        base_path: Path | None = None,
    ) -> Any:
        """
        Execute one flow document and return its final output. Documents already
        on `ancestry` are not entered again; such a call returns None.
        """
        path = Path(path).resolve()
        run_log = run_log if run_log is not None else RunLog()

        if path in {Path(ancestor).resolve() for ancestor in ancestry}:
            run_log.warn(f"Circular reference detected in flow execution: {path}")
            logger.warning("circular flow reference", flow=str(path))
            return None

        document = FlowDocument.from_file(path).resolve()
        ctx = ExecutionContext(
            document=document,
            entry=resolve_entry(document),
            ancestry=list(ancestry),
            flow_input=flow_input,
            base_path=base_path or document.directory,
            timeout_ms=timeout_ms,
            run_log=run_log,
            steps_left=self.config.max_steps,
        )

        logger.info(
            "executing flow", flow=str(path), entry=ctx.entry, depth=len(ancestry)
        )
        return await self.scheduler.run(ctx)

    async def run_flow_job(self, job: "Job", path: Path) -> Result:
        """Run a `flow` job taken from the queue."""
        run_log = RunLog()

        try:
            output = await self.execute(
                path,
                job.input,
                ancestry=[Path(ancestor) for ancestor in job.flow_path],
                timeout_ms=job.timeout or self.config.default_timeout_ms,
                run_log=run_log,
                base_path=Path(job.base_path) if job.base_path else None,
            )
        except FlowExecError as e:
            return Result(id=job.id, log=None, error=f"Error executing flow: {e}")

        return Result(
            id=job.id,
            output=output,
            log="\n".join(run_log.lines) or "Successfully executed flow",
        )

    def stop(self, job_id: str) -> None:
        """Ask the serve loop running a job to terminate it."""
        self.queue.request_stop(job_id)
