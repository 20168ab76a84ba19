"""
The file based job queue.

Producers drop `<id>.json` job files into the inbox. A serve loop claims each one
by renaming it to `<id>.json.processing`, runs it with the backend registered for
its kind and publishes `<id>.result.json` in the outbox, which the waiting
producer reads and deletes. Creating `<id>.stop` in the inbox asks for a job to be
terminated.
"""

import math
import os
from pathlib import Path
from typing import TYPE_CHECKING

import anyio
import structlog
from pydantic_core import PydanticSerializationError

from .backends import RunContext, default_backends
from .codec import normalize
from .exceptions import (
    BackendError,
    CorruptFileError,
    JobCancelledError,
    JobTimeoutError,
    UnsupportedKindError,
)
from .job import Job, Result
from .processes import ProcessManager
from .serialization import JsonSerializer
from .watch import DirectoryWatcher

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable

    from anyio.abc import TaskGroup, TaskStatus
    from structlog.stdlib import BoundLogger

    from .backends import Backend
    from .config import Config
    from .serialization import Serializer

    FlowRunner = Callable[[Job, Path], Awaitable[Result]]

logger = structlog.get_logger(__name__)

JOB_SUFFIX = ".json"
CLAIMED_SUFFIX = ".json.processing"
RESULT_SUFFIX = ".result.json"
STOP_SUFFIX = ".stop"


class JobQueue:
    def __init__(
        self,
        config: "Config",
        *,
        backends: "dict[str, Backend] | None" = None,
        processes: ProcessManager | None = None,
        serializer: "Serializer | None" = None,
        flow_runner: "FlowRunner | None" = None,
    ) -> None:
        self.config = config
        self.backends = backends if backends is not None else default_backends()
        self.processes = processes or ProcessManager(config)
        self.serializer: "Serializer" = serializer or JsonSerializer()
        self.flow_runner = flow_runner

        self._outstanding: set[str] = set()
        self._settled: anyio.Event | None = None
        self._outbox_watcher: DirectoryWatcher | None = None

    ##
    ## LAYOUT
    ##

    def ensure_dirs(self) -> None:
        for directory in (self.config.inbox, self.config.outbox, self.config.scratch):
            directory.mkdir(parents=True, exist_ok=True)

    def job_path(self, job_id: str) -> Path:
        return self.config.inbox / f"{job_id}{JOB_SUFFIX}"

    def stop_path(self, job_id: str) -> Path:
        return self.config.inbox / f"{job_id}{STOP_SUFFIX}"

    def result_path(self, job_id: str) -> Path:
        return self.config.outbox / f"{job_id}{RESULT_SUFFIX}"

    ##
    ## PRODUCER SIDE
    ##

    def submit(self, job: Job) -> Path:
        self.ensure_dirs()
        path = self.job_path(job.id)
        self.serializer.dump(path, job)
        self._outstanding.add(job.id)

        logger.debug("job submitted", job_id=job.id, kind=job.type)
        return path

    def request_stop(self, job_id: str) -> None:
        self.config.inbox.mkdir(parents=True, exist_ok=True)
        self.stop_path(job_id).touch()

    def should_stop(self, job_id: str) -> bool:
        return self.stop_path(job_id).exists()

    async def run_job(self, job: Job) -> Result:
        """
        Submit a job and wait for its result. Jobs that do not wait for output
        return at once, with their input standing in for the output.
        """
        started = anyio.current_time()
        self.submit(job)

        if job.dont_wait_for_output:
            return Result(
                id=job.id,
                output=job.input,
                dont_wait_for_output=True,
                execution_time=round((anyio.current_time() - started) * 1000),
            )

        result = await self.wait_for_result(job.id, job.timeout)
        self._settle(job.id)
        if result.execution_time is None:
            result.execution_time = round((anyio.current_time() - started) * 1000)

        return result

    async def wait_for_result(self, job_id: str, timeout_ms: int = 0) -> Result:
        """
        Wait for the result of a job, then consume it. With a non-zero timeout,
        a job that overruns is killed, a timeout result is published in its place
        and `JobTimeoutError` is raised.
        """
        path = self.result_path(job_id)
        deadline = (
            anyio.current_time() + timeout_ms / 1000 if timeout_ms > 0 else math.inf
        )
        delay = self.config.result_poll_interval_ms / 1000

        while True:
            watcher = self._outbox_watcher
            mark = watcher.mark() if watcher is not None else None

            if path.exists():
                result = self.serializer.load(path, Result)
                path.unlink(missing_ok=True)
                return result

            remaining = deadline - anyio.current_time()
            if remaining <= 0:
                await self._time_out(job_id, timeout_ms)

            if watcher is not None and mark is not None:
                await watcher.wait(mark, min(delay, remaining))
            else:
                await anyio.sleep(min(delay, remaining))

            delay = min(delay * 2, self.config.poll_max_interval_ms / 1000)

    async def _time_out(self, job_id: str, timeout_ms: int) -> None:
        logger.warning("job timed out", job_id=job_id, timeout_ms=timeout_ms)

        with anyio.CancelScope(shield=True):
            # also reaches jobs that are still queued or run in-process
            if self.job_path(job_id).exists() or self._claimed_path(job_id).exists():
                self.request_stop(job_id)

            self._write_result(Result.timed_out(job_id, timeout_ms))
            await self.processes.terminate(job_id)
            self._settle(job_id)

        raise JobTimeoutError(job_id, timeout_ms)

    async def drain(self) -> None:
        """Wait until every job submitted through this queue has been processed."""
        while self._outstanding:
            self._settled = anyio.Event()
            with anyio.move_on_after(self.config.poll_max_interval_ms / 1000):
                await self._settled.wait()

            # jobs picked up by another serve loop only show up as result files
            for job_id in list(self._outstanding):
                if self.result_path(job_id).exists():
                    self._settle(job_id)

    def _settle(self, job_id: str) -> None:
        self._outstanding.discard(job_id)
        if not self._outstanding and self._settled is not None:
            self._settled.set()

    ##
    ## CONSUMER SIDE
    ##

    def _claimed_path(self, job_id: str) -> Path:
        return self.config.inbox / f"{job_id}{CLAIMED_SUFFIX}"

    def pending(self) -> list[Path]:
        """Unclaimed job files, oldest first."""
        entries: list[tuple[int, str, Path]] = []

        for path in self.config.inbox.iterdir():
            name = path.name
            if (
                not name.endswith(JOB_SUFFIX)
                or name.endswith(RESULT_SUFFIX)
                or name.startswith(".")
            ):
                continue

            try:
                entries.append((path.stat().st_mtime_ns, name, path))
            except FileNotFoundError:
                continue

        return [path for *_, path in sorted(entries)]

    def claim(self, path: Path) -> Path | None:
        """Take ownership of a job file. None if another consumer was faster."""
        claimed = path.with_name(f"{path.name}.processing")
        try:
            os.rename(path, claimed)
        except OSError:
            return None

        return claimed

    def poll_once(self, task_group: "TaskGroup") -> int:
        """Claim every pending job and process each in `task_group`."""
        claimed = 0

        for path in self.pending():
            if (claimed_path := self.claim(path)) is not None:
                task_group.start_soon(self.process_claimed, claimed_path)
                claimed += 1

        return claimed

    async def process_claimed(self, path: Path) -> None:
        try:
            job = self.serializer.load(path, Job)
        except (CorruptFileError, OSError) as e:
            logger.error("unreadable job file", path=str(path), error=str(e))
            path.unlink(missing_ok=True)
            return

        log = logger.bind(job_id=job.id, kind=job.type)

        try:
            if self.result_path(job.id).exists():
                log.info("job already has a result, skipping")
                return

            if self.should_stop(job.id):
                log.info("job stopped before it started")
                self._write_result(Result.terminated(job))
                return

            started = anyio.current_time()
            result = await self._execute(job, log)
            result.dont_wait_for_output = job.dont_wait_for_output
            result.execution_time = round((anyio.current_time() - started) * 1000)
            self._publish(result, log)
        finally:
            with anyio.CancelScope(shield=True):
                path.unlink(missing_ok=True)
                self.stop_path(job.id).unlink(missing_ok=True)
                self._settle(job.id)

    def _write_result(self, result: Result) -> bool:
        """Publish a result unless the job already has one."""
        path = self.result_path(result.id)
        if path.exists():
            logger.debug("result already published, discarding", job_id=result.id)
            return False

        self.config.outbox.mkdir(parents=True, exist_ok=True)
        self.serializer.dump(path, result)
        return True

    def _publish(self, result: Result, log: "BoundLogger") -> None:
        try:
            self._write_result(result)
        except PydanticSerializationError as e:
            log.error("job output is not serializable", error=str(e))
            self._write_result(
                Result(
                    id=result.id,
                    log=result.log,
                    error=f"Job output could not be serialized: {e}",
                    dont_wait_for_output=result.dont_wait_for_output,
                    execution_time=result.execution_time,
                )
            )

    def _load_code(self, job: Job, log: "BoundLogger") -> tuple[str, Path | None]:
        if not job.code_file_path:
            return job.code, None

        code_file = Path(job.code_file_path)
        if not code_file.is_absolute():
            code_file = Path(job.base_path or Path.cwd()) / code_file

        code_file = code_file.resolve()
        if not code_file.is_file():
            log.warning("code file not found, using embedded code", path=str(code_file))
            return job.code, code_file

        try:
            return code_file.read_text(encoding="utf-8"), code_file
        except (OSError, UnicodeDecodeError) as e:
            log.error("failed to read code file", path=str(code_file), error=str(e))
            return job.code, code_file

    def _working_directory(self, job: Job, code_file: Path | None) -> Path:
        if job.base_path and Path(job.base_path).is_dir():
            return Path(job.base_path)
        elif code_file is not None and code_file.parent.is_dir():
            return code_file.parent

        return Path.cwd()

    async def _execute(self, job: Job, log: "BoundLogger") -> Result:
        job.input = normalize(job.input)
        code, code_file = self._load_code(job, log)

        try:
            if job.type == "flow":
                return await self._run_flow_job(job, code, code_file)

            backend = self.backends.get(job.type or "")
            if backend is None:
                raise UnsupportedKindError(job.id, job.type)

            log.info("running job")
            self.config.scratch.mkdir(parents=True, exist_ok=True)
            return await backend.execute(
                RunContext(
                    job=job,
                    code=code,
                    code_file=code_file,
                    cwd=self._working_directory(job, code_file),
                    scratch=self.config.scratch,
                    processes=self.processes,
                    config=self.config,
                    should_stop=lambda: self.should_stop(job.id),
                )
            )
        except JobCancelledError:
            log.info("job terminated by user")
            return Result.terminated(job)
        except BackendError as e:
            log.error("job failed", error=e.error)
            return Result(id=job.id, error=e.error)
        except Exception as e:
            log.exception("job failed")
            return Result(id=job.id, error=str(e) or repr(e))

    async def _run_flow_job(
        self, job: Job, code: str, code_file: Path | None
    ) -> Result:
        target = code_file if code_file is not None else Path(code.strip())
        if not target.is_absolute():
            target = Path(job.base_path or Path.cwd()) / target

        target = target.resolve()
        if not target.is_file():
            return Result(id=job.id, error=f"Flow file not found: {target}")

        if target in {Path(ancestor).resolve() for ancestor in job.flow_path}:
            return Result(
                id=job.id,
                log=f"Circular reference detected in flow execution: {target}",
                error=(
                    f"Circular reference detected: {target} is already in the"
                    " execution path"
                ),
            )

        if self.flow_runner is None:
            return Result(id=job.id, error="This queue cannot run flow jobs.")

        return await self.flow_runner(job, target)

    async def serve(
        self, *, task_status: "TaskStatus[None]" = anyio.TASK_STATUS_IGNORED
    ) -> None:
        """
        Process jobs until cancelled. Inbox scans back off exponentially while the
        inbox stays empty; new job files wake the loop early.
        """
        self.ensure_dirs()
        enabled = self.config.watch_files

        async with (
            DirectoryWatcher(self.config.inbox, (JOB_SUFFIX,), enabled) as inbox,
            DirectoryWatcher(self.config.outbox, (RESULT_SUFFIX,), enabled) as outbox,
        ):
            self._outbox_watcher = outbox
            try:
                async with anyio.create_task_group() as tg:
                    logger.info("serving jobs", inbox=str(self.config.inbox))
                    task_status.started()

                    delay = self.config.poll_interval_ms / 1000
                    while True:
                        mark = inbox.mark()

                        try:
                            claimed = self.poll_once(tg)
                        except OSError as e:
                            logger.error("failed to scan inbox", error=str(e))
                            claimed = 0

                        if await inbox.wait(mark, delay) or claimed:
                            delay = self.config.poll_interval_ms / 1000
                        else:
                            delay = min(
                                delay * 2, self.config.poll_max_interval_ms / 1000
                            )
            finally:
                self._outbox_watcher = None
                with anyio.CancelScope(shield=True):
                    await self.processes.terminate_all()
