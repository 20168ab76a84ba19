import os
import signal
import sys
from subprocess import DEVNULL
from typing import TYPE_CHECKING

import anyio
import structlog

from .codec import RawResult
from .exceptions import JobCancelledError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping, Sequence
    from pathlib import Path

    from anyio.abc import ByteReceiveStream, Process

    from .config import Config

logger = structlog.get_logger(__name__)

_WINDOWS = sys.platform == "win32"


async def _drain(stream: "ByteReceiveStream | None", sink: list[bytes]) -> None:
    if stream is None:
        return

    async for chunk in stream:
        sink.append(chunk)


class ProcessManager:
    """
    Registry of the external processes running on behalf of jobs, keyed by job id.
    Each process is started in its own session so that terminating a job takes the
    whole process tree it spawned down with it.
    """

    def __init__(self, config: "Config") -> None:
        self.config = config
        self._processes: dict[str, "Process"] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    def get(self, job_id: str) -> "Process | None":
        return self._processes.get(job_id)

    async def run(
        self,
        job_id: str,
        argv: "Sequence[str]",
        *,
        cwd: "Path | None" = None,
        env: "Mapping[str, str] | None" = None,
        should_stop: "Callable[[], bool] | None" = None,
    ) -> RawResult:
        """
        Run `argv` to completion and collect its output. While it runs,
        `should_stop` is consulted every stop check interval; once it holds, the
        process tree is killed and `JobCancelledError` is raised.
        """
        if job_id in self._processes:
            raise RuntimeError(f"Job '{job_id}' already has a running process.")

        process = await anyio.open_process(
            list(argv),
            stdin=DEVNULL,
            cwd=cwd,
            env=env,
            start_new_session=not _WINDOWS,
        )
        self._processes[job_id] = process
        logger.debug("process started", job_id=job_id, pid=process.pid, argv=argv)

        stdout: list[bytes] = []
        stderr: list[bytes] = []
        stopped = anyio.Event()

        async def watch() -> None:
            interval = self.config.stop_check_interval_ms / 1000
            while True:
                await anyio.sleep(interval)
                if should_stop is not None and should_stop():
                    stopped.set()
                    await self.terminate(job_id)
                    return

        try:
            async with anyio.create_task_group() as tg:
                if should_stop is not None:
                    tg.start_soon(watch)

                async with anyio.create_task_group() as streams:
                    streams.start_soon(_drain, process.stdout, stdout)
                    streams.start_soon(_drain, process.stderr, stderr)

                await process.wait()
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                if process.returncode is None and not await self.terminate(job_id):
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass

                await process.aclose()
                self._processes.pop(job_id, None)

        if stopped.is_set():
            raise JobCancelledError(job_id)

        return RawResult(
            stdout=b"".join(stdout).decode(errors="replace"),
            stderr=b"".join(stderr).decode(errors="replace"),
            returncode=process.returncode,
        )

    async def terminate(self, job_id: str) -> bool:
        """
        Kill the process tree of a job: SIGTERM to its process group, then SIGKILL
        once the grace period expires. The registry entry is always dropped.
        Returns False if the job had no registered process.
        """
        process = self._processes.get(job_id)
        if process is None:
            return False

        logger.info("terminating process tree", job_id=job_id, pid=process.pid)

        try:
            if _WINDOWS:
                await anyio.run_process(
                    ["taskkill", "/T", "/F", "/PID", str(process.pid)], check=False
                )
            else:
                self._signal_group(process, signal.SIGTERM)
                with anyio.move_on_after(self.config.kill_grace_period_ms / 1000):
                    await process.wait()

                # the leader may be gone while its children linger in the group
                self._signal_group(process, signal.SIGKILL)
        except OSError as e:
            logger.warning("failed to terminate process", job_id=job_id, error=str(e))
        finally:
            self._processes.pop(job_id, None)

        return True

    async def terminate_all(self) -> None:
        async with anyio.create_task_group() as tg:
            for job_id in list(self._processes):
                tg.start_soon(self.terminate, job_id)

    @staticmethod
    def _signal_group(process: "Process", signum: int) -> None:
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            pass
