import os
import sys
from pathlib import Path

import anyio
import pytest
from conftest import CountingBackend

from flowexec import Job, JobQueue, Result
from flowexec.backends import default_backends
from flowexec.exceptions import JobTimeoutError
from flowexec.job import TERMINATED_BY_USER

pytestmark = pytest.mark.anyio


@pytest.fixture
def queue(config, counting):
    queue = JobQueue(config, backends={**default_backends(), "double": counting})
    queue.ensure_dirs()
    return queue


async def _process_all(queue):
    async with anyio.create_task_group() as tg:
        claimed = queue.poll_once(tg)

    return claimed


async def _eventually(predicate, timeout=10):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.02)


def _python_job(code, **fields):
    return Job.create(type="python-script", code=code, **fields)


def _gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True

    # reparented children may linger as zombies until reaped
    status = Path(f"/proc/{pid}/status")
    return status.exists() and "\nState:\tZ" in status.read_text()


async def test_run_job(queue, counting):
    job = Job.create(type="double", input=21)

    async with anyio.create_task_group() as tg:
        await tg.start(queue.serve)
        result = await queue.run_job(job)
        tg.cancel_scope.cancel()

    assert result.output == 42
    assert result.execution_time is not None
    assert counting.inputs == [21]
    # the result is consumed and nothing is left behind
    assert not any(queue.config.inbox.iterdir())
    assert not any(queue.config.outbox.iterdir())


async def test_input_is_trimmed(queue, counting):
    queue.submit(Job.create(type="double", input=" padded "))

    await _process_all(queue)

    assert counting.inputs == ["padded"]


async def test_stop_before_claim(queue, counting):
    job = Job.create(type="double", input=1)
    queue.submit(job)
    queue.request_stop(job.id)

    assert await _process_all(queue) == 1

    result = queue.serializer.load(queue.result_path(job.id), Result)
    assert result.error == TERMINATED_BY_USER
    assert result.was_terminated
    assert counting.inputs == []
    assert not queue.stop_path(job.id).exists()
    assert not any(queue.config.inbox.iterdir())


async def test_claim_is_exclusive(queue):
    path = queue.submit(Job.create(type="double", input=1))

    claimed = queue.claim(path)

    assert claimed is not None
    assert claimed.name.endswith(".json.processing")
    assert queue.claim(path) is None
    assert queue.pending() == []


async def test_existing_result_wins(queue, counting):
    job = Job.create(type="double", input=1)
    queue.submit(job)
    queue._write_result(Result(id=job.id, output="first"))

    await _process_all(queue)

    assert counting.inputs == []
    assert queue.serializer.load(queue.result_path(job.id), Result).output == "first"
    assert not queue._write_result(Result(id=job.id, output="second"))


async def test_each_job_runs_once(queue, counting):
    jobs = [Job.create(type="double", input=n) for n in range(5)]
    for job in jobs:
        queue.submit(job)

    assert await _process_all(queue) == 5
    assert await _process_all(queue) == 0

    assert sorted(counting.inputs) == list(range(5))
    for job in jobs:
        result = queue.serializer.load(queue.result_path(job.id), Result)
        assert result.output == job.input * 2


async def test_pending_filters_queue_files(queue):
    inbox = queue.config.inbox
    for name in (
        "b.json",
        "a.json",
        "c.json.processing",
        "d.stop",
        "e.result.json",
        ".f.json.tmp",
        ".g.json",
    ):
        (inbox / name).write_text("{}")

    os.utime(inbox / "a.json", ns=(1, 1))

    assert [path.name for path in queue.pending()] == ["a.json", "b.json"]


async def test_unknown_kind(queue):
    job = Job.create(type="cobol", input=1)
    queue.submit(job)

    await _process_all(queue)

    result = queue.serializer.load(queue.result_path(job.id), Result)
    assert result.error == "No backend is registered for kind 'cobol'."


async def test_corrupt_job_file(queue):
    path = queue.config.inbox / "broken.json.processing"
    path.write_text("{not json")

    await queue.process_claimed(path)

    assert not path.exists()
    assert not any(queue.config.outbox.iterdir())


async def test_code_file_relative_to_base_path(queue, tmp_path):
    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts" / "node.py").write_text("output = input + 1")
    job = _python_job(
        "output = 'embedded'",
        code_file_path="scripts/node.py",
        base_path=str(tmp_path),
        input=1,
    )

    async with anyio.create_task_group() as tg:
        await tg.start(queue.serve)
        result = await queue.run_job(job)
        tg.cancel_scope.cancel()

    assert result.output == 2


async def test_dont_wait_for_output(queue):
    job = _python_job("output = 'late'", input="early", dont_wait_for_output=True)

    async with anyio.create_task_group() as tg:
        await tg.start(queue.serve)
        result = await queue.run_job(job)

        assert result.output == "early"
        assert result.dont_wait_for_output

        with anyio.fail_after(10):
            await queue.drain()

        tg.cancel_scope.cancel()

    published = queue.serializer.load(queue.result_path(job.id), Result)
    assert published.output == "late"
    assert published.dont_wait_for_output
    assert published.execution_time is not None


async def test_timeout(queue):
    job = _python_job("import time\ntime.sleep(30)", timeout=300)

    with anyio.fail_after(20):
        async with anyio.create_task_group() as tg:
            await tg.start(queue.serve)

            with pytest.raises(JobTimeoutError):
                await queue.run_job(job)

            await _eventually(lambda: not any(queue.config.inbox.iterdir()))
            tg.cancel_scope.cancel()

    # the timeout result is left for whoever looks for it
    result = queue.serializer.load(queue.result_path(job.id), Result)
    assert result.error == "Process terminated after 0.3 seconds timeout"
    assert len(queue.processes) == 0


async def test_stop_running_job(queue):
    job = _python_job("import time\ntime.sleep(30)")

    async def stop_when_running():
        await _eventually(lambda: job.id in queue.processes)
        queue.request_stop(job.id)

    with anyio.fail_after(20):
        async with anyio.create_task_group() as tg:
            await tg.start(queue.serve)
            tg.start_soon(stop_when_running)
            result = await queue.run_job(job)
            tg.cancel_scope.cancel()

    assert result.was_terminated
    assert result.log == TERMINATED_BY_USER
    assert len(queue.processes) == 0


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="uses /proc")
async def test_stop_kills_process_tree(queue, tmp_path):
    pid_file = tmp_path / "child.pid"
    code = f"""
import subprocess, sys, time
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
with open({str(pid_file)!r}, "w") as handle:
    handle.write(str(child.pid))
time.sleep(60)
"""
    job = _python_job(code)

    async def stop_when_spawned():
        await _eventually(lambda: pid_file.exists() and pid_file.read_text())
        queue.request_stop(job.id)

    with anyio.fail_after(20):
        async with anyio.create_task_group() as tg:
            await tg.start(queue.serve)
            tg.start_soon(stop_when_spawned)
            result = await queue.run_job(job)
            tg.cancel_scope.cancel()

    assert result.was_terminated

    grandchild = int(pid_file.read_text())
    await _eventually(lambda: _gone(grandchild), timeout=5)


async def test_serve_with_watcher(queue, config, counting):
    queue.config = config.model_copy(update={"watch_files": True})

    with anyio.fail_after(10):
        async with anyio.create_task_group() as tg:
            await tg.start(queue.serve)
            results = [
                await queue.run_job(Job.create(type="double", input=n))
                for n in (1, 2)
            ]
            tg.cancel_scope.cancel()

    assert [result.output for result in results] == [2, 4]


class OpaqueBackend(CountingBackend):
    kinds = ("opaque",)

    def decode(self, raw, ctx):
        return Result(id=ctx.job.id, output=object(), log="made an object")


async def test_unserializable_output(queue):
    queue.backends["opaque"] = OpaqueBackend()
    job = Job.create(type="opaque", input=1)
    queue.submit(job)

    await _process_all(queue)

    result = queue.serializer.load(queue.result_path(job.id), Result)
    assert result.error.startswith("Job output could not be serialized")
    assert result.log == "made an object"
    assert result.execution_time is not None
    assert not any(queue.config.inbox.iterdir())


async def test_competing_consumers(config, counting):
    first = JobQueue(config, backends={"double": counting})
    second = JobQueue(config, backends={"double": counting})
    jobs = [Job.create(type="double", input=n) for n in range(6)]
    for job in jobs:
        first.submit(job)

    # both consumers scanned the inbox before either of them claimed anything
    scans = list(zip(first.pending(), second.pending()))
    claims = {first: 0, second: 0}

    async with anyio.create_task_group() as tg:
        for index, (path, same_path) in enumerate(scans):
            contenders = [(first, path), (second, same_path)]
            if index % 2:
                contenders.reverse()

            for consumer, candidate in contenders:
                if (claimed := consumer.claim(candidate)) is not None:
                    claims[consumer] += 1
                    tg.start_soon(consumer.process_claimed, claimed)

    assert claims == {first: 3, second: 3}
    assert await _process_all(first) == 0
    assert await _process_all(second) == 0
    assert sorted(counting.inputs) == list(range(6))
    assert len(list(config.outbox.iterdir())) == 6
    for job in jobs:
        result = first.serializer.load(first.result_path(job.id), Result)
        assert result.output == job.input * 2
