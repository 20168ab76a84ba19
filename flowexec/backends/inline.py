"""
In-process Python nodes.

The node's code becomes the body of an async function with `input`, `ninput`,
`console` and `print` in scope. If the code defines `process`, its (awaited)
return value is the node's output; a top-level `return` works as well.
"""

import asyncio
import builtins
import inspect
import json
import textwrap
from functools import partial
from typing import TYPE_CHECKING, Any

import anyio
from pydantic_core import to_jsonable_python

from flowexec.codec import LOG_ERRORS, RawResult, normalize, numeric_view
from flowexec.exceptions import JobCancelledError
from flowexec.job import Result

from .base import Backend, Request

if TYPE_CHECKING:  # pragma: no cover
    from .base import RunContext

_ENTRYPOINT = "__flowexec_node__"
_EPILOGUE = """
    __process = locals().get("process")
    if callable(__process):
        __value = __process(input)
        return (await __value) if __isawaitable(__value) else __value
"""


def _format(args: tuple[Any, ...], sep: str = " ") -> str:
    return sep.join(
        arg if isinstance(arg, str) else json.dumps(arg, default=str) for arg in args
    )


class Console:
    """Collects what node code logs, in call order."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def log(self, *args: Any) -> None:
        self.lines.append(_format(args))

    info = debug = log

    def warn(self, *args: Any) -> None:
        self.lines.append(f"[WARN] {_format(args)}")

    warning = warn

    def error(self, *args: Any) -> None:
        self.lines.append(f"[ERROR] {_format(args)}")

    def print(self, *args: Any, sep: str = " ", **_: Any) -> None:
        self.lines.append(_format(args, sep))


def _compile(source: str) -> Any:
    body = textwrap.indent(source, "    ") if source.strip() else "    pass"
    wrapped = (
        f"async def {_ENTRYPOINT}(input, ninput, console, print):\n{body}\n{_EPILOGUE}"
    )
    namespace: dict[str, Any] = {
        "__builtins__": builtins,
        "__isawaitable": inspect.isawaitable,
    }
    exec(compile(wrapped, "<node>", "exec"), namespace)
    return namespace[_ENTRYPOINT]


def _call(source: str, value: Any) -> RawResult:
    # runs on a worker thread with its own event loop
    console = Console()
    try:
        function = _compile(source)
        output = asyncio.run(
            function(value, numeric_view(value), console, console.print)
        )
    except Exception as e:
        return RawResult(stdout="\n".join(console.lines), failure=str(e) or repr(e))

    return RawResult(stdout="\n".join(console.lines), value=output)


class InlinePythonBackend(Backend):
    kinds = ("python",)

    def prepare(self, ctx: "RunContext") -> Request:
        return Request(source=ctx.code)

    async def run(self, request: Request, ctx: "RunContext") -> RawResult:
        stopped = False
        raw = RawResult()

        async def watch(scope: anyio.CancelScope) -> None:
            nonlocal stopped
            while True:
                await anyio.sleep(ctx.config.stop_check_interval_ms / 1000)
                if ctx.should_stop():
                    stopped = True
                    scope.cancel()
                    return

        async with anyio.create_task_group() as tg:
            tg.start_soon(watch, tg.cancel_scope)
            # a stopped node's thread cannot be interrupted; it is left to finish
            raw = await anyio.to_thread.run_sync(
                partial(_call, request.source, ctx.job.input), abandon_on_cancel=True
            )
            tg.cancel_scope.cancel()

        if stopped:
            raise JobCancelledError(ctx.job.id)

        return raw

    def decode(self, raw: RawResult, ctx: "RunContext") -> Result:
        log = raw.stdout.strip()
        if raw.failure is None:
            return Result(
                id=ctx.job.id,
                output=to_jsonable_python(normalize(raw.value), fallback=str),
                log=log,
                dont_wait_for_output=ctx.job.dont_wait_for_output,
            )

        error = raw.failure
        if any(LOG_ERRORS.search(line) for line in raw.stdout.splitlines()):
            error = f"{error}\n{raw.stdout}"

        return Result(
            id=ctx.job.id,
            log=log,
            error=error.strip(),
            dont_wait_for_output=ctx.job.dont_wait_for_output,
        )
