import os
import re
from abc import abstractmethod
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from flowexec.codec import PYTHON_ERRORS, compose, encode_input, normalize, parse_loose
from flowexec.job import Result

from .base import Backend, Request

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path
    from typing import ClassVar

    from flowexec.codec import RawResult

    from .base import RunContext


class ScriptBackend(Backend):
    """
    Runs a job's code as a script in an external interpreter. The source is written
    to the scratch directory, and the script hands its output back through a side
    channel file whose contents are decoded as JSON where possible.
    """

    suffix: "ClassVar[str]"
    errors: "ClassVar[re.Pattern[str]]"

    def prepare(self, ctx: "RunContext") -> Request:
        kind = re.sub(r"\W", "_", ctx.job.type or "script")
        stem = f"node_{kind}_{uuid4().hex}"
        script_path = ctx.scratch / f"{stem}{self.suffix}"
        output_path = ctx.scratch / f"{stem}.output"

        request = Request(
            output_path=output_path,
            temp_files=[script_path, output_path],
        )
        request.source = self.render(ctx, request)
        script_path.write_text(request.source, encoding="utf-8", newline="")
        request.argv = self.command(ctx, script_path)
        request.env = {**os.environ, **self.environment(ctx, request)}

        return request

    @abstractmethod
    def render(self, ctx: "RunContext", request: Request) -> str:
        """Build the script source. May add further temporary files to `request`."""
        raise NotImplementedError()

    @abstractmethod
    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        raise NotImplementedError()

    def environment(self, ctx: "RunContext", request: Request) -> dict[str, str]:
        return {}

    async def run(self, request: Request, ctx: "RunContext") -> "RawResult":
        raw = await ctx.processes.run(
            ctx.job.id,
            request.argv,
            cwd=ctx.cwd,
            env=request.env,
            should_stop=ctx.should_stop,
        )

        if request.output_path is not None and request.output_path.is_file():
            raw.output_text = request.output_path.read_text(
                encoding="utf-8", errors="replace"
            )

        return raw

    def parse_output(self, raw: "RawResult") -> Any:
        return parse_loose(raw.output_text)

    def decode(self, raw: "RawResult", ctx: "RunContext") -> Result:
        log, error = compose(raw, self.errors)
        return Result(
            id=ctx.job.id,
            output=normalize(self.parse_output(raw)),
            log=log,
            error=error,
            dont_wait_for_output=ctx.job.dont_wait_for_output,
        )


_PYTHON_TEMPLATE = """\
import json as _flowexec_json

input = _flowexec_json.loads({input!r})
output = ""

{code}

with open({output_path!r}, "w", encoding="utf-8") as _flowexec_file:
    _flowexec_json.dump(output, _flowexec_file, default=str)
"""


class PythonScriptBackend(ScriptBackend):
    """Python code run by a separate interpreter; the `output` variable is returned."""

    kinds = ("python-script",)
    suffix = ".py"
    errors = PYTHON_ERRORS

    def render(self, ctx: "RunContext", request: Request) -> str:
        return _PYTHON_TEMPLATE.format(
            input=encode_input(ctx.job.input),
            code=ctx.code,
            output_path=str(request.output_path),
        )

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        return [ctx.config.python_executable, str(script_path)]

    def environment(self, ctx: "RunContext", request: Request) -> dict[str, str]:
        return {"PYTHONIOENCODING": "utf-8", "PYTHONUNBUFFERED": "1"}
