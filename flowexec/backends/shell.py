from typing import TYPE_CHECKING, Any

from flowexec.codec import SHELL_ERRORS, parse_loose, parse_structured, stringify

from .script import ScriptBackend

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path

    from flowexec.codec import RawResult

    from .base import Request, RunContext


class ShellBackend(ScriptBackend):
    """
    Shell scripts see their input as `INPUT` and the side channel file path as
    `OUTPUT`. A script that writes nothing to `OUTPUT` returns its stdout.
    """

    errors = SHELL_ERRORS

    def output_text(self, raw: "RawResult") -> str:
        text = (raw.output_text or "").strip()
        return text or raw.stdout.strip()

    def parse_output(self, raw: "RawResult") -> Any:
        return parse_loose(self.output_text(raw))


class BatchBackend(ShellBackend):
    kinds = ("batch",)
    suffix = ".bat"

    def render(self, ctx: "RunContext", request: "Request") -> str:
        value = stringify(ctx.job.input).replace('"', '\\"')
        return (
            "@echo off\r\n"
            f'set INPUT="{value}"\r\n'
            f'set OUTPUT="{request.output_path}"\r\n'
            f"{ctx.code}\r\n"
        )

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        return [ctx.config.cmd_executable, "/C", str(script_path)]

    def parse_output(self, raw: "RawResult") -> Any:
        # batch echoes keep their quotes, and only JSON looking output is decoded
        return parse_structured(self.output_text(raw))


class PowershellBackend(ShellBackend):
    kinds = ("powershell",)
    suffix = ".ps1"

    def render(self, ctx: "RunContext", request: "Request") -> str:
        value = stringify(ctx.job.input).replace('"', '""')
        return (
            f'$env:INPUT="{value}"\n'
            f'$env:OUTPUT="{request.output_path}"\n'
            f"{ctx.code}\n"
        )

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        return [
            ctx.config.powershell_executable,
            "-ExecutionPolicy",
            "Bypass",
            "-File",
            str(script_path),
        ]


class BashBackend(ShellBackend):
    kinds = ("bash",)
    suffix = ".sh"

    def render(self, ctx: "RunContext", request: "Request") -> str:
        return f"{ctx.code}\n"

    def environment(self, ctx: "RunContext", request: "Request") -> dict[str, str]:
        return {"INPUT": stringify(ctx.job.input), "OUTPUT": str(request.output_path)}

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        return [ctx.config.bash_executable, str(script_path)]
