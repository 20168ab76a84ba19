from typing import TYPE_CHECKING

from flowexec.codec import GROOVY_ERRORS, encode_input

from .script import ScriptBackend

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path

    from .base import Request, RunContext

# input arrives through a file so that arbitrary JSON survives the command line
_TEMPLATE = """\
def smartParse = {{ s ->
    try {{ (s?.trim()?.startsWith('{{') || s?.trim()?.startsWith('[')) && s?.contains('"') ? new groovy.json.JsonSlurper().parseText(s) : Eval.me(s) }}
    catch(e) {{ s }}
}}
input = smartParse(new File('{input_path}').text)
def output = ""
{code}
def asJson = {{ obj ->
    try {{
        groovy.json.JsonOutput.toJson(obj)
    }} catch (e) {{
        return groovy.json.JsonOutput.toJson([value: obj?.toString(), error: e.toString()])
    }}
}}
new File('{output_path}').text = asJson(output)
"""


class GroovyBackend(ScriptBackend):
    """Groovy scripts run through the bundled `groovyExec.jar` launcher."""

    kinds = ("groovy",)
    suffix = ".groovy"
    errors = GROOVY_ERRORS

    def render(self, ctx: "RunContext", request: "Request") -> str:
        input_path = request.output_path.with_suffix(".input")
        input_path.write_text(encode_input(ctx.job.input), encoding="utf-8")
        request.temp_files.append(input_path)

        return _TEMPLATE.format(
            input_path=input_path.as_posix(),
            output_path=request.output_path.as_posix(),
            code=ctx.code,
        )

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        lib = ctx.code_file.parent / "lib" if ctx.code_file is not None else "lib"
        return [
            ctx.config.java_executable,
            "-jar",
            str(ctx.config.groovy_jar),
            str(script_path),
            str(lib),
        ]
