import json
import re
from typing import TYPE_CHECKING

from flowexec.codec import NODE_ERRORS, encode_input, numeric_view

from .script import ScriptBackend

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path

    from .base import Request, RunContext

_RELATIVE_IMPORT = re.compile(
    r"(import\s+[\s\S]*?\s+from\s+)(['\"])"
    r"((?:\.{1,2})?/[^'\"]+?\.(?:js|cjs|mjs))\2"
)

# `output` is assigned by the node's code
_MODULE_TEMPLATE = """\
import {{ writeFileSync as __flowexecWriteFile }} from 'fs';
let output = "";
const input = {input};
{code}
__flowexecWriteFile({output_path}, JSON.stringify(output === undefined ? null : output), 'utf8');
"""

# the node's code is a function body; `process(input)` supplies the output
_FUNCTION_TEMPLATE = """\
import {{ writeFileSync as __flowexecWriteFile }} from 'fs';
const __flowexecOutput = await (async (input, ninput) => {{
{code}
return typeof process === "function" ? await process(input) : undefined;
}})({input}, {ninput});
__flowexecWriteFile({output_path}, JSON.stringify(__flowexecOutput === undefined ? null : __flowexecOutput), 'utf8');
"""


def rewrite_imports(source: str, base: "Path") -> str:
    """Point relative ES module imports at absolute `file://` URLs under `base`."""

    def absolute(match: re.Match[str]) -> str:
        target = (base / match.group(3)).resolve()
        return f"{match.group(1)}{match.group(2)}{target.as_uri()}{match.group(2)}"

    return _RELATIVE_IMPORT.sub(absolute, source)


class NodeBackend(ScriptBackend):
    """
    JavaScript run as an ES module by Node.js. `jsbackend` and `playwright` code
    assigns `output` at module level; `javascript` code is a function body that
    may define `process(input)`.
    """

    kinds = ("javascript", "jsbackend", "playwright")
    suffix = ".mjs"
    errors = NODE_ERRORS

    def render(self, ctx: "RunContext", request: "Request") -> str:
        code = ctx.code
        if ctx.code_file is not None:
            code = rewrite_imports(code, ctx.code_file.parent)

        output_path = json.dumps(str(request.output_path))

        if ctx.job.type == "javascript":
            return _FUNCTION_TEMPLATE.format(
                code=code,
                input=encode_input(ctx.job.input),
                ninput=encode_input(numeric_view(ctx.job.input)),
                output_path=output_path,
            )

        return _MODULE_TEMPLATE.format(
            code=code, input=encode_input(ctx.job.input), output_path=output_path
        )

    def command(self, ctx: "RunContext", script_path: "Path") -> list[str]:
        return [ctx.config.node_executable, str(script_path)]
