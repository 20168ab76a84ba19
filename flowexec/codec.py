"""
Conventions for moving values across the process boundary: how inputs are handed
to scripts, how their side channel output files and stdout are parsed back, and
how exit status and stdout heuristics are folded into a result's log and error.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

# many interpreters exit 0 even when the script blew up, so stdout is searched too
GROOVY_ERRORS = re.compile(r"Exception|Error|Caused by|groovy\.lang|java\.lang", re.I)
SHELL_ERRORS = re.compile(r"error|not recognized|failed|exception|not found", re.I)
NODE_ERRORS = re.compile(r"error|not found|failed|exception", re.I)
LOG_ERRORS = re.compile(r"error|exception|fail|not found", re.I)
PYTHON_ERRORS = re.compile(
    r"Traceback \(most recent call last\)|\b\w+(?:Error|Exception):"
)


@dataclass
class RawResult:
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = 0
    output_text: str | None = None
    """Contents of the output side channel file, if the script wrote one."""
    value: Any = None
    """Return value of in-process code."""
    failure: str | None = None
    """Message of the exception that aborted in-process code."""


def normalize(value: Any) -> Any:
    """Trim every string inside `value`, recursing into lists and dicts."""
    if isinstance(value, str):
        return value.strip()
    elif isinstance(value, list):
        return [normalize(item) for item in value]
    elif isinstance(value, dict):
        return {key: normalize(item) for key, item in value.items()}

    return value


def parse_loose(text: str | None) -> Any:
    """JSON if the text parses as JSON, otherwise the trimmed text."""
    if text is None:
        return None

    text = text.strip()
    try:
        return json.loads(text)
    except ValueError:
        return text


def unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1].strip()

    return text


def parse_structured(text: str | None) -> Any:
    """Parse only output that looks like a JSON object or array."""
    if text is None:
        return None

    candidate = unquote(text)
    if candidate.startswith(("{", "[")):
        try:
            return json.loads(candidate)
        except ValueError:
            pass

    return text


def numeric_view(value: Any) -> Any:
    """Numeric-looking strings as numbers, anything else unchanged."""
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return value

        return int(number) if number.is_integer() else number

    return value


def encode_input(value: Any) -> str:
    return json.dumps(value, default=str)


def stringify(value: Any) -> str:
    """Input as handed to shell variables."""
    if value is None:
        return ""
    elif isinstance(value, str):
        return value

    return encode_input(value)


def exit_message(returncode: int | None) -> str:
    if returncode is None or returncode == 0:
        return ""
    elif returncode < 0:
        return f"Process killed by signal {-returncode}"

    return f"Command failed with exit code {returncode}"


def compose(raw: RawResult, errors: re.Pattern[str]) -> tuple[str | None, str | None]:
    """
    Fold a process outcome into the (log, error) pair of a result. Stdout that
    matches the backend's error pattern is reported as error instead of log.
    """
    error_in_stdout = raw.stdout if errors.search(raw.stdout) else ""
    log = raw.stdout.strip() if not error_in_stdout else None
    error = (raw.stderr + exit_message(raw.returncode) + error_in_stdout).strip()

    return log, error or None
