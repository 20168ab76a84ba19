from .base import Backend, Request, RunContext
from .groovy import GroovyBackend
from .inline import InlinePythonBackend
from .node import NodeBackend
from .script import PythonScriptBackend, ScriptBackend
from .shell import BashBackend, BatchBackend, PowershellBackend, ShellBackend


def default_backends() -> dict[str, Backend]:
    """A fresh registry of every built-in backend, keyed by node kind."""
    backends: list[Backend] = [
        InlinePythonBackend(),
        PythonScriptBackend(),
        NodeBackend(),
        GroovyBackend(),
        BatchBackend(),
        PowershellBackend(),
        BashBackend(),
    ]
    return {kind: backend for backend in backends for kind in backend.kinds}


__all__ = [
    "Backend",
    "BashBackend",
    "BatchBackend",
    "GroovyBackend",
    "InlinePythonBackend",
    "NodeBackend",
    "PowershellBackend",
    "PythonScriptBackend",
    "Request",
    "RunContext",
    "ScriptBackend",
    "ShellBackend",
    "default_backends",
]
