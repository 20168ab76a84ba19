from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from pathlib import Path
    from typing import Any


class FlowExecError(Exception):
    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        super().__init__(*args, **kwargs)
        # aggregated run log, attached by the engine before the error leaves a run
        self.logs: list[str] = []


##
## FLOW DOCUMENTS
##


class DocumentError(FlowExecError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnresolvedDocumentError(DocumentError):
    def __init__(self) -> None:
        super().__init__("Flow documents must be resolved before they can be used.")


class DuplicateNodeError(DocumentError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node id '{node_id}' is used by more than one node.")


class DanglingEdgeError(DocumentError):
    def __init__(self, edge_id: str | None, missing: str) -> None:
        super().__init__(
            f"Edge '{edge_id or '<unnamed>'}' references unknown node '{missing}'."
        )


class SelfLoopError(DocumentError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node '{node_id}' cannot be connected to itself.")


class EntryPointError(DocumentError):
    def __init__(self) -> None:
        super().__init__("No valid entry point found.")


##
## NODE EXECUTION
##


class EvaluationError(FlowExecError):
    def __init__(self, expr: str, reason: str) -> None:
        super().__init__(f"Failed to evaluate goto expression '{expr}': {reason}")


class BackendError(FlowExecError):
    def __init__(self, node_id: str, error: str) -> None:
        super().__init__(f"Node '{node_id}' failed: {error}")
        self.node_id = node_id
        self.error = error


class UnsupportedKindError(BackendError):
    def __init__(self, node_id: str, kind: str | None) -> None:
        super().__init__(node_id, f"No backend is registered for kind '{kind}'.")


class JobTimeoutError(FlowExecError):
    def __init__(self, job_id: str, timeout_ms: int) -> None:
        super().__init__(
            f"Job '{job_id}' timed out after {timeout_ms / 1000:g} seconds."
        )
        self.job_id = job_id


class JobCancelledError(FlowExecError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' was terminated by user.")
        self.job_id = job_id


##
## QUEUE FILES
##


class CorruptFileError(FlowExecError):
    def __init__(self, path: "Path") -> None:
        super().__init__(f"'{path}' does not contain a readable queue record.")
