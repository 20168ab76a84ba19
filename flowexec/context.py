from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .document import FlowDocument
from .log import RunLog


class ExecutionContext(BaseModel):
    """Everything one traversal of one flow document remembers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    document: FlowDocument
    entry: str
    ancestry: list[Path] = Field(default_factory=list)
    flow_input: Any = None
    base_path: Path
    timeout_ms: int = 0
    run_log: RunLog = Field(default_factory=RunLog)

    results: dict[str, Any] = Field(default_factory=dict)
    executed: set[str] = Field(default_factory=set)
    executing: set[str] = Field(default_factory=set)
    executed_at: dict[str, int] = Field(default_factory=dict)
    tick: int = 0
    steps_left: int = 1000
    visits: dict[str, int] = Field(default_factory=dict)
    goto_decisions: dict[str, str | None] = Field(default_factory=dict)
    injected_inputs: dict[str, Any] = Field(default_factory=dict)
    last_executed: str | None = None

    @property
    def lineage(self) -> list[Path]:
        """Ancestry including the document being traversed."""
        if self.document.path is None:
            return list(self.ancestry)

        return [*self.ancestry, self.document.path]

    def stamp(self, node_id: str) -> None:
        self.tick += 1
        self.executed.add(node_id)
        self.executed_at[node_id] = self.tick

    def is_stale(self, node_id: str) -> bool:
        """True when some predecessor ran more recently than the node itself."""
        own = self.executed_at.get(node_id, 0)
        return any(
            self.executed_at.get(pred, 0) > own
            for pred in self.document.topology.predecessors(node_id)
        )

    def final_result(self) -> Any:
        if self.last_executed is None:
            return None

        return self.results.get(self.last_executed)
