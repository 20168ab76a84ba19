"""
Flow documents: the JSON graphs of nodes and edges produced by the flow editor.
"""

import json
import warnings
from enum import Enum
from pathlib import Path
from typing import Any

import networkx as nx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
)

from .exceptions import (
    DanglingEdgeError,
    DocumentError,
    DuplicateNodeError,
    SelfLoopError,
    UnresolvedDocumentError,
)
from .topology import Topology


class NodeKind(str, Enum):
    CONSTANT = "constant"
    GOTO = "goto"
    FLOW = "flow"


class GotoCondition(BaseModel):
    expr: str | None = None
    goto: str | None = None
    forward_input: bool = Field(default=False, alias="forwardInput")

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @field_validator("forward_input", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)


class NodeData(BaseModel):
    type: str | None = None
    label: str | None = None
    code: str | None = None
    code_file_path: str | None = Field(default=None, alias="codeFilePath")
    value: Any = None
    is_starter_node: bool = Field(default=False, alias="isStarterNode")
    conditions: list[GotoCondition] = Field(default_factory=list)
    dont_wait_for_output: bool = Field(default=False, alias="dontWaitForOutput")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("is_starter_node", "dont_wait_for_output", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("conditions", mode="before")
    @classmethod
    def _coerce_conditions(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []


class Node(BaseModel):
    id: str
    type: str | None = None
    data: NodeData = Field(default_factory=NodeData)

    model_config = ConfigDict(extra="ignore")

    @property
    def kind(self) -> str | None:
        return self.data.type

    @property
    def display_name(self) -> str:
        return self.data.label or self.id


class Edge(BaseModel):
    id: str | None = None
    source: str
    target: str

    model_config = ConfigDict(extra="ignore")


class FlowDocument(BaseModel):
    nodes: list[Node]
    edges: list[Edge]

    model_config = ConfigDict(extra="ignore")

    _path: Path | None = PrivateAttr(default=None)
    _nodes_by_id: dict[str, Node] = PrivateAttr(default_factory=dict)
    _topology: Topology | None = PrivateAttr(default=None)

    @classmethod
    def from_dict(cls, data: Any, path: Path | None = None) -> "FlowDocument":
        if (
            not isinstance(data, dict)
            or not isinstance(data.get("nodes"), list)
            or not isinstance(data.get("edges"), list)
        ):
            raise DocumentError(
                "Invalid flow file format: missing nodes or edges array"
            )

        try:
            document = cls.model_validate(data)
        except ValidationError as e:
            raise DocumentError(f"Invalid flow document: {e}") from e

        document._path = path
        return document

    @classmethod
    def from_file(cls, path: str | Path) -> "FlowDocument":
        path = Path(path).resolve()
        if not path.is_file():
            raise DocumentError(f"Flow file not found: {path}")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DocumentError(f"Invalid JSON in flow file: {path} ({e})") from e

        return cls.from_dict(data, path=path)

    def resolve(self) -> "FlowDocument":
        nodes_by_id: dict[str, Node] = {}

        for node in self.nodes:
            if node.id in nodes_by_id:
                raise DuplicateNodeError(node.id)

            nodes_by_id[node.id] = node

        digraph = nx.DiGraph()

        for index, node in enumerate(self.nodes):
            digraph.add_node(node.id, kind=node.kind, index=index)

        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in nodes_by_id:
                    raise DanglingEdgeError(edge.id, end)

            if edge.source == edge.target:
                raise SelfLoopError(edge.source)

            digraph.add_edge(edge.source, edge.target, id=edge.id)

        # traversal of a cyclic document is bounded by the step budget and visit cap
        if not nx.is_directed_acyclic_graph(digraph):
            cycles = sorted(
                (tuple(cycle) for cycle in nx.simple_cycles(digraph)), key=len
            )
            cycle_str = "\n  ".join(" -> ".join(cycle) for cycle in cycles)
            warnings.warn(
                f"Flow document contains edge cycles:\n  {cycle_str}", stacklevel=2
            )

        if len([node for node in self.nodes if node.data.is_starter_node]) > 1:
            warnings.warn(
                "More than one node is flagged as starter node; the first one wins.",
                stacklevel=2,
            )

        self._nodes_by_id = nodes_by_id
        self._topology = Topology(digraph=digraph, nodes=self.nodes, edges=self.edges)

        return self

    @property
    def resolved(self) -> bool:
        return self._topology is not None

    @property
    def topology(self) -> Topology:
        if not self.resolved:
            raise UnresolvedDocumentError()

        return self._topology

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def directory(self) -> Path:
        return self._path.parent if self._path else Path.cwd()

    def node(self, node_id: str) -> Node | None:
        if not self.resolved:
            raise UnresolvedDocumentError()

        return self._nodes_by_id.get(node_id)

    @property
    def starter(self) -> Node | None:
        return next((node for node in self.nodes if node.data.is_starter_node), None)

    @property
    def gotos(self) -> list[Node]:
        return [node for node in self.nodes if node.kind == NodeKind.GOTO]
