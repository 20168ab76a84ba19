from typing import TYPE_CHECKING

import networkx as nx
from networkx import generate_network_text

if TYPE_CHECKING:  # pragma: no cover
    from networkx import DiGraph

    from .document import Edge, Node


class Topology:
    """
    Adjacency indexes of a resolved flow document. Edge order is preserved, so the
    predecessors of a node are listed in the order their edges were declared.
    """

    def __init__(
        self, *, digraph: "DiGraph", nodes: list["Node"], edges: list["Edge"]
    ) -> None:
        self.digraph = digraph
        self._creation_index: dict[str, int] = {
            node.id: index for index, node in enumerate(nodes)
        }
        self.incoming: dict[str, list["Edge"]] = {node.id: [] for node in nodes}
        self.outgoing: dict[str, list["Edge"]] = {node.id: [] for node in nodes}

        for edge in edges:
            self.incoming[edge.target].append(edge)
            self.outgoing[edge.source].append(edge)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._creation_index

    def predecessors(self, node_id: str) -> list[str]:
        return [edge.source for edge in self.incoming.get(node_id, ())]

    def successors(self, node_id: str) -> list[str]:
        return [edge.target for edge in self.outgoing.get(node_id, ())]

    def creation_index(self, node_id: str) -> int:
        return self._creation_index[node_id]

    @property
    def roots(self) -> list[str]:
        """Nodes without incoming edges, earliest created first."""
        return sorted(
            (node_id for node_id, edges in self.incoming.items() if not edges),
            key=self.creation_index,
        )

    def root_ancestors(self, node_id: str) -> list[str]:
        """Ancestors of `node_id` (itself included) that have no incoming edges."""
        candidates = nx.ancestors(self.digraph, node_id) | {node_id}
        return sorted(
            (candidate for candidate in candidates if not self.incoming[candidate]),
            key=self.creation_index,
        )

    def __str__(self) -> str:
        return "\n".join(generate_network_text(self.digraph, vertical_chains=True))
