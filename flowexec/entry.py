from typing import TYPE_CHECKING

from .exceptions import EntryPointError

if TYPE_CHECKING:  # pragma: no cover
    from .document import FlowDocument


def resolve_entry(document: "FlowDocument") -> str:
    """
    Pick the node a traversal starts from: the flagged starter node, else the root
    ancestor of the earliest created goto node, else the earliest created root.
    """
    if starter := document.starter:
        return starter.id

    topology = document.topology

    if gotos := document.gotos:
        first_goto = min(gotos, key=lambda node: topology.creation_index(node.id))
        # a goto sitting on a cycle has no root ancestor; start at the goto itself
        return next(iter(topology.root_ancestors(first_goto.id)), first_goto.id)

    if roots := topology.roots:
        return roots[0]

    raise EntryPointError()
