from .config import Config
from .document import Edge, FlowDocument, GotoCondition, Node, NodeData, NodeKind
from .engine import Engine, FlowRun
from .job import Job, Result
from .queue import JobQueue

__all__ = [
    "Config",
    "Edge",
    "Engine",
    "FlowDocument",
    "FlowRun",
    "GotoCondition",
    "Job",
    "JobQueue",
    "Node",
    "NodeData",
    "NodeKind",
    "Result",
]
