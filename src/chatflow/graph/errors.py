from __future__ import annotations


class GraphError(Exception):
    """Base error of the graph engine."""
    code: str = "graph_error"
    status_code: int = 500

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class GraphStructureError(GraphError):
    """A construction or validation call referenced a node that does not exist."""
    code = "graph_structure"
    status_code = 422


class MissingEntryNodeError(GraphError):
    code = "missing_entry_node"
    status_code = 422


class UnknownNodeError(GraphError):
    """The node set changed under a running loop."""
    code = "unknown_node"
    status_code = 500


class NodeTimeoutError(GraphError):
    code = "node_timeout"
    status_code = 504
