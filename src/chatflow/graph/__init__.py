from .actions import ActionRegistry, ModelAction, ToolAction, ToolCallModelAction, parameters_from_model
from .conditions import (
    ROUTER_CONDITION_KEY,
    TERMINATE,
    TOOL_CALL_CONDITION_KEY,
    ConditionRegistry,
    SupervisorRouter,
    tool_call_condition,
)
from .errors import GraphError, GraphStructureError, MissingEntryNodeError, NodeTimeoutError, UnknownNodeError
from .events import STATE_GRAPH_UPDATED, EventEmitter, format_sse, graph_state_event
from .graph import DEFAULT_MAX_ITERATIONS, Graph
from .snapshot import GraphSnapshot, GraphStore, InMemoryGraphStore, JsonFileGraphStore, SnapshotNotFound
from .types import (
    END_NODE_ID,
    START_NODE_ID,
    ConditionalEdge,
    Edge,
    FailurePolicy,
    GraphState,
    Node,
    NodeKind,
    RunResult,
    Termination,
)

__all__ = [
    "ActionRegistry",
    "ConditionRegistry",
    "ConditionalEdge",
    "DEFAULT_MAX_ITERATIONS",
    "END_NODE_ID",
    "Edge",
    "EventEmitter",
    "FailurePolicy",
    "Graph",
    "GraphError",
    "GraphSnapshot",
    "GraphState",
    "GraphStore",
    "GraphStructureError",
    "InMemoryGraphStore",
    "JsonFileGraphStore",
    "MissingEntryNodeError",
    "ModelAction",
    "Node",
    "NodeKind",
    "NodeTimeoutError",
    "ROUTER_CONDITION_KEY",
    "RunResult",
    "START_NODE_ID",
    "STATE_GRAPH_UPDATED",
    "SnapshotNotFound",
    "SupervisorRouter",
    "TERMINATE",
    "TOOL_CALL_CONDITION_KEY",
    "Termination",
    "ToolAction",
    "ToolCallModelAction",
    "UnknownNodeError",
    "format_sse",
    "graph_state_event",
    "parameters_from_model",
    "tool_call_condition",
]
