from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union

from chatflow.llm.types import Message

T = TypeVar("T")

START_NODE_ID = "START"
END_NODE_ID = "END"

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_INSTRUCTIONS = ({"role": "system", "content": "You are a helpful assistant."},)


class NodeKind(str, Enum):
    """Closed set of node behaviours; resolved once from the free-form `type` tag."""

    START = "start"
    END = "end"
    MODEL = "completion.model"
    TOOL_CALL = "completion.tool_call"
    ROUTER = "supervisor.router"
    TOOL = "tool"
    WEBHOOK = "webhook"
    PASSTHROUGH = "passthrough"

    @classmethod
    def of(cls, type_tag: str | None) -> "NodeKind":
        if not type_tag:
            return cls.PASSTHROUGH
        if type_tag == cls.TOOL_CALL.value or type_tag.startswith(cls.TOOL_CALL.value + "."):
            return cls.TOOL_CALL
        for kind in cls:
            if kind.value == type_tag:
                return kind
        return cls.PASSTHROUGH


class Termination(str, Enum):
    END = "end"
    MAX_ITERATIONS = "max_iterations"
    NO_ROUTE = "no_route"
    HALTED = "halted"


class FailurePolicy(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"


Action = Callable[["GraphState", "Node"], Awaitable[Any]]
ConditionResult = Union[Optional[str], Awaitable[Optional[str]]]
Condition = Callable[["GraphState", Optional["Node"]], ConditionResult]


@dataclass
class Edge:
    from_id: str
    to_id: str
    label: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConditionalEdge:
    from_id: str
    to_ids: List[str]
    condition: Condition
    label: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # stable tag the condition is registered under; persisted instead of the function
    condition_key: Optional[str] = None


@dataclass
class Node:
    id: str
    type: Optional[str] = None
    description: Optional[str] = None
    edges: List[Edge] = field(default_factory=list)
    conditional_edges: List[ConditionalEdge] = field(default_factory=list)
    action: Optional[Action] = None
    instructions: List[Message] = field(default_factory=list)
    model: str = DEFAULT_MODEL
    role: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    visited: int = 0
    is_active: bool = False

    @property
    def kind(self) -> NodeKind:
        return NodeKind.of(self.type)

    @property
    def failure_policy(self) -> FailurePolicy:
        try:
            return FailurePolicy(self.metadata.get("on_error") or FailurePolicy.CONTINUE)
        except ValueError:
            return FailurePolicy.CONTINUE


@dataclass
class NodeResponse(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None


@dataclass
class GraphState:
    nodes: Dict[str, Node]
    messages: List[Message] = field(default_factory=list)
    active: bool = False
    current_node_id: Optional[str] = None

    # run-scoped context supplied by the caller
    thread_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    prompt: Optional[Message] = None

    id: Optional[str] = None
    name: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    termination: Optional[Termination] = None


@dataclass(frozen=True)
class RunResult:
    output: Optional[str]
    termination: Termination
    iterations: int
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.termination == Termination.END
