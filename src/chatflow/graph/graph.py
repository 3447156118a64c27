from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from chatflow.graph.actions import (
    ActionRegistry,
    ModelAction,
    ToolCallModelAction,
    end_action,
    identity_action,
    start_action,
    void_action,
)
from chatflow.graph.conditions import (
    ROUTER_CONDITION_KEY,
    TERMINATE,
    TOOL_CALL_CONDITION_KEY,
    ConditionRegistry,
    SupervisorRouter,
    tool_call_condition,
    unbound_condition,
)
from chatflow.graph.errors import GraphStructureError, MissingEntryNodeError, NodeTimeoutError, UnknownNodeError
from chatflow.graph.events import STATE_GRAPH_UPDATED, EventEmitter, graph_state_event
from chatflow.graph.snapshot import (
    ConditionalEdgeRecord,
    EdgeRecord,
    GraphSnapshot,
    GraphStore,
    MessageRecord,
    NodeRecord,
    ToolRecord,
)
from chatflow.graph.types import (
    DEFAULT_INSTRUCTIONS,
    DEFAULT_MODEL,
    END_NODE_ID,
    START_NODE_ID,
    Action,
    Condition,
    ConditionalEdge,
    Edge,
    FailurePolicy,
    GraphState,
    Node,
    NodeKind,
    NodeResponse,
    RunResult,
    Termination,
)
from chatflow.llm.client import CompletionModel
from chatflow.llm.types import Message, normalize_messages
from chatflow.telemetry.noop import NoOpTelemetry

DEFAULT_MAX_ITERATIONS = 6

START_DESCRIPTION = (
    "Initial entry point: begins the workflow and hands control to the first step."
)
END_DESCRIPTION = (
    "Finalization point: completes the workflow; reaching it terminates the run."
)

logger = logging.getLogger(__name__)


def _log(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False, default=str))


def _first_choice_message(data: Any) -> Optional[Message]:
    if data is None:
        return None
    choices = data.get("choices") if isinstance(data, Mapping) else getattr(data, "choices", None)
    if not choices:
        return None
    first = choices[0]
    raw = first.get("message") if isinstance(first, Mapping) else getattr(first, "message", None)
    if raw is None:
        return None
    if isinstance(raw, (Message, Mapping)):
        return Message.from_dict(raw)
    return Message(
        role=getattr(raw, "role", None) or "assistant",
        content=getattr(raw, "content", None) or "",
        tool_calls=getattr(raw, "tool_calls", None),
    )


def _tool_messages(data: Any) -> List[Message]:
    if data is None:
        return []
    if isinstance(data, (Message, Mapping)):
        return [Message.from_dict(data)]
    return [Message.from_dict(m) for m in data]


class Graph:
    """
    Conversational workflow graph walked one node at a time from START to END.

    Build with `add_node` / `add_edge` / `add_conditional_edge` (or `restore`
    a persisted snapshot), `compile()`, then `run(...)` or `stream_events(...)`.
    One graph instance owns its state; do not share it between concurrent runs.
    """

    def __init__(
        self,
        *,
        llm: CompletionModel | None = None,
        tool_actions: ActionRegistry | None = None,
        webhooks: ActionRegistry | None = None,
        conditions: ConditionRegistry | None = None,
        telemetry: Any | None = None,
        default_model: str = DEFAULT_MODEL,
        graph_id: str | None = None,
        name: str | None = None,
    ):
        self.llm = llm
        self.tool_actions = tool_actions or ActionRegistry()
        self.webhooks = webhooks or ActionRegistry()
        self.conditions = conditions or ConditionRegistry()
        # bound to this graph's llm; a shared registry only supplies an override
        self.router = SupervisorRouter(llm)
        self.conditions.setdefault(TOOL_CALL_CONDITION_KEY, tool_call_condition)
        self.telemetry = telemetry or NoOpTelemetry()
        self.default_model = default_model

        self._nodes: Dict[str, Node] = {}
        self._events = EventEmitter()
        self.state = self._create_context(graph_id=graph_id, name=name)
        self._add_boundary_nodes()

    # ------------------------------------------------------------------ state

    def _create_context(self, *, graph_id: str | None = None, name: str | None = None) -> GraphState:
        return GraphState(nodes=self._nodes, id=graph_id, name=name)

    def _add_boundary_nodes(self) -> None:
        self.add_node(START_NODE_ID, type=NodeKind.START.value, description=START_DESCRIPTION)
        self.add_node(END_NODE_ID, type=NodeKind.END.value, description=END_DESCRIPTION)

    def _emit(self) -> None:
        if self._events.listener_count(STATE_GRAPH_UPDATED):
            self._events.emit(STATE_GRAPH_UPDATED, graph_state_event(self.state))

    def on_state_change(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        self._events.on(STATE_GRAPH_UPDATED, listener)

    def off_state_change(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        self._events.off(STATE_GRAPH_UPDATED, listener)

    def get_graph_nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def get_state(self) -> Dict[str, Any]:
        return graph_state_event(self.state)

    # ----------------------------------------------------------- construction

    def _condition(self, key: str | None) -> Optional[Condition]:
        condition = self.conditions.get(key)
        if condition is None and key == ROUTER_CONDITION_KEY:
            return self.router
        return condition

    def _condition_key(self, condition: Condition) -> Optional[str]:
        if condition is self.router:
            return ROUTER_CONDITION_KEY
        return self.conditions.key_for(condition)

    def _resolve(self, node: Node, action: Optional[Action]) -> None:
        kind = node.kind
        if kind == NodeKind.TOOL:
            node.action = self.tool_actions.resolve(node.id)
        elif kind == NodeKind.WEBHOOK:
            node.action = self.webhooks.resolve(node.id)
        elif kind == NodeKind.MODEL:
            node.action = action or ModelAction(self.llm)
        elif kind == NodeKind.ROUTER:
            node.action = action or void_action
            to_ids = list(node.conditional_edges[0].to_ids) if node.conditional_edges else []
            node.conditional_edges = [
                ConditionalEdge(
                    from_id=node.id,
                    to_ids=to_ids,
                    condition=self._condition(ROUTER_CONDITION_KEY),
                    label="Default Supervisor Router Condition",
                    condition_key=ROUTER_CONDITION_KEY,
                )
            ]
        elif kind == NodeKind.TOOL_CALL:
            node.action = action or ToolCallModelAction(self.llm, self.tool_actions)
            if node.conditional_edges:
                first = node.conditional_edges[0]
                first.condition = self._condition(TOOL_CALL_CONDITION_KEY)
                first.condition_key = TOOL_CALL_CONDITION_KEY
        elif kind == NodeKind.START:
            node.action = action or start_action
        elif kind == NodeKind.END:
            node.action = action or end_action
        else:
            node.action = action or identity_action

    def add_node(
        self,
        id: str,
        *,
        type: str | None = None,
        action: Optional[Action] = None,
        edges: Optional[Iterable[Edge]] = None,
        conditional_edges: Optional[Iterable[ConditionalEdge]] = None,
        instructions: Optional[Sequence[Message | Mapping[str, Any]]] = None,
        model: str | None = None,
        role: str | None = None,
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        description: str | None = None,
        visited: int = 0,
        is_active: bool = False,
    ) -> "Graph":
        """
        Adds a node unless one with the same id already exists (duplicates are
        ignored, which makes re-declaring START/END harmless). The node's action
        is resolved from its type.
        """
        if not id:
            raise GraphStructureError("Node must have an id.")
        if id in self._nodes:
            logger.debug("node %s already present, ignoring", id)
            return self
        for tool in tools or []:
            if not isinstance(tool, Mapping) or not isinstance(tool.get("name"), str) or not tool["name"]:
                raise GraphStructureError(f"Node '{id}' declares a tool without a name: {tool!r}.")

        node = Node(
            id=id,
            type=type,
            description=description,
            edges=list(edges or []),
            conditional_edges=list(conditional_edges or []),
            instructions=normalize_messages(instructions if instructions is not None else DEFAULT_INSTRUCTIONS),
            model=model or self.default_model,
            role=role,
            tools=[dict(t) for t in tools or []],
            metadata=dict(metadata or {}),
            visited=visited,
            is_active=is_active,
        )
        self._resolve(node, action)
        self._nodes[node.id] = node
        return self

    def add_edge(self, from_id: str, to_id: str, *, label: str | None = None, metadata=None) -> "Graph":
        if from_id not in self._nodes or to_id not in self._nodes:
            raise GraphStructureError(
                f"Cannot add edge: node '{from_id}' or '{to_id}' does not exist in the graph."
            )
        self._nodes[from_id].edges.append(
            Edge(
                from_id=from_id,
                to_id=to_id,
                label=label or f"Edge from {from_id} to {to_id}",
                metadata=dict(metadata or {}),
            )
        )
        return self

    def remove_edge(self, from_id: str, to_id: str) -> "Graph":
        node = self._nodes.get(from_id)
        if node and node.edges:
            node.edges = [e for e in node.edges if e.to_id != to_id]
        return self

    def add_conditional_edge(
        self,
        from_id: str,
        to_ids: Sequence[str],
        condition: Condition | str,
        *,
        label: str | None = None,
        condition_key: str | None = None,
        metadata=None,
    ) -> "Graph":
        """
        `condition` is either a callable or the key of a registered condition.
        Callables registered under a key keep that key for persistence.
        """
        missing = [i for i in [from_id, *to_ids] if i not in self._nodes]
        if missing:
            raise GraphStructureError(
                f"Cannot add conditional edge from '{from_id}': unknown node(s) {', '.join(missing)}."
            )
        if isinstance(condition, str):
            condition_key = condition
            resolved = self._condition(condition)
            if resolved is None:
                raise GraphStructureError(f"Unknown condition '{condition}'.")
            condition = resolved
        self._nodes[from_id].conditional_edges.append(
            ConditionalEdge(
                from_id=from_id,
                to_ids=list(to_ids),
                condition=condition,
                label=label,
                metadata=dict(metadata or {}),
                condition_key=condition_key or self._condition_key(condition),
            )
        )
        return self

    def update_conditional_edge(self, from_id: str, to_ids: Sequence[str]) -> "Graph":
        """Replaces the targets of a router node's conditional edge."""
        node = self._nodes.get(from_id)
        if node is None or not node.conditional_edges:
            raise GraphStructureError(f"Node '{from_id}' has no conditional edge to update.")
        missing = [i for i in to_ids if i not in self._nodes]
        if missing:
            raise GraphStructureError(f"Unknown target node(s) {', '.join(missing)}.")
        node.conditional_edges = [
            ConditionalEdge(
                from_id=from_id,
                to_ids=list(to_ids),
                condition=self._condition(ROUTER_CONDITION_KEY),
                label="Default Supervisor Router Condition",
                condition_key=ROUTER_CONDITION_KEY,
            )
        ]
        return self

    def compile(self) -> "Graph":
        self.validate_nodes()
        self.reorder_end_node()
        _log("graph_compiled", graph_id=self.state.id, nodes=len(self._nodes))
        return self

    def validate_nodes(self) -> None:
        if START_NODE_ID not in self._nodes:
            raise GraphStructureError(f"Graph must include a start node with ID '{START_NODE_ID}'.")
        if END_NODE_ID not in self._nodes:
            raise GraphStructureError(f"Graph must include an end node with ID '{END_NODE_ID}'.")
        for node in self._nodes.values():
            for edge in node.edges:
                if edge.to_id not in self._nodes:
                    raise GraphStructureError(
                        f"Node '{node.id}' has an edge to non-existing node '{edge.to_id}'."
                    )
            for cond_edge in node.conditional_edges:
                for to_id in cond_edge.to_ids:
                    if to_id not in self._nodes:
                        raise GraphStructureError(
                            f"Conditional edge from '{node.id}' to non-existing node '{to_id}'."
                        )

    def reorder_end_node(self) -> None:
        end = self._nodes.pop(END_NODE_ID, None)
        if end is not None:
            self._nodes[END_NODE_ID] = end

    # -------------------------------------------------------------- execution

    async def run(
        self,
        messages: Optional[Sequence[Message | Mapping[str, Any]]] = None,
        *,
        prompt: Message | Mapping[str, Any] | None = None,
        thread_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        node_timeout_s: float | None = None,
    ) -> Optional[str]:
        """Runs to termination; returns the last message's content if it is an assistant message."""
        result = await self._execute(
            messages=messages,
            prompt=prompt,
            thread_id=thread_id,
            metadata=metadata,
            max_iterations=max_iterations,
            node_timeout_s=node_timeout_s,
            stream=False,
        )
        return result.output

    async def invoke(
        self,
        messages: Optional[Sequence[Message | Mapping[str, Any]]] = None,
        *,
        prompt: Message | Mapping[str, Any] | None = None,
        thread_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        node_timeout_s: float | None = None,
    ) -> RunResult:
        """Same loop as `run`, returning how the run terminated alongside the output."""
        return await self._execute(
            messages=messages,
            prompt=prompt,
            thread_id=thread_id,
            metadata=metadata,
            max_iterations=max_iterations,
            node_timeout_s=node_timeout_s,
            stream=False,
        )

    async def stream_events(
        self,
        messages: Optional[Sequence[Message | Mapping[str, Any]]] = None,
        *,
        prompt: Message | Mapping[str, Any] | None = None,
        thread_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        node_timeout_s: float | None = None,
    ) -> None:
        """Runs to termination, emitting a state event after every state mutation."""
        await self._execute(
            messages=messages,
            prompt=prompt,
            thread_id=thread_id,
            metadata=metadata,
            max_iterations=max_iterations,
            node_timeout_s=node_timeout_s,
            stream=True,
        )

    async def _execute(
        self,
        *,
        messages,
        prompt,
        thread_id: str | None,
        metadata: Optional[Dict[str, Any]],
        max_iterations: int,
        node_timeout_s: float | None,
        stream: bool,
    ) -> RunResult:
        if START_NODE_ID not in self._nodes:
            raise MissingEntryNodeError(f"Start node with ID '{START_NODE_ID}' does not exist.")

        state = self.state
        state.active = True
        state.thread_id = thread_id
        state.metadata = metadata
        state.prompt = Message.from_dict(prompt) if prompt else None
        state.current_node_id = START_NODE_ID
        state.termination = None
        state.errors = []

        start = time.perf_counter()
        iterations = 0
        node: Optional[Node] = None
        try:
            seeded = False
            if messages is not None:
                state.messages = normalize_messages(messages)
                seeded = True
                if stream:
                    self._emit()
            if state.prompt is not None and state.prompt.role and state.prompt.content:
                state.messages = [*state.messages, state.prompt]
                seeded = True
                if stream:
                    self._emit()
            if stream and not seeded:
                self._emit()

            _log(
                "graph_run_start",
                graph_id=state.id,
                thread_id=thread_id,
                messages=len(state.messages),
                max_iterations=max_iterations,
                stream=stream,
            )
            while state.current_node_id is not None:
                node = self._nodes.get(state.current_node_id)
                if node is None:
                    raise UnknownNodeError(f"Node with ID {state.current_node_id} does not exist.")

                node.is_active = True
                node.visited += 1
                if stream:
                    self._emit()

                response = await self._visit(node, node_timeout_s=node_timeout_s)

                node.is_active = False
                self._emit()

                if not response.success and node.failure_policy == FailurePolicy.HALT:
                    state.termination = Termination.HALTED
                    break
                if state.current_node_id == END_NODE_ID:
                    state.termination = Termination.END
                    break

                iterations += 1
                if max_iterations and iterations >= max_iterations:
                    logger.warning(
                        json.dumps(
                            {
                                "event": "graph_max_iterations",
                                "thread_id": thread_id,
                                "node": node.id,
                                "iterations": iterations,
                            },
                            ensure_ascii=False,
                        )
                    )
                    state.termination = Termination.MAX_ITERATIONS
                    break

                await self._route(node)
                if stream:
                    self._emit()
        finally:
            # nothing is reported active once the run has left this method
            state.active = False
            if node is not None:
                node.is_active = False

        if state.termination is None:
            state.termination = Termination.NO_ROUTE
        if stream:
            self._emit()

        output = None
        last = state.messages[-1] if state.messages else None
        if last is not None and last.role == "assistant":
            output = last.content
        _log(
            "graph_run_end",
            graph_id=state.id,
            thread_id=thread_id,
            termination=state.termination.value,
            iterations=iterations,
            errors=len(state.errors),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return RunResult(
            output=output,
            termination=state.termination,
            iterations=iterations,
            errors=list(state.errors),
        )

    async def _visit(self, node: Node, *, node_timeout_s: float | None) -> NodeResponse[Any]:
        _log("node_start", thread_id=self.state.thread_id, node=node.id, type=node.type)
        start = time.perf_counter()
        response = await self._execute_node(node, node_timeout_s=node_timeout_s)
        latency_ms = int((time.perf_counter() - start) * 1000)
        if response.success:
            self._handle_response(response, node)
        else:
            self.state.errors.append({"node": node.id, "type": node.type, "error": response.error})
        _log(
            "node_end",
            thread_id=self.state.thread_id,
            node=node.id,
            status="ok" if response.success else "error",
            latency_ms=latency_ms,
        )
        self.telemetry.log_step(
            trace_id=self.state.thread_id,
            node=node.id,
            meta={"type": node.type, "success": response.success, "latency_ms": latency_ms},
        )
        return response

    async def _execute_node(self, node: Node, *, node_timeout_s: float | None) -> NodeResponse[Any]:
        if node.action is None:
            return NodeResponse(success=True, data=None)
        timeout = node.metadata.get("timeout_s", node_timeout_s)
        try:
            if timeout:
                try:
                    data = await asyncio.wait_for(node.action(self.state, node), timeout=float(timeout))
                except asyncio.TimeoutError as e:
                    raise NodeTimeoutError(f"Node '{node.id}' timed out after {timeout}s") from e
            else:
                data = await node.action(self.state, node)
        except Exception as exc:
            logger.error(
                json.dumps(
                    {
                        "event": "node_error",
                        "thread_id": self.state.thread_id,
                        "node": node.id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                    ensure_ascii=False,
                )
            )
            self.telemetry.error(self.state.thread_id, exc)
            return NodeResponse(success=False, error=str(exc) or type(exc).__name__)
        return NodeResponse(success=True, data=data)

    def _handle_response(self, response: NodeResponse[Any], node: Node) -> None:
        kind = node.kind
        if kind in (NodeKind.MODEL, NodeKind.TOOL_CALL):
            msg = _first_choice_message(response.data)
            if msg is not None:
                self._append_messages([msg])
        elif kind == NodeKind.TOOL:
            self._append_messages(_tool_messages(response.data))
        # routers, webhooks and passthrough nodes leave the transcript alone

    def _append_messages(self, messages: List[Message]) -> None:
        if messages:
            self.state.messages = [*self.state.messages, *messages]

    async def _route(self, node: Node) -> None:
        for cond_edge in node.conditional_edges:
            try:
                next_id = cond_edge.condition(self.state, node)
                if inspect.isawaitable(next_id):
                    next_id = await next_id
            except Exception:
                logger.exception(
                    json.dumps({"event": "condition_error", "node": node.id}, ensure_ascii=False)
                )
                next_id = TERMINATE
            if next_id and next_id in self._nodes:
                self.state.current_node_id = next_id
                return

        for edge in node.edges:
            if edge.to_id in self._nodes:
                self.state.current_node_id = edge.to_id
                return

        self.state.current_node_id = None

    # ------------------------------------------------------------ persistence

    def to_snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            id=self.state.id or "default_graph_id",
            name=self.state.name,
            thread_id=self.state.thread_id,
            metadata=self.state.metadata,
            messages=[MessageRecord(**m.to_dict()) for m in self.state.messages],
            nodes=[
                NodeRecord(
                    id=n.id,
                    type=n.type,
                    description=n.description,
                    edges=[
                        EdgeRecord(from_id=e.from_id, to_id=e.to_id, label=e.label, metadata=e.metadata)
                        for e in n.edges
                    ],
                    conditional_edges=[
                        ConditionalEdgeRecord(
                            from_id=c.from_id,
                            to_ids=list(c.to_ids),
                            label=c.label,
                            condition_key=c.condition_key,
                            metadata=c.metadata,
                        )
                        for c in n.conditional_edges
                    ],
                    model=n.model,
                    role=n.role,
                    tools=[ToolRecord(**t) for t in n.tools],
                    instructions=[MessageRecord(**m.to_dict()) for m in n.instructions],
                    metadata=n.metadata,
                    visited=n.visited,
                )
                for n in self._nodes.values()
            ],
        )

    def _bind_condition(self, record: ConditionalEdgeRecord) -> ConditionalEdge:
        condition = self._condition(record.condition_key)
        if condition is None:
            logger.warning(
                json.dumps(
                    {
                        "event": "condition_unbound",
                        "node": record.from_id,
                        "condition_key": record.condition_key,
                    },
                    ensure_ascii=False,
                )
            )
            condition = unbound_condition
        return ConditionalEdge(
            from_id=record.from_id,
            to_ids=list(record.to_ids),
            condition=condition,
            label=record.label,
            metadata=dict(record.metadata),
            condition_key=record.condition_key,
        )

    def _reset(self, *, graph_id: str | None, name: str | None) -> None:
        self._nodes.clear()
        self.state = self._create_context(graph_id=graph_id, name=name)

    def restore(self, snapshot: GraphSnapshot) -> "Graph":
        """Rebuilds nodes and transcript from a snapshot, re-binding conditions by key."""
        self._reset(graph_id=snapshot.id, name=snapshot.name)
        for record in snapshot.nodes:
            self.add_node(
                record.id,
                type=record.type,
                description=record.description,
                edges=[
                    Edge(from_id=e.from_id, to_id=e.to_id, label=e.label, metadata=dict(e.metadata))
                    for e in record.edges
                ],
                conditional_edges=[self._bind_condition(c) for c in record.conditional_edges],
                instructions=[m.model_dump(exclude_none=True) for m in record.instructions]
                if record.instructions is not None
                else None,
                model=record.model,
                role=record.role,
                tools=[t.model_dump(exclude_none=True) for t in record.tools],
                metadata=record.metadata,
                visited=record.visited,
            )
        self._add_boundary_nodes()
        self.state.messages = normalize_messages([m.model_dump(exclude_none=True) for m in snapshot.messages])
        self.state.thread_id = snapshot.thread_id
        self.state.metadata = snapshot.metadata
        _log("graph_restored", graph_id=snapshot.id, nodes=len(self._nodes), messages=len(self.state.messages))
        return self

    def reset_default(self) -> "Graph":
        """Back to a bare START/END graph with an empty transcript."""
        self._reset(graph_id=self.state.id, name=self.state.name)
        self._add_boundary_nodes()
        return self

    async def load(self, store: GraphStore, graph_id: str) -> "Graph":
        return self.restore(await store.load(graph_id))

    async def save(self, store: GraphStore) -> GraphSnapshot:
        snapshot = self.to_snapshot()
        await store.save(snapshot)
        return snapshot
