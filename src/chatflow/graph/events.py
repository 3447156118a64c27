from __future__ import annotations

import copy
import json
from typing import Any, Callable, Dict, List

from chatflow.graph.types import GraphState, Node

STATE_GRAPH_UPDATED = "state.graph.updated"

Listener = Callable[[Any], None]


class EventEmitter:
    """
    Named-event publish/subscribe.

    Listeners run synchronously in registration order; an exception raised by
    a listener propagates to whoever called `emit`.
    """

    def __init__(self) -> None:
        self._events: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        self._events.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._events.get(event)
        if not listeners:
            return
        self._events[event] = [l for l in listeners if l is not listener]

    def emit(self, event: str, payload: Any) -> None:
        # copy so a listener may unsubscribe itself while being called
        for listener in list(self._events.get(event, [])):
            listener(payload)

    def listener_count(self, event: str) -> int:
        return len(self._events.get(event, []))


def node_to_dict(node: Node) -> Dict[str, Any]:
    return {
        "id": node.id,
        "type": node.type,
        "description": node.description,
        "edges": [
            {"from_id": e.from_id, "to_id": e.to_id, "label": e.label, "metadata": copy.deepcopy(e.metadata)}
            for e in node.edges
        ],
        "conditional_edges": [
            {
                "from_id": c.from_id,
                "to_ids": list(c.to_ids),
                "label": c.label,
                "condition_key": c.condition_key,
                "metadata": copy.deepcopy(c.metadata),
            }
            for c in node.conditional_edges
        ],
        "instructions": [m.to_dict() for m in node.instructions],
        "model": node.model,
        "role": node.role,
        "tools": copy.deepcopy(node.tools),
        "metadata": copy.deepcopy(node.metadata),
        "visited": node.visited,
        "is_active": node.is_active,
    }


def graph_state_event(state: GraphState) -> Dict[str, Any]:
    """Serializable snapshot of the state; shares nothing mutable with the graph."""
    return {
        "id": state.id,
        "name": state.name,
        "thread_id": state.thread_id,
        "metadata": copy.deepcopy(state.metadata),
        "prompt": state.prompt.to_dict() if state.prompt else None,
        "active": state.active,
        "current_node_id": state.current_node_id,
        "termination": state.termination.value if state.termination else None,
        "messages": [m.to_dict() for m in state.messages],
        "nodes": [node_to_dict(n) for n in state.nodes.values()],
        "errors": copy.deepcopy(state.errors),
    }


def format_sse(payload: Dict[str, Any], *, event: str = STATE_GRAPH_UPDATED) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"
