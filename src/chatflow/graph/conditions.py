from __future__ import annotations

import json
import logging
from typing import Dict, List, Literal, Optional, Sequence, Type

from pydantic import BaseModel, Field, create_model

from chatflow.graph.actions import thread_messages
from chatflow.graph.types import END_NODE_ID, Condition, GraphState, Node
from chatflow.llm.client import CompletionModel
from chatflow.llm.errors import LLMError

# returned by evaluators when no candidate could be chosen
TERMINATE = END_NODE_ID

ROUTER_CONDITION_KEY = "supervisor.router"
TOOL_CALL_CONDITION_KEY = "tool_call.target"


def router_schema(to_ids: Sequence[str]) -> Type[BaseModel]:
    """Structured output whose only field is constrained to the candidate ids."""
    return create_model(
        "Router",
        next=(Literal[tuple(to_ids)], Field(..., description="Id of the next step to run")),
    )


class SupervisorRouter:
    """
    Router evaluator for `supervisor.router` nodes.

    Asks the model to pick one of the node's first conditional edge targets.
    Any completion error, empty response, parse failure or answer outside the
    candidate set yields `TERMINATE`.
    """

    def __init__(self, llm: CompletionModel | None):
        self.llm = llm

    async def __call__(self, state: GraphState, node: Optional[Node] = None) -> str:
        logger = logging.getLogger(__name__)
        if node is None or self.llm is None:
            return TERMINATE
        to_ids: List[str] = list(node.conditional_edges[0].to_ids) if node.conditional_edges else []
        if not to_ids:
            logger.error(json.dumps({"event": "router_no_targets", "node": node.id}, ensure_ascii=False))
            return TERMINATE
        try:
            result = await self.llm.complete_structured(
                thread_messages(state, node),
                router_schema(to_ids),
                model=node.model,
                metadata={"thread_id": state.thread_id, "node": node.id},
            )
        except LLMError as e:
            logger.error(
                json.dumps({"event": "router_llm_error", "node": node.id, "error_code": e.code}, ensure_ascii=False)
            )
            return TERMINATE
        except Exception:
            logger.exception(json.dumps({"event": "router_error", "node": node.id}, ensure_ascii=False))
            return TERMINATE

        if result.parsing_error or result.parsed is None:
            logger.warning(
                json.dumps(
                    {"event": "router_parse_failed", "node": node.id, "error": result.parsing_error},
                    ensure_ascii=False,
                )
            )
            return TERMINATE
        choice = getattr(result.parsed, "next", None)
        if choice not in to_ids:
            return TERMINATE
        logger.info(json.dumps({"event": "router_choice", "node": node.id, "next": choice}, ensure_ascii=False))
        return choice


async def tool_call_condition(state: GraphState, node: Optional[Node] = None) -> str:  # noqa: ARG001
    """Routes to the node named after the pending tool call of the last message."""
    if not state.messages:
        return TERMINATE
    last = state.messages[-1]
    if not last.tool_calls:
        return TERMINATE
    function = (last.tool_calls[0] or {}).get("function") or {}
    return function.get("name") or TERMINATE


async def unbound_condition(state: GraphState, node: Optional[Node] = None) -> None:  # noqa: ARG001
    """Stands in for a persisted condition whose key is not registered."""
    return None


class ConditionRegistry:
    """
    Conditions by stable key. Persisted conditional edges carry only the key
    and are re-bound through this registry when a graph is restored.
    """

    def __init__(self) -> None:
        self._conditions: Dict[str, Condition] = {}

    def register(self, key: str, condition: Condition, *, replace: bool = False) -> None:
        if key in self._conditions and not replace:
            raise ValueError(f"Condition already registered: {key}")
        self._conditions[key] = condition

    def setdefault(self, key: str, condition: Condition) -> Condition:
        return self._conditions.setdefault(key, condition)

    def get(self, key: str | None) -> Optional[Condition]:
        if not key:
            return None
        return self._conditions.get(key)

    def key_for(self, condition: Condition) -> Optional[str]:
        for key, registered in self._conditions.items():
            if registered is condition:
                return key
        return None

    def keys(self) -> List[str]:
        return list(self._conditions)
