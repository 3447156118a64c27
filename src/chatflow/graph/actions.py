from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel

from chatflow.graph.types import Action, GraphState, Node, NodeKind
from chatflow.llm.client import CompletionModel
from chatflow.llm.types import ChatCompletion, Message


@dataclass(frozen=True)
class ToolAction:
    """A named side-effecting action bound to `tool` / `webhook` nodes by node id."""
    name: str
    action: Action
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)  # JSON schema of the call arguments

    def as_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


def parameters_from_model(model: Type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema["additionalProperties"] = False
    return schema


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: Dict[str, ToolAction] = {}

    def register(self, tool: ToolAction) -> None:
        if tool.name in self._actions:
            raise ValueError(f"Action already registered: {tool.name}")
        self._actions[tool.name] = tool

    def get(self, name: str) -> Optional[ToolAction]:
        return self._actions.get(name)

    def resolve(self, name: str) -> Optional[Action]:
        tool = self._actions.get(name)
        return tool.action if tool else None

    def list(self) -> List[ToolAction]:
        return list(self._actions.values())

    def __contains__(self, name: object) -> bool:
        return name in self._actions


async def void_action(state: GraphState, node: Node) -> None:  # noqa: ARG001
    return None


async def identity_action(state: GraphState, node: Node) -> GraphState:  # noqa: ARG001
    return state


async def start_action(state: GraphState, node: Node) -> None:  # noqa: ARG001
    logging.getLogger(__name__).info(
        json.dumps({"event": "workflow_started", "thread_id": state.thread_id}, ensure_ascii=False)
    )


async def end_action(state: GraphState, node: Node) -> None:  # noqa: ARG001
    logging.getLogger(__name__).info(
        json.dumps(
            {"event": "workflow_ended", "thread_id": state.thread_id, "messages": len(state.messages)},
            ensure_ascii=False,
        )
    )


def thread_messages(state: GraphState, node: Node, *extra: Message) -> List[Message]:
    """Node instructions first, then the transcript, then any per-call additions."""
    return [*node.instructions, *state.messages, *extra]


def _call_metadata(state: GraphState, node: Node) -> Dict[str, Any]:
    return {"thread_id": state.thread_id, "node": node.id, "node_type": node.type}


class ModelAction:
    """`completion.model`: one chat completion over instructions + transcript."""

    def __init__(self, llm: CompletionModel | None, *, temperature: float = 0.1):
        self.llm = llm
        self.temperature = temperature

    async def __call__(self, state: GraphState, node: Node) -> ChatCompletion:
        if self.llm is None:
            raise RuntimeError(f"No completion model configured for node '{node.id}'")
        return await self.llm.complete(
            thread_messages(state, node),
            model=node.model,
            temperature=self.temperature,
            metadata=_call_metadata(state, node),
        )


class ToolCallModelAction:
    """
    `completion.tool_call.*`: a completion that may answer with a pending tool call.

    Tools offered to the model are taken from `node.tools` (by name) and looked
    up in the action registry; a node typed `completion.tool_call.<name>` with
    no tools declared offers the registered action `<name>`.
    A system message with the current date and time is appended to the thread.
    """

    def __init__(
        self,
        llm: CompletionModel | None,
        actions: ActionRegistry,
        *,
        temperature: float = 0.2,
    ):
        self.llm = llm
        self.actions = actions
        self.temperature = temperature

    def tools_for(self, node: Node) -> List[Dict[str, Any]]:
        names = [t.get("name") for t in node.tools if t.get("name")]
        if not names and node.type and node.type.startswith(NodeKind.TOOL_CALL.value + "."):
            names = [node.type[len(NodeKind.TOOL_CALL.value) + 1:]]
        specs = []
        for name in names:
            tool = self.actions.get(name)
            if tool is None:
                logging.getLogger(__name__).warning(
                    json.dumps({"event": "tool_not_registered", "node": node.id, "tool": name}, ensure_ascii=False)
                )
                continue
            specs.append(tool.as_openai_tool())
        return specs

    async def __call__(self, state: GraphState, node: Node) -> ChatCompletion:
        if self.llm is None:
            raise RuntimeError(f"No completion model configured for node '{node.id}'")
        now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        tools = self.tools_for(node)
        return await self.llm.complete(
            thread_messages(state, node, Message(role="system", content=f"Current date and time: {now}")),
            model=node.model,
            temperature=self.temperature,
            tools=tools or None,
            tool_choice="auto" if tools else None,
            parallel_tool_calls=False if tools else None,
            metadata=_call_metadata(state, node),
        )
