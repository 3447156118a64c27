from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from chatflow.graph.actions import ActionRegistry, ToolAction, parameters_from_model
from chatflow.graph.types import GraphState, Node
from chatflow.transport import ReplySender

REDIRECT_TOOL_NAME = "redirect"


class RedirectArgs(BaseModel):
    client_name: str = Field(..., description="Client name is required")
    client_email: str = Field(..., description="Client email is required")
    client_id: str = Field(..., description="Client national id / tax id is required")
    reason: str = Field(..., description="Reason for contact is required")


NOTIFICATION_TEMPLATE = """\
*Attention required*
Client: {client_name}
Client id: {client_id}
Client email: {client_email}
Reason: {reason}
Requested at: {requested_at}

Chat: {chat_link}

Team, please assign someone to this request as soon as possible."""


def _pending_tool_call(state: GraphState) -> Optional[Dict[str, Any]]:
    if not state.messages:
        return None
    last = state.messages[-1]
    if not last.tool_calls:
        return None
    return last.tool_calls[0]


class RedirectTool:
    """
    Hands the conversation over to the human team.

    Reads the pending `redirect` tool call from the last transcript message,
    notifies the team chat through the reply sender and answers the client
    with a closing tool message.
    """

    def __init__(
        self,
        sender: ReplySender,
        *,
        notify_chat_id: str,
        public_name: str = "our team",
    ):
        self.sender = sender
        self.notify_chat_id = notify_chat_id
        self.public_name = public_name

    async def __call__(self, state: GraphState, node: Node) -> List[Dict[str, Any]]:  # noqa: ARG002
        call = _pending_tool_call(state)
        if call is None:
            raise ValueError("redirect requires a pending tool call on the last message")
        arguments = (call.get("function") or {}).get("arguments") or "{}"
        try:
            args = RedirectArgs.model_validate_json(arguments)
        except ValidationError as e:
            raise ValueError(f"invalid redirect arguments: {e.error_count()} error(s)") from e

        phone = (state.thread_id or "").split("@")[0]
        text = NOTIFICATION_TEMPLATE.format(
            client_name=args.client_name,
            client_id=args.client_id,
            client_email=args.client_email,
            reason=args.reason,
            requested_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            chat_link=f"https://wa.me/{phone}" if phone else "-",
        )
        await self.sender.send_message(self.notify_chat_id, text)
        logging.getLogger(__name__).info(
            json.dumps(
                {"event": "redirect_notified", "thread_id": state.thread_id, "call_id": call.get("id")},
                ensure_ascii=False,
            )
        )
        return [
            {
                "role": "tool",
                "content": (
                    f"Thank you for your interest in *{self.public_name}*! "
                    "We have forwarded your request to our team. "
                    "If you have more questions in the future, don't hesitate to come back."
                ),
                "tool_call_id": call.get("id"),
            }
        ]


def register_redirect(
    registry: ActionRegistry,
    sender: ReplySender,
    *,
    notify_chat_id: str,
    public_name: str = "our team",
) -> ToolAction:
    tool = ToolAction(
        name=REDIRECT_TOOL_NAME,
        action=RedirectTool(sender, notify_chat_id=notify_chat_id, public_name=public_name),
        description="Forward the conversation to a human when the client asks to be contacted.",
        parameters=parameters_from_model(RedirectArgs),
    )
    registry.register(tool)
    return tool
