from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["system", "user", "assistant", "tool"]


class ChatMessage(BaseModel):
    role: Role
    content: str = ""
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


class RunRequest(BaseModel):
    """
    Runs a stored graph over a conversation.
    `messages` replaces the stored transcript; `prompt` is appended after it.
    """

    messages: Optional[List[ChatMessage]] = Field(default=None, description="Full conversation so far")
    prompt: Optional[ChatMessage] = Field(default=None, description="Single message appended to the transcript")
    thread_id: Optional[str] = Field(default=None, description="Conversation / chat id")
    metadata: Optional[Dict[str, Any]] = None
    max_iterations: Optional[int] = Field(default=None, ge=1, le=100)
    reply: bool = Field(default=False, description="Send the answer back to `thread_id` through the transport")


class RunResponse(BaseModel):
    graph_id: str
    thread_id: Optional[str] = None
    output: Optional[str] = None
    termination: str
    iterations: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    replied: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
