from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Literal, Mapping, Optional, Sequence, TypeVar

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Optional[str]

T = TypeVar("T")


@dataclass(frozen=True)
class Message:
    """
    One transcript entry. Never mutated once appended to a transcript;
    `tool_calls` keeps the OpenAI wire shape:
    {"id": ..., "type": "function", "function": {"name": ..., "arguments": "<json>"}}
    """

    role: str
    content: str = ""
    name: Optional[str] = None
    tool_calls: Optional[Sequence[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | "Message") -> "Message":
        if isinstance(data, Message):
            return data
        tool_calls = data.get("tool_calls")
        return cls(
            role=str(data.get("role") or "user"),
            content=data.get("content") or "",
            name=data.get("name"),
            tool_calls=tuple(tool_calls) if tool_calls else None,
            tool_call_id=data.get("tool_call_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            out["name"] = self.name
        if self.tool_calls:
            out["tool_calls"] = [dict(call) for call in self.tool_calls]
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        return out


def normalize_messages(messages: Sequence[Mapping[str, Any] | Message] | None) -> List[Message]:
    return [Message.from_dict(m) for m in messages or []]


@dataclass(frozen=True)
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class Choice:
    index: int
    message: Message
    finish_reason: FinishReason = None


@dataclass(frozen=True)
class ChatCompletion:
    choices: Sequence[Choice]
    model: str
    provider: str
    usage: LLMUsage = LLMUsage()
    latency_ms: int = 0

    @property
    def first_message(self) -> Optional[Message]:
        if not self.choices:
            return None
        return self.choices[0].message


@dataclass(frozen=True)
class LLMRequest:
    messages: Sequence[Message]
    model: str
    temperature: Optional[float] = 0.1
    max_output_tokens: int = 1024
    tools: Optional[Sequence[Dict[str, Any]]] = None
    tool_choice: Optional[str] = None
    parallel_tool_calls: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)  # thread_id, node, etc.


@dataclass(frozen=True)
class StructuredResult(Generic[T]):
    parsed: T | None
    raw: Any | None
    parsing_error: str | None
