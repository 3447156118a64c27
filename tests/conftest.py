import sys
from pathlib import Path

# so that src/ is importable without an install
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from chatflow.llm.base import LLMProvider
from chatflow.llm.types import ChatCompletion, Choice, LLMRequest, LLMUsage, Message, StructuredResult


def completion(content: str = "", *, tool_calls=None, model: str = "gpt-test") -> ChatCompletion:
    return ChatCompletion(
        choices=[
            Choice(
                index=0,
                message=Message(role="assistant", content=content, tool_calls=tool_calls),
                finish_reason="tool_calls" if tool_calls else "stop",
            )
        ],
        model=model,
        provider="fake",
    )


def tool_call(name: str, arguments: str = "{}", call_id: str = "call_1") -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


class ScriptedLLM:
    """
    CompletionModel double. `complete` pops from `replies`, `complete_structured`
    from `structured`; exceptions in a script are raised. Every call is recorded.
    """

    def __init__(self, replies: Optional[List[Any]] = None, structured: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.structured = list(structured or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages,
        *,
        model=None,
        temperature=0.1,
        tools=None,
        tool_choice=None,
        parallel_tool_calls=None,
        metadata=None,
    ) -> ChatCompletion:
        self.calls.append(
            {
                "kind": "complete",
                "messages": list(messages),
                "model": model,
                "tools": tools,
                "tool_choice": tool_choice,
                "parallel_tool_calls": parallel_tool_calls,
                "metadata": metadata,
            }
        )
        await asyncio.sleep(0)
        item = self.replies.pop(0) if self.replies else "ok"
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ChatCompletion):
            return item
        return completion(str(item))

    async def complete_structured(self, messages, schema, *, model=None, metadata=None) -> StructuredResult:
        self.calls.append({"kind": "structured", "messages": list(messages), "schema": schema, "model": model})
        await asyncio.sleep(0)
        item = self.structured.pop(0) if self.structured else None
        if isinstance(item, Exception):
            raise item
        if isinstance(item, StructuredResult):
            return item
        if item is None:
            return StructuredResult(parsed=None, raw=None, parsing_error="empty")
        return StructuredResult(parsed=schema(next=item), raw=f'{{"next": "{item}"}}', parsing_error=None)


@dataclass
class FakeLLMProvider(LLMProvider):
    name: str = "fake"
    script: List[Any] = field(default_factory=lambda: ["ok"])
    requests: List[LLMRequest] = field(default_factory=list)

    async def complete(self, req: LLMRequest) -> ChatCompletion:
        self.requests.append(req)
        await asyncio.sleep(0)
        item = self.script.pop(0) if self.script else "ok"
        if isinstance(item, Exception):
            raise item
        return ChatCompletion(
            choices=[Choice(index=0, message=Message(role="assistant", content=str(item)), finish_reason="stop")],
            model=req.model,
            provider=self.name,
            usage=LLMUsage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
            latency_ms=1,
        )

    async def complete_structured(self, req: LLMRequest, schema) -> StructuredResult:
        self.requests.append(req)
        item = self.script.pop(0) if self.script else None
        if isinstance(item, Exception):
            raise item
        if isinstance(item, StructuredResult):
            return item
        return StructuredResult(parsed=schema.model_validate(item), raw=item, parsing_error=None)


@pytest.fixture
def fake_provider():
    return FakeLLMProvider()


@pytest.fixture
def tmp_data_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setenv("CHATFLOW_DATA_DIR", str(data_dir))
    return data_dir


@pytest.fixture
def tmp_secrets_dir(tmp_path, monkeypatch):
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    monkeypatch.setenv("CHATFLOW_SECRETS_DIR", str(secrets_dir))
    return secrets_dir
