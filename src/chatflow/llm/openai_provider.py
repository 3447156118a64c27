from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from chatflow.llm.base import LLMProvider
from chatflow.llm.errors import (
    LLMError,
    LLMInvalidRequest,
    LLMProviderError,
    LLMTimeout,
    LLMUnavailable,
    error_for_status,
)
from chatflow.llm.types import ChatCompletion, Choice, LLMRequest, LLMUsage, Message, StructuredResult


def _response_format(schema: Type[BaseModel]) -> Dict[str, Any]:
    json_schema = schema.model_json_schema()
    # strict mode rejects open objects
    json_schema["additionalProperties"] = False
    return {
        "type": "json_schema",
        "json_schema": {"name": schema.__name__, "schema": json_schema, "strict": True},
    }


def _to_message(raw: Any) -> Message:
    tool_calls = None
    if getattr(raw, "tool_calls", None):
        tool_calls = tuple(
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            }
            for call in raw.tool_calls
        )
    return Message(
        role=getattr(raw, "role", None) or "assistant",
        content=getattr(raw, "content", None) or "",
        tool_calls=tool_calls,
    )


def map_openai_error(exc: Exception) -> LLMError:
    """Maps SDK exceptions onto the retry-aware LLMError taxonomy."""
    import openai

    if isinstance(exc, openai.APITimeoutError):
        return LLMTimeout(str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return LLMUnavailable(str(exc))
    if isinstance(exc, openai.APIStatusError):
        return error_for_status(exc.status_code, str(exc))
    return LLMProviderError(str(exc))


@dataclass
class OpenAIProvider(LLMProvider):
    """
    Chat Completions provider on the async OpenAI SDK.
    The api key is never logged.
    """
    name: str = "openai"
    api_key: Optional[str] = None
    timeout_s: float = 20.0

    _client: Optional[Any] = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise LLMInvalidRequest("No OpenAI key configured", code="NO_OPENAI_KEY")
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_s)
        return self._client

    def _params(self, req: LLMRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": req.model,
            "messages": [m.to_dict() for m in req.messages],
            "max_tokens": req.max_output_tokens,
        }
        if req.temperature is not None:
            params["temperature"] = req.temperature
        if req.tools:
            params["tools"] = list(req.tools)
            if req.tool_choice:
                params["tool_choice"] = req.tool_choice
            if req.parallel_tool_calls is not None:
                params["parallel_tool_calls"] = req.parallel_tool_calls
        return params

    async def _create(self, params: Dict[str, Any]) -> Any:
        client = self._get_client()
        try:
            return await client.chat.completions.create(**params)
        except LLMError:
            raise
        except Exception as e:
            raise map_openai_error(e) from e

    async def complete(self, req: LLMRequest) -> ChatCompletion:
        start = time.perf_counter()
        resp = await self._create(self._params(req))
        usage = getattr(resp, "usage", None)
        choices: List[Choice] = [
            Choice(
                index=getattr(choice, "index", i),
                message=_to_message(choice.message),
                finish_reason=getattr(choice, "finish_reason", None),
            )
            for i, choice in enumerate(resp.choices or [])
        ]
        return ChatCompletion(
            choices=choices,
            model=getattr(resp, "model", None) or req.model,
            provider=self.name,
            usage=LLMUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
                total_tokens=getattr(usage, "total_tokens", 0) if usage else 0,
            ),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )

    async def complete_structured(self, req: LLMRequest, schema: Type[BaseModel]) -> StructuredResult:
        params = self._params(req)
        params["response_format"] = _response_format(schema)
        resp = await self._create(params)
        if not resp.choices:
            return StructuredResult(parsed=None, raw=None, parsing_error="no_choices")
        content = resp.choices[0].message.content
        if not content:
            return StructuredResult(parsed=None, raw=None, parsing_error="empty_content")
        try:
            parsed = schema.model_validate_json(content)
        except ValidationError as e:
            return StructuredResult(parsed=None, raw=content, parsing_error=str(e))
        return StructuredResult(parsed=parsed, raw=content, parsing_error=None)
