from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Sequence, Type
from uuid import uuid4

from pydantic import BaseModel

from chatflow.llm.base import LLMProvider
from chatflow.llm.errors import LLMError
from chatflow.llm.retry import RetryPolicy, with_retries
from chatflow.llm.types import ChatCompletion, LLMRequest, Message, StructuredResult, normalize_messages
from chatflow.utils.hashing import hash_text_short, messages_fingerprint


class CompletionModel(Protocol):
    """Completion capability consumed by graph nodes and condition evaluators."""

    async def complete(
        self,
        messages: Sequence[Message | Dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = 0.1,
        tools: Sequence[Dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        parallel_tool_calls: bool | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ChatCompletion:
        ...

    async def complete_structured(
        self,
        messages: Sequence[Message | Dict[str, Any]],
        schema: Type[BaseModel],
        *,
        model: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> StructuredResult:
        ...


class CompletionClient:
    """
    Single entry-point for completion calls made by the graph.

    - `complete(messages, ...) -> ChatCompletion`
    - `complete_structured(messages, schema, ...) -> StructuredResult`

    Wraps one provider with a retry policy and logs every call as a json event
    (`llm_call_start` / `llm_call_success` / `llm_call_error`). Message contents
    are only logged as fingerprints unless debug logging is enabled.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider,
        default_model: str = "gpt-4o-mini",
        retry_policy: Optional[RetryPolicy] = None,
        max_output_tokens: int = 1024,
        debug_logging: bool = False,
    ):
        self._provider = provider
        self._default_model = default_model
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=2)
        self._max_output_tokens = max_output_tokens
        self._debug_logging = debug_logging

    def _payload(self, *, call_id: str, model: str, structured: bool, messages, metadata) -> Dict[str, Any]:
        return {
            "call_id": call_id,
            "thread_id": metadata.get("thread_id"),
            "node": metadata.get("node"),
            "provider": self._provider.name,
            "model": model,
            "structured": structured,
            "messages": messages_fingerprint(messages),
        }

    def _debug_enabled(self) -> bool:
        return self._debug_logging

    async def _call(self, *, payload: Dict[str, Any], fn) -> Any:
        logger = logging.getLogger(__name__)
        logger.info(json.dumps({"event": "llm_call_start", **payload}, ensure_ascii=False))
        start = time.perf_counter()
        try:
            result = await with_retries(fn, policy=self._retry_policy, label=payload["call_id"])
        except LLMError as e:
            logger.error(
                json.dumps(
                    {
                        "event": "llm_call_error",
                        **payload,
                        "latency_ms": int((time.perf_counter() - start) * 1000),
                        "error_code": e.code,
                        "retryable": e.retryable,
                    },
                    ensure_ascii=False,
                )
            )
            raise
        logger.info(
            json.dumps(
                {
                    "event": "llm_call_success",
                    **payload,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                },
                ensure_ascii=False,
            )
        )
        return result

    async def complete(
        self,
        messages,
        *,
        model: str | None = None,
        temperature: float | None = 0.1,
        tools=None,
        tool_choice: str | None = None,
        parallel_tool_calls: bool | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ChatCompletion:
        normalized = normalize_messages(messages)
        metadata = dict(metadata or {})
        req = LLMRequest(
            messages=normalized,
            model=model or self._default_model,
            temperature=temperature,
            max_output_tokens=self._max_output_tokens,
            tools=tools,
            tool_choice=tool_choice,
            parallel_tool_calls=parallel_tool_calls,
            metadata=metadata,
        )
        payload = self._payload(
            call_id=uuid4().hex[:12],
            model=req.model,
            structured=False,
            messages=normalized,
            metadata=metadata,
        )
        resp: ChatCompletion = await self._call(payload=payload, fn=lambda: self._provider.complete(req))
        if self._debug_enabled():
            first = resp.first_message
            logging.getLogger(__name__).info(
                json.dumps(
                    {
                        "event": "llm_debug",
                        "call_id": payload["call_id"],
                        "messages": [m.to_dict() for m in normalized],
                        "response": first.to_dict() if first else None,
                    },
                    ensure_ascii=False,
                    default=str,
                )
            )
        return resp

    async def complete_structured(
        self,
        messages,
        schema: Type[BaseModel],
        *,
        model: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> StructuredResult:
        normalized = normalize_messages(messages)
        metadata = dict(metadata or {})
        req = LLMRequest(
            messages=normalized,
            model=model or self._default_model,
            temperature=0.0,
            max_output_tokens=self._max_output_tokens,
            metadata=metadata,
        )
        payload = self._payload(
            call_id=uuid4().hex[:12],
            model=req.model,
            structured=True,
            messages=normalized,
            metadata=metadata,
        )
        payload["schema"] = schema.__name__
        result: StructuredResult = await self._call(
            payload=payload,
            fn=lambda: self._provider.complete_structured(req, schema),
        )
        if result.parsing_error:
            logging.getLogger(__name__).warning(
                json.dumps(
                    {
                        "event": "llm_parse_error",
                        "call_id": payload["call_id"],
                        "schema": schema.__name__,
                        "raw_fingerprint": hash_text_short(str(result.raw or "")),
                        "parsing_error": result.parsing_error[:200],
                    },
                    ensure_ascii=False,
                )
            )
        return result
