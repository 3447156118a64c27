from __future__ import annotations
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Type

from pydantic import BaseModel

if TYPE_CHECKING:
    from .types import ChatCompletion, LLMRequest, StructuredResult


class LLMProvider(ABC):
    name: str

    @abstractmethod
    async def complete(self, req: LLMRequest) -> ChatCompletion:
        raise NotImplementedError

    @abstractmethod
    async def complete_structured(self, req: LLMRequest, schema: Type[BaseModel]) -> StructuredResult:
        raise NotImplementedError
