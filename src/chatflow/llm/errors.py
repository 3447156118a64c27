from __future__ import annotations

from typing import Dict, Type


class LLMError(Exception):
    """Remote completion call failed (as opposed to succeeding with no content)."""
    code: str = "LLM_ERROR"
    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class LLMTimeout(LLMError):
    code = "LLM_TIMEOUT"
    retryable = True


class LLMRateLimited(LLMError):
    code = "LLM_RATE_LIMIT"
    retryable = True


class LLMUnavailable(LLMError):
    code = "LLM_UNAVAILABLE"
    retryable = True


class LLMAuthError(LLMError):
    code = "LLM_AUTH"


class LLMInvalidRequest(LLMError):
    code = "LLM_INVALID_REQUEST"


class LLMProviderError(LLMError):
    code = "LLM_PROVIDER_ERROR"
    retryable = True


_BY_STATUS: Dict[int, Type[LLMError]] = {
    400: LLMInvalidRequest,
    401: LLMAuthError,
    403: LLMAuthError,
    404: LLMInvalidRequest,
    408: LLMTimeout,
    409: LLMUnavailable,
    422: LLMInvalidRequest,
    429: LLMRateLimited,
}


def error_for_status(status_code: int, message: str) -> LLMError:
    """HTTP status of a failed provider response -> taxonomy error."""
    cls = _BY_STATUS.get(status_code)
    if cls is None:
        cls = LLMUnavailable if status_code >= 500 else LLMProviderError
    return cls(message)
