"""LLM providers."""

from .provider import (
    FunctionCall,
    LLMAuthError,
    LLMBadRequestError,
    LLMEmptyResponseError,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    LLMResponse,
    MediaPart,
)

__all__ = [
    "FunctionCall",
    "LLMAuthError",
    "LLMBadRequestError",
    "LLMEmptyResponseError",
    "LLMError",
    "LLMProvider",
    "LLMRateLimitError",
    "LLMResponse",
    "MediaPart",
]
