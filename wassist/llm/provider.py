"""Provider-agnostic LLM interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


# ════════════════════════════════════════════════════════
# LLM Exception Hierarchy — classify errors by type,
# not by string matching.  errors.classify_error() maps these.
# ════════════════════════════════════════════════════════

class LLMError(Exception):
    """Base class for all LLM provider errors."""
    pass

class LLMRateLimitError(LLMError):
    """429 — rate limited."""
    pass

class LLMAuthError(LLMError):
    """401/403 — authentication or authorization failure."""
    pass

class LLMBadRequestError(LLMError):
    """400 — bad request (malformed prompt, tool schema, etc.)."""
    pass

class LLMEmptyResponseError(LLMError):
    """LLM returned no usable content."""
    pass


@dataclass
class FunctionCall:
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Either plain text or one structured action requested by the model."""
    text: str = ""
    function_call: Optional[FunctionCall] = None

    @property
    def is_function_call(self) -> bool:
        return self.function_call is not None


@dataclass
class MediaPart:
    data: bytes
    mime_type: str


class LLMProvider(ABC):
    """What the message handler needs from a model: text in, text or action out."""

    @abstractmethod
    async def generate_response(
        self,
        conversation_key: str,
        text: str,
        system_prompt: Optional[str] = None,
        media: Optional[MediaPart] = None,
        allow_tools: bool = True,
    ) -> LLMResponse:
        """Generate a reply within the conversation identified by conversation_key."""
        ...

    @abstractmethod
    async def generate_text(self, prompt: str) -> str:
        """One-off generation without history (scheduled content, relays)."""
        ...

    @abstractmethod
    def clear_history(self, conversation_key: str) -> None:
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None
