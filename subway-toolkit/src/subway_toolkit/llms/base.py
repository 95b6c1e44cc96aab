"""
Core LLM abstractions and message data models.

Concrete backends ('AnthropicLLM') implement the 'LLM' ABC. The message format
('LLMMessage') is backend-agnostic so the controller never needs to know which
provider produces the assistant reply. Streaming backends yield one
'LLMMessage' per text delta; the controller accumulates them.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from enum import StrEnum

from pydantic import BaseModel


class Roles(StrEnum):
    """Conversation roles as understood by chat completion APIs."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """A single message sent to or received from an LLM."""

    content: str = ""
    role: Roles = Roles.ASSISTANT


class LLM(ABC):
    """
    Abstract base class for language model backends.

    'generate_stream' is the streaming boundary: it yields text deltas (not the
    accumulated text) and either finishes normally or raises. Any exception
    raised while iterating is treated by the controller as a streaming fault.
    """

    @abstractmethod
    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        pass

    @abstractmethod
    def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        """Yield response deltas as they arrive from the model."""
        pass
