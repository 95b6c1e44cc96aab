"""
Anthropic backend for the 'LLM' interface.

Anthropic's Messages API takes the system prompt as a separate argument rather
than as a message, so SYSTEM-role entries in the conversation are folded into
'system' and only user/assistant turns are sent as 'messages'.
"""

from collections.abc import AsyncGenerator
from textwrap import dedent

import anthropic
from loguru import logger

from subway_toolkit.llms.base import LLM, LLMMessage, Roles

DEFAULT_SYSTEM_PROMPT = dedent("""
    You are a helpful AI assistant integrated into a platform that visualizes conversations as a subway map with branches.

    Each conversation can have multiple branches, allowing users to explore different directions for the same discussion. Your responses should be:

    - Clear, concise, and helpful
    - Written in a conversational but professional tone
    - Focused on providing accurate information
    - Mindful that users might create branches to explore alternative approaches or perspectives

    You should provide responses that are standalone and don't explicitly reference the subway/branch metaphor.
""").strip()


class AnthropicLLM(LLM):
    """
    'LLM' backed by 'anthropic.AsyncAnthropic'.

    Attributes:
        model_name: Anthropic model identifier.
        max_tokens: Upper bound on generated tokens per reply.
        system_prompt: Default system prompt, used when the conversation has no
            SYSTEM message of its own.
    """

    def __init__(
        self,
        model_name: str,
        api_key: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.model_name = model_name
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.client = anthropic.AsyncAnthropic(api_key=api_key)

    def _request(self, conversation: list[LLMMessage]) -> dict:
        system = "\n\n".join(m.content for m in conversation if m.role == Roles.SYSTEM) or self.system_prompt
        messages = [
            {"role": str(m.role), "content": m.content}
            for m in conversation
            if m.role in (Roles.USER, Roles.ASSISTANT)
        ]
        return {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": messages,
        }

    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        response = await self.client.messages.create(**self._request(conversation))
        text = "".join(block.text for block in response.content if block.type == "text")
        return LLMMessage(role=Roles.ASSISTANT, content=text)

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        request = self._request(conversation)
        logger.debug(f"Anthropic stream request: model={self.model_name} turns={len(request['messages'])}")
        async with self.client.messages.stream(**request) as stream:
            async for text in stream.text_stream:
                if text:
                    yield LLMMessage(role=Roles.ASSISTANT, content=text)
