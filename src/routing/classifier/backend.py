"""LLM backends for the issue classifier.

The classifier only needs a single text-completion operation. LangChainBackend
implements it against an OpenAI-compatible endpoint with LangChain's
ChatOpenAI client; tests substitute any object with a matching ``complete``.

Source:
- src/routing/config.py (llm_url, llm_api_key, LLMConfig)
"""

import logging
from typing import Dict, Optional, Protocol, Tuple

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI


logger = logging.getLogger(__name__)


class LLMBackend(Protocol):
    """Text-completion collaborator used by the classifier."""

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        """Return the model's reply to ``prompt``."""
        ...


class LangChainBackend:
    """LLMBackend backed by an OpenAI-compatible chat endpoint.

    One ChatOpenAI client is created lazily per (max_tokens, temperature)
    pair and reused afterwards.

    Attributes:
        llm_url: Base URL of the OpenAI-compatible endpoint.
        model_name: Model to request.
        system_prompt: Optional system message sent before every prompt.
        timeout: Request timeout in seconds applied by the HTTP client.
    """

    def __init__(
        self,
        llm_url: str,
        model_name: str,
        api_key: str = "not-needed",
        system_prompt: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.timeout = timeout
        self._api_key = api_key
        self._clients: Dict[Tuple[int, float], ChatOpenAI] = {}

    def client(self, max_tokens: int, temperature: float) -> ChatOpenAI:
        """Get the ChatOpenAI client for a parameter pair, creating it if necessary."""
        key = (max_tokens, temperature)
        if key not in self._clients:
            self._clients[key] = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self.timeout,
                api_key=self._api_key,
            )
        return self._clients[key]

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        """Send a prompt and return the text of the reply.

        Raises:
            ValueError: If the reply content is not plain text.
        """
        messages: list[BaseMessage] = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=prompt))

        response = self.client(max_tokens, temperature).invoke(messages)
        content = response.content
        if not isinstance(content, str):
            raise ValueError(f"Unexpected response type: {type(content)}")

        logger.debug(
            "LLM completion received",
            extra={"model": self.model_name, "response_length": len(content)},
        )
        return content
