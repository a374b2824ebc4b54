from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    response_id: Optional[str] = None
    usage: Optional[dict] = None

    @property
    def prompt_tokens(self) -> int:
        return int((self.usage or {}).get("prompt_tokens") or 0)

    @property
    def completion_tokens(self) -> int:
        return int((self.usage or {}).get("completion_tokens") or 0)


class LLMProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def chat(
        self,
        system_prompt: str,
        history: List[dict],
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Chat completion over a system prompt and {role, content} history."""
        pass

    def chat_with_rag(
        self,
        system_prompt: str,
        history: List[dict],
        vector_store_ids: List[str],
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        service_tier: Optional[str] = None,
    ) -> LLMResponse:
        """Retrieval-augmented chat. Providers without retrieval answer with plain chat."""
        return self.chat(system_prompt, history, max_tokens=max_tokens, model=model)
