import time
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse

logger = get_logger("llm.openai")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions and the responses API for file search)."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        default_max_tokens: int = 2000,
        retries: int = 2,
        retry_delay_seconds: float = 1.0,
        timeout: Optional[httpx.Timeout] = None,
        sleep_func=time.sleep,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.default_max_tokens = default_max_tokens
        self.retries = retries
        self.retry_delay_seconds = retry_delay_seconds
        self.timeout = timeout or httpx.Timeout(60.0, connect=15.0)
        self.sleep_func = sleep_func

    def _post(self, path: str, payload: dict, retries: int) -> dict:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        attempt = 0
        while True:
            attempt += 1
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                if attempt <= retries:
                    logger.warning(f"OpenAI transport error (attempt {attempt}): {exc}")
                    self.sleep_func(self.retry_delay_seconds)
                    continue
                raise LLMProviderError(f"OpenAI request failed: {exc}") from exc

            logger.debug(f"OpenAI {path} status: {response.status_code}")
            if response.status_code in RETRYABLE_STATUS_CODES and attempt <= retries:
                logger.warning(f"OpenAI {path} returned {response.status_code} (attempt {attempt}), retrying")
                self.sleep_func(self.retry_delay_seconds)
                continue
            if response.status_code != 200:
                logger.error(f"OpenAI error: {response.text}")
                raise LLMProviderError(
                    f"OpenAI API error: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )
            return response.json()

    def chat(
        self,
        system_prompt: str,
        history: List[dict],
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}, *history],
            "max_completion_tokens": max_tokens or self.default_max_tokens,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        logger.debug(f"OpenAI chat request: model={model}, messages_count={len(history) + 1}")

        data = self._post("/chat/completions", payload, retries=self.retries)

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
        usage = data.get("usage") or {}
        return LLMResponse(
            content=content,
            model=data.get("model", model),
            response_id=data.get("id"),
            usage={
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
            },
        )

    def chat_with_rag(
        self,
        system_prompt: str,
        history: List[dict],
        vector_store_ids: List[str],
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        service_tier: Optional[str] = None,
    ) -> LLMResponse:
        """Responses API with file_search over the given vector stores.

        Falls back to plain chat on any error or when the model returns no text.
        """
        model = model or self.default_model
        payload = {
            "model": model,
            "instructions": system_prompt,
            "input": history,
            "max_output_tokens": max_tokens or self.default_max_tokens,
            "tools": [{"type": "file_search", "vector_store_ids": vector_store_ids}],
        }
        if service_tier:
            payload["service_tier"] = service_tier

        try:
            data = self._post("/responses", payload, retries=0)
        except LLMProviderError as exc:
            logger.warning(f"OpenAI RAG request failed, falling back to chat: {exc}")
            return self.chat(system_prompt, history, max_tokens=max_tokens, model=model)

        content = extract_output_text(data)
        if not content:
            logger.warning("OpenAI RAG returned no text, falling back to chat")
            return self.chat(system_prompt, history, max_tokens=max_tokens, model=model)

        usage = data.get("usage") or {}
        return LLMResponse(
            content=content,
            model=data.get("model", model),
            response_id=data.get("id"),
            usage={
                "prompt_tokens": usage.get("input_tokens", 0),
                "completion_tokens": usage.get("output_tokens", 0),
            },
        )


def extract_output_text(data: dict) -> str:
    parts = []
    for item in data.get("output") or []:
        if item.get("type") != "message":
            continue
        for chunk in item.get("content") or []:
            if chunk.get("type") == "output_text" and chunk.get("text"):
                parts.append(chunk["text"])
    return "".join(parts).strip()
