from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIProvider(LLMProvider):
    def __init__(self, api_key: Optional[str], default_model: str = "gpt-5-mini", base_url: str = CHAT_COMPLETIONS_URL):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        if not self.api_key:
            raise LLMError("OpenAI API key is not configured")

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout_seconds or 60.0) as client:
                response = client.post(
                    self.base_url,
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI transport error: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} {response.text[:200]}")
            raise LLMError(f"OpenAI API error: {response.status_code}")

        data = response.json()
        content = ""
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        if not content.strip():
            raise LLMError(f"OpenAI returned empty content for model {model}")

        return LLMResponse(content=content.strip(), model=data.get("model", model), usage=data.get("usage"))
