"""
LLM Service using an OpenAI-compatible chat completions API
Used by the prompt analyzer to turn descriptions into schema JSON
"""
import httpx
from typing import Optional
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings, settings as default_settings
from .exceptions import ProviderError, ProviderTimeout
from .metrics import usage_tracker


class LLMClient:
    """
    Client for chat completion providers (Mistral, OpenAI and compatible)
    """

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.model = self.settings.LLM_MODEL
        self.base_url = self.settings.LLM_BASE_URL.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {self.settings.LLM_API_KEY}",
            "Content-Type": "application/json"
        }
        self.client = httpx.AsyncClient(timeout=self.settings.LLM_TIMEOUT)

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """
        Generate a completion for one system + user message pair

        Args:
            system_prompt: System instruction
            user_prompt: User message

        Returns:
            Content of the first choice
        """
        if not user_prompt:
            raise ValueError("Prompt cannot be empty")

        usage_tracker.log_api_call("llm")

        try:
            return await self._post_completion(system_prompt, user_prompt)

        except httpx.TimeoutException as e:
            logger.error(f"LLM request timed out after {self.settings.LLM_TIMEOUT}s")
            raise ProviderTimeout(
                f"AI provider did not respond within {self.settings.LLM_TIMEOUT} seconds"
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"LLM API error: {e.response.status_code} - {e.response.text}")
            raise ProviderError(
                f"AI provider returned {e.response.status_code}",
                {"upstreamStatus": e.response.status_code, "upstreamMessage": e.response.text[:500]},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"LLM request failed: {e}")
            raise ProviderError(f"AI provider request failed: {e}") from e

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.RemoteProtocolError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _post_completion(self, system_prompt: str, user_prompt: str) -> str:
        request_data = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": self.settings.LLM_MAX_TOKENS,
            "temperature": self.settings.LLM_TEMPERATURE,
        }

        response = await self.client.post(
            f"{self.base_url}/chat/completions",
            headers=self.headers,
            json=request_data
        )
        response.raise_for_status()

        result = response.json()
        choices = result.get("choices") or []
        if not choices:
            raise ProviderError("AI provider returned no choices")
        return choices[0]["message"]["content"] or ""

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()
