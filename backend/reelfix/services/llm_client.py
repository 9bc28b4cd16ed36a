"""
LLM Client Service
Handles communication with an OpenAI-compatible chat completions API
"""
import json
import httpx
import asyncio
from typing import Dict, Any, Optional, List
from reelfix.config import get_settings, Settings
import logging

logger = logging.getLogger(__name__)


class LLMNotConfiguredError(Exception):
    pass


class LLMClient:
    """
    Client for an OpenAI-compatible chat completions endpoint.
    Handles API calls, retries, and JSON response parsing
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            settings: Application settings (base URL, model, timeout, retries)
            api_key: Overrides LLM_API_KEY
            transport: Optional httpx transport (mock transports in tests)
        """
        settings = settings or get_settings()
        self.api_key = api_key or settings.LLM_API_KEY
        if not self.api_key:
            raise LLMNotConfiguredError("LLM_API_KEY is not set")

        self.base_url = settings.LLM_BASE_URL.rstrip("/")
        self.model = settings.LLM_MODEL
        self.max_retries = settings.LLM_MAX_RETRIES

        self.client = httpx.AsyncClient(
            timeout=settings.LLM_TIMEOUT_SECONDS,
            transport=transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json"
            }
        )

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.1,
        max_tokens: int = 500,
        response_format: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Generate response from LLM.

        Returns:
            {
                "content": str,
                "usage": {"prompt_tokens": int, "completion_tokens": int},
                "model": str
            }
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens
        }

        if response_format:
            payload["response_format"] = response_format

        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload
                )
                response.raise_for_status()

                data = response.json()
                content = data["choices"][0]["message"]["content"]
                usage = data.get("usage", {})

                logger.info(
                    f"LLM request successful: "
                    f"{usage.get('prompt_tokens', 0)} prompt tokens, "
                    f"{usage.get('completion_tokens', 0)} completion tokens"
                )

                return {
                    "content": content,
                    "usage": usage,
                    "model": data.get("model", self.model)
                }

            except httpx.HTTPStatusError as e:
                retryable = e.response.status_code == 429 or e.response.status_code >= 500
                if retryable and attempt < self.max_retries - 1:
                    wait_time = 2 ** attempt  # Exponential backoff
                    logger.warning(f"LLM returned {e.response.status_code}, retrying in {wait_time}s...")
                    await asyncio.sleep(wait_time)
                    continue
                raise
            except httpx.TransportError as e:
                logger.error(f"LLM request failed: {e}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise

        raise RuntimeError(f"LLM request failed after {self.max_retries} attempts")

    async def generate_json(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.1,
        max_tokens: int = 500
    ) -> Dict[str, Any]:
        """Generate a JSON object response and parse it"""
        response = await self.generate(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"}
        )

        content = response["content"] or ""
        # Remove markdown code blocks if present
        if content.startswith("```json"):
            content = content[7:]
        if content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]

        try:
            return json.loads(content.strip())
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse LLM JSON response: {e}; content: {content[:500]}")
            raise ValueError(f"Invalid JSON response from LLM: {e}")

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()
