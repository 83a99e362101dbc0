"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import time
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.config_loader import ProviderConfig
from roundtable.providers.base import AIProvider, ProviderError, is_overload

logger = logging.getLogger(__name__)

_TEMPERATURE = 0.8


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        api_key = config.api_key.strip()
        if not api_key:
            raise ProviderError(self.name(), f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return "gemini"

    def model_string(self) -> str:
        return self._config.gemini_model

    async def generate(self, system_instruction: str, prompt: str, schema: dict[str, Any]) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.gemini_model,
                    contents=prompt,
                    config=genai_types.GenerateContentConfig(
                        system_instruction=system_instruction,
                        response_mime_type="application/json",
                        response_schema=schema,
                        temperature=_TEMPERATURE,
                    ),
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name(), f"Request timed out after {self._config.timeout_sec}s") from exc
        except genai_errors.APIError as exc:
            raise ProviderError(
                self.name(),
                f"API call failed: {exc}",
                overloaded=is_overload(exc.code, str(exc)),
            ) from exc
        except Exception as exc:
            raise ProviderError(self.name(), f"API call failed: {exc}") from exc

        if not response.text:
            raise ProviderError(self.name(), "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini: %.2fs, %s tokens", time.monotonic() - start, token_count)
        return response.text

    async def check_connection(self) -> None:
        try:
            await asyncio.wait_for(
                self._client.aio.models.get(model=self._config.gemini_model),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise ProviderError(self.name(), f"Connection check failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aio.aclose()
