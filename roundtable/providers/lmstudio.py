"""LM Studio provider using openai SDK (OpenAI-compatible local server)."""

import asyncio
import logging
import time
from typing import Any

import openai
from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from roundtable.providers.base import AIProvider, ProviderError, is_overload

logger = logging.getLogger(__name__)

_TEMPERATURE = 0.7
_CONNECTION_HINT = "Connection to LM Studio failed. Ensure the local server is running on port {port}."


def lmstudio_base_url(port: int) -> str:
    return f"http://localhost:{port}/v1"


class LMStudioProvider(AIProvider):
    """Local LM Studio server via its OpenAI-compatible API."""

    native_schema = False

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        if not 0 < config.lmstudio_port < 65536:
            raise ProviderError(self.name(), f"Invalid server port: {config.lmstudio_port}")
        # LM Studio ignores the key but the SDK insists on one
        self._client = AsyncOpenAI(api_key="lm-studio", base_url=lmstudio_base_url(config.lmstudio_port))

    def name(self) -> str:
        return "lmstudio"

    def model_string(self) -> str:
        return self._config.lmstudio_model

    async def generate(self, system_instruction: str, prompt: str, schema: dict[str, Any]) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.lmstudio_model,
                    messages=[
                        {"role": "system", "content": system_instruction},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=_TEMPERATURE,
                    stream=False,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name(), f"Request timed out after {self._config.timeout_sec}s") from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(self.name(), _CONNECTION_HINT.format(port=self._config.lmstudio_port)) from exc
        except openai.APIStatusError as exc:
            raise ProviderError(
                self.name(),
                f"LM Studio request failed: {exc.status_code} {exc.message}",
                overloaded=is_overload(exc.status_code, str(exc)),
            ) from exc
        except Exception as exc:
            raise ProviderError(self.name(), f"API call failed: {exc}") from exc

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self.name(), "Empty response content")

        logger.info("LM Studio: %.2fs", time.monotonic() - start)
        return choice.message.content

    async def check_connection(self) -> None:
        try:
            await asyncio.wait_for(self._client.models.list(), timeout=self._config.timeout_sec)
        except openai.APIConnectionError as exc:
            raise ProviderError(self.name(), _CONNECTION_HINT.format(port=self._config.lmstudio_port)) from exc
        except Exception as exc:
            raise ProviderError(self.name(), f"LM Studio request failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.close()
