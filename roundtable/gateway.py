"""Generation gateway: prompts providers, parses their JSON, retries overloads.

Every public call returns either its result dataclass or a ``GatewayError``
value. Provider failures never propagate as exceptions to the caller.
"""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from config.config_loader import (
    PROVIDER_GEMINI,
    PROVIDER_LMSTUDIO,
    PromptsConfig,
    ProviderConfig,
)
from roundtable.models import Contribution, Decision, Message, Participant, ParticipantRole
from roundtable.providers.base import AIProvider, ProviderError
from roundtable.providers.gemini import GeminiProvider
from roundtable.providers.lmstudio import LMStudioProvider
from roundtable.transcript import render_history

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    PROVIDER_GEMINI: GeminiProvider,
    PROVIDER_LMSTUDIO: LMStudioProvider,
}

MAX_ATTEMPTS = 5
RETRY_DELAY_SEC = 1.5
OVERLOAD_PLACEHOLDER = (
    "[The AI model is temporarily overloaded. Skipping this turn. Please try again later.]"
)

MODERATOR_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "contribution": {
            "type": "STRING",
            "description": "Your summary of the previous point and your transition to the next speaker.",
        },
        "nextSpeakerId": {
            "type": "STRING",
            "description": "The ID of the next participant to speak.",
        },
    },
    "required": ["contribution", "nextSpeakerId"],
}

MEMBER_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "contribution": {
            "type": "STRING",
            "description": "Your contribution to the debate, in character.",
        },
    },
    "required": ["contribution"],
}

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class ResponseFormatError(ValueError):
    """The provider reply is not the JSON object we asked for."""


@dataclass(frozen=True)
class GatewayError:
    kind: str       # "provider", "format", "overloaded" or "config"
    message: str

    def __str__(self) -> str:
        return self.message


def parse_json_payload(text: str) -> dict[str, Any]:
    """Parse a JSON object, tolerating markdown fences and chatter around it."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        cleaned = text.strip()
        match = _JSON_OBJECT.search(cleaned)
        if match:
            cleaned = match.group(0)
        else:
            cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
            cleaned = re.sub(r"\s*```$", "", cleaned)
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise ResponseFormatError(
                f"Failed to parse AI response as JSON after cleanup. Original response fragment: {text[:100]}"
            ) from exc
    if not isinstance(payload, dict):
        raise ResponseFormatError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ResponseFormatError(f"Response is missing string field '{key}'")
    return value


def _json_example(schema: dict[str, Any]) -> str:
    example = {
        key: spec.get("description") or f"A value for {key}"
        for key, spec in schema.get("properties", {}).items()
    }
    return json.dumps(example, indent=2)


def _member_list(members: Sequence[Participant]) -> str:
    return ", ".join(f"{m.name} (id: {m.id})" for m in members)


class GenerationGateway:
    """Builds prompts for the moderator and members and calls the provider."""

    def __init__(
        self,
        prompts: PromptsConfig,
        languages: dict[str, str],
        provider_factory: Callable[[ProviderConfig], AIProvider] | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._prompts = prompts
        self._languages = languages
        self._provider_factory = provider_factory or build_provider
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._providers: dict[ProviderConfig, AIProvider] = {}

    def _provider(self, config: ProviderConfig) -> AIProvider:
        if config not in self._providers:
            self._providers[config] = self._provider_factory(config)
        return self._providers[config]

    async def aclose(self) -> None:
        """Close every cached provider client; the next call builds fresh ones."""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.aclose()

    def _system_instruction(self, speaker: Participant, language: str) -> str:
        language_name = self._languages.get(language, "English")
        return speaker.persona + self._prompts.language.format(language=language_name)

    async def _call(
        self,
        provider_config: ProviderConfig,
        system_instruction: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> dict[str, Any]:
        """Call the provider, retrying overloads. Raises ProviderError or ResponseFormatError."""
        provider = self._provider(provider_config)
        if not provider.native_schema:
            prompt = f"{prompt}\n\n{self._prompts.json_format.format(example=_json_example(schema))}"

        attempt = 0
        while True:
            attempt += 1
            try:
                text = await provider.generate(system_instruction, prompt, schema)
            except ProviderError as exc:
                if not exc.overloaded or attempt >= self._max_attempts:
                    raise
                logger.warning(
                    "Provider %s overloaded, retrying (%d/%d): %s",
                    provider.name(), attempt, self._max_attempts, exc,
                )
                await self._sleep(self._retry_delay)
                continue
            return parse_json_payload(text)

    async def _guarded(self, action: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except ProviderError as exc:
            kind = "overloaded" if exc.overloaded else "provider"
            logger.error("Could not %s: %s", action, exc)
            return GatewayError(kind, f"Could not {action}: {exc}")
        except ResponseFormatError as exc:
            logger.error("Could not %s due to invalid AI response: %s", action, exc)
            return GatewayError("format", f"Could not {action} due to invalid AI response: {exc}")

    async def open_debate(
        self,
        topic: str,
        roster: Sequence[Participant],
        language: str,
        provider_config: ProviderConfig,
    ) -> Decision | GatewayError:
        moderator = next((p for p in roster if p.role == ParticipantRole.MODERATOR), None)
        if moderator is None:
            return GatewayError("config", "Moderator not found")
        members = [p for p in roster if p.role == ParticipantRole.MEMBER]
        prompt = self._prompts.opening.format(topic=topic, members=_member_list(members))

        async def run() -> Decision:
            payload = await self._call(
                provider_config, self._system_instruction(moderator, language), prompt, MODERATOR_SCHEMA,
            )
            return Decision(_require_str(payload, "contribution"), _require_str(payload, "nextSpeakerId"))

        return await self._guarded("start debate", run())

    async def get_contribution(
        self,
        speaker: Participant,
        transcript: Sequence[Message],
        roster: Sequence[Participant],
        topic: str,
        language: str,
        provider_config: ProviderConfig,
    ) -> Contribution | GatewayError:
        prompt = self._prompts.contribution.format(topic=topic, history=render_history(transcript, roster))

        async def run() -> Contribution:
            try:
                payload = await self._call(
                    provider_config, self._system_instruction(speaker, language), prompt, MEMBER_SCHEMA,
                )
            except ProviderError as exc:
                if not exc.overloaded:
                    raise
                logger.warning("Provider still overloaded after %d attempts, skipping turn of %s",
                               self._max_attempts, speaker.name)
                return Contribution(OVERLOAD_PLACEHOLDER)
            return Contribution(_require_str(payload, "contribution"))

        return await self._guarded("get member contribution", run())

    async def get_decision(
        self,
        moderator: Participant,
        transcript: Sequence[Message],
        roster: Sequence[Participant],
        topic: str,
        language: str,
        provider_config: ProviderConfig,
    ) -> Decision | GatewayError:
        last_id = transcript[-1].author_id if transcript else None
        names = {p.id: p.name for p in roster}
        candidates = [p for p in roster if p.role == ParticipantRole.MEMBER and p.id != last_id]
        prompt = self._prompts.decision.format(
            topic=topic,
            history=render_history(transcript, roster),
            last_speaker=names.get(last_id, "The last speaker"),
            candidates=_member_list(candidates),
        )

        async def run() -> Decision:
            payload = await self._call(
                provider_config, self._system_instruction(moderator, language), prompt, MODERATOR_SCHEMA,
            )
            return Decision(_require_str(payload, "contribution"), _require_str(payload, "nextSpeakerId"))

        return await self._guarded("get moderator decision", run())


def build_provider(config: ProviderConfig) -> AIProvider:
    """Instantiate the provider named by ``config.kind``."""
    try:
        provider_cls = PROVIDER_CLASSES[config.kind]
    except KeyError:
        raise ProviderError(config.kind, f"Unknown provider '{config.kind}'") from None
    return provider_cls(config)
