"""Shared pytest fixtures."""

import asyncio
import random
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    PromptsConfig,
    ProviderConfig,
    SessionSettings,
)
from roundtable.gateway import GatewayError
from roundtable.models import Contribution, Decision, Participant, ParticipantRole
from roundtable.providers.base import AIProvider
from roundtable.registry import ParticipantRegistry


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        language=" You must respond exclusively in {language}.",
        opening='Topic: "{topic}". Pick the first speaker from: {members}.',
        contribution='Topic: "{topic}".\n{history}\n\nYour turn.',
        decision='Topic: "{topic}".\n{history}\n\n{last_speaker} just spoke. Choose from: {candidates}.',
        json_format="Reply with JSON only:\n{example}",
    )


@pytest.fixture
def sample_participants() -> list[Participant]:
    return [
        Participant("moderator", "Moderator", ParticipantRole.MODERATOR, "You moderate.", "M"),
        Participant("m1", "Fermat", ParticipantRole.MEMBER, "You are Fermat.", "PF"),
        Participant("m2", "Euler", ParticipantRole.MEMBER, "You are Euler.", "LE"),
    ]


@pytest.fixture
def registry(sample_participants: list[Participant]) -> ParticipantRegistry:
    return ParticipantRegistry(sample_participants)


@pytest.fixture
def gemini_config() -> ProviderConfig:
    return ProviderConfig(kind="gemini", api_key="test-key", timeout_sec=5)


@pytest.fixture
def lmstudio_config() -> ProviderConfig:
    return ProviderConfig(kind="lmstudio", lmstudio_port=1234, timeout_sec=5)


@pytest.fixture
def session_settings(gemini_config: ProviderConfig) -> SessionSettings:
    return SessionSettings(
        topic="T",
        time_limit_sec=600,
        thinking_sec=0,
        language="en",
        provider=gemini_config,
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    sample_prompts_config: PromptsConfig,
    sample_participants: list[Participant],
) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(
            topic="T",
            time_limit_min=10,
            thinking_sec=0,
            language="en",
            max_turns=20,
            output_dir=tmp_path / "output",
        ),
        provider=ProviderConfig(kind="gemini"),
        prompts=sample_prompts_config,
        languages={"en": "English", "es": "Spanish"},
        participants=sample_participants,
    )


class MockProvider(AIProvider):
    """Test double AIProvider returning canned JSON."""

    def __init__(self, provider_name: str = "mock", response_text: str = '{"contribution": "Hi"}') -> None:
        self._name = provider_name
        self.generate = AsyncMock(return_value=response_text)  # type: ignore[assignment]
        self.check_connection = AsyncMock(return_value=None)  # type: ignore[assignment]
        self.aclose = AsyncMock(return_value=None)  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, system_instruction: str, prompt: str, schema: dict[str, Any]) -> str:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return '{"contribution": "Hi"}'

    async def check_connection(self) -> None:  # type: ignore[override]
        return None


class FakeGateway:
    """Scripted stand-in for GenerationGateway.

    ``decisions`` are consumed in order; each entry is a Decision or a
    GatewayError. Contributions default to "Point N" for the Nth call.
    """

    def __init__(
        self,
        opening: Decision | GatewayError | None = None,
        decisions: list[Decision | GatewayError] | None = None,
    ) -> None:
        self.opening = opening or Decision("Welcome", "m1")
        self.decisions = list(decisions or [])
        self.contribution_gate: asyncio.Event | None = None
        self.contribution_error: GatewayError | None = None
        self.contribution_calls: list[str] = []
        self.decision_calls = 0
        self.closed = False

    async def open_debate(self, topic, roster, language, provider_config):
        return self.opening

    async def get_contribution(self, speaker, transcript, roster, topic, language, provider_config):
        self.contribution_calls.append(speaker.id)
        if self.contribution_gate is not None:
            await self.contribution_gate.wait()
        if self.contribution_error is not None:
            return self.contribution_error
        return Contribution(f"Point {len(self.contribution_calls)} from {speaker.id}")

    async def aclose(self):
        self.closed = True

    async def get_decision(self, moderator, transcript, roster, topic, language, provider_config):
        self.decision_calls += 1
        if self.decisions:
            return self.decisions.pop(0)
        # Alternate between the two members
        last = transcript[-1].author_id if transcript else "m2"
        return Decision("Next please", "m2" if last == "m1" else "m1")


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def seeded_rng() -> random.Random:
    return random.Random(1234)
