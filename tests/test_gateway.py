"""Tests for roundtable/gateway.py."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config.config_loader import ProviderConfig
from roundtable.gateway import (
    MAX_ATTEMPTS,
    OVERLOAD_PLACEHOLDER,
    GatewayError,
    GenerationGateway,
    ResponseFormatError,
    parse_json_payload,
)
from roundtable.models import Contribution, Decision, Message
from roundtable.providers.base import ProviderError
from tests.conftest import MockProvider


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider("mock", '{"contribution": "Hello", "nextSpeakerId": "m1"}')


@pytest.fixture
def gateway(provider, sample_prompts_config):
    return GenerationGateway(
        sample_prompts_config,
        {"en": "English", "es": "Spanish"},
        provider_factory=lambda cfg: provider,
        sleep=AsyncMock(),
    )


@pytest.fixture
def history() -> list[Message]:
    return [
        Message("1", "moderator", "Welcome"),
        Message("2", "m1", "Primes are lovely."),
    ]


def _overloaded() -> ProviderError:
    return ProviderError("mock", "503 The model is overloaded", overloaded=True)


# --- parse_json_payload ------------------------------------------------------

def test_parse_plain_json():
    assert parse_json_payload('{"contribution": "x"}') == {"contribution": "x"}


def test_parse_fenced_json():
    text = '```json\n{"contribution": "x", "nextSpeakerId": "m2"}\n```'
    assert parse_json_payload(text)["nextSpeakerId"] == "m2"


def test_parse_json_with_surrounding_chatter():
    text = 'Sure! Here it is: {"contribution": "x"} Hope that helps.'
    assert parse_json_payload(text) == {"contribution": "x"}


def test_parse_garbage_raises_with_fragment():
    with pytest.raises(ResponseFormatError, match="Original response fragment: not json"):
        parse_json_payload("not json at all")


def test_parse_non_object_raises():
    with pytest.raises(ResponseFormatError):
        parse_json_payload("[1, 2, 3]")


# --- prompts -----------------------------------------------------------------

async def test_open_debate_returns_decision(gateway, provider, sample_participants, gemini_config):
    result = await gateway.open_debate("Primes", sample_participants, "en", gemini_config)

    assert result == Decision("Hello", "m1")
    system_instruction, prompt, schema = provider.generate.await_args.args
    assert system_instruction.startswith("You moderate.")
    assert "respond exclusively in English" in system_instruction
    assert "Fermat (id: m1), Euler (id: m2)" in prompt
    assert "nextSpeakerId" in schema["required"]


async def test_language_directive_uses_language_name(gateway, provider, sample_participants, gemini_config):
    await gateway.open_debate("Primes", sample_participants, "es", gemini_config)
    assert "respond exclusively in Spanish" in provider.generate.await_args.args[0]


async def test_unknown_language_falls_back_to_english(gateway, provider, sample_participants, gemini_config):
    await gateway.open_debate("Primes", sample_participants, "fr", gemini_config)
    assert "respond exclusively in English" in provider.generate.await_args.args[0]


async def test_contribution_prompt_includes_history(gateway, provider, sample_participants, history, gemini_config):
    result = await gateway.get_contribution(
        sample_participants[2], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert result == Contribution("Hello")
    system_instruction, prompt, _ = provider.generate.await_args.args
    assert system_instruction.startswith("You are Euler.")
    assert "Moderator: Welcome\nFermat: Primes are lovely." in prompt


async def test_decision_prompt_excludes_last_speaker(gateway, provider, sample_participants, history, gemini_config):
    await gateway.get_decision(
        sample_participants[0], history, sample_participants, "Primes", "en", gemini_config,
    )

    prompt = provider.generate.await_args.args[1]
    assert "Fermat just spoke" in prompt
    assert "Euler (id: m2)" in prompt
    assert "Fermat (id: m1)" not in prompt


async def test_json_directive_for_schema_less_backend(gateway, provider, sample_participants, gemini_config):
    provider.native_schema = False

    await gateway.open_debate("Primes", sample_participants, "en", gemini_config)

    prompt = provider.generate.await_args.args[1]
    assert "Reply with JSON only" in prompt
    assert '"nextSpeakerId": "The ID of the next participant to speak."' in prompt


async def test_provider_is_built_once_per_config(sample_prompts_config, provider, sample_participants, gemini_config):
    factory = MagicMock(return_value=provider)
    gateway = GenerationGateway(sample_prompts_config, {}, provider_factory=factory)

    await gateway.open_debate("Primes", sample_participants, "en", gemini_config)
    await gateway.open_debate("Primes", sample_participants, "en", gemini_config)

    factory.assert_called_once_with(gemini_config)


async def test_aclose_closes_cached_providers_and_forgets_them(
    sample_prompts_config, sample_participants, gemini_config,
):
    built: list[MockProvider] = []

    def factory(cfg: ProviderConfig) -> MockProvider:
        built.append(MockProvider("mock", '{"contribution": "Hello", "nextSpeakerId": "m1"}'))
        return built[-1]

    gateway = GenerationGateway(sample_prompts_config, {}, provider_factory=factory)
    await gateway.open_debate("Primes", sample_participants, "en", gemini_config)

    await gateway.aclose()

    built[0].aclose.assert_awaited_once()
    await gateway.open_debate("Primes", sample_participants, "en", gemini_config)
    assert len(built) == 2


# --- failures and retries ----------------------------------------------------

async def test_overload_is_retried(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(side_effect=[_overloaded(), '{"contribution": "Back again"}'])

    result = await gateway.get_contribution(
        sample_participants[1], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert result == Contribution("Back again")
    assert provider.generate.await_count == 2
    gateway._sleep.assert_awaited_once_with(1.5)


async def test_exhausted_overload_yields_placeholder(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(side_effect=_overloaded())

    result = await gateway.get_contribution(
        sample_participants[1], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert result == Contribution(OVERLOAD_PLACEHOLDER)
    assert provider.generate.await_count == MAX_ATTEMPTS


async def test_exhausted_overload_in_decision_is_an_error(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(side_effect=_overloaded())

    result = await gateway.get_decision(
        sample_participants[0], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert isinstance(result, GatewayError)
    assert result.kind == "overloaded"


async def test_provider_error_is_not_retried(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(side_effect=ProviderError("mock", "403 Forbidden"))

    result = await gateway.get_contribution(
        sample_participants[1], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert isinstance(result, GatewayError)
    assert result.kind == "provider"
    assert "403 Forbidden" in str(result)
    assert provider.generate.await_count == 1


async def test_unparseable_reply_is_format_error(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(return_value="I would rather not.")

    result = await gateway.get_contribution(
        sample_participants[1], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert isinstance(result, GatewayError)
    assert result.kind == "format"


async def test_missing_next_speaker_is_format_error(gateway, provider, sample_participants, history, gemini_config):
    provider.generate = AsyncMock(return_value='{"contribution": "Thanks"}')

    result = await gateway.get_decision(
        sample_participants[0], history, sample_participants, "Primes", "en", gemini_config,
    )

    assert isinstance(result, GatewayError)
    assert "nextSpeakerId" in result.message


async def test_missing_api_key_is_returned_as_error(sample_prompts_config, sample_participants):
    gateway = GenerationGateway(sample_prompts_config, {})
    config = ProviderConfig(kind="gemini", api_key="")

    result = await gateway.open_debate("Primes", sample_participants, "en", config)

    assert isinstance(result, GatewayError)
    assert "Missing API key" in result.message
