"""Load settings.yaml into typed dataclasses and persist user debate settings."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from roundtable.models import Participant, ParticipantRole

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

PROVIDER_GEMINI = "gemini"
PROVIDER_LMSTUDIO = "lmstudio"
PROVIDER_KINDS = (PROVIDER_GEMINI, PROVIDER_LMSTUDIO)


@dataclass(frozen=True)
class ProviderConfig:
    kind: str
    gemini_model: str = "gemini-2.5-flash"
    api_key_env: str = "GEMINI_API_KEY"
    lmstudio_port: int = 1234
    lmstudio_model: str = "local-model"
    timeout_sec: int = 120
    api_key: str = ""   # resolved from the environment, never persisted


@dataclass
class PromptsConfig:
    language: str
    opening: str
    contribution: str
    decision: str
    json_format: str


@dataclass
class DefaultsConfig:
    topic: str
    time_limit_min: int
    thinking_sec: float
    language: str
    max_turns: int
    output_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    provider: ProviderConfig
    prompts: PromptsConfig
    languages: dict[str, str] = field(default_factory=dict)
    participants: list[Participant] = field(default_factory=list)


@dataclass(frozen=True)
class SessionSettings:
    """Read-only snapshot handed to the turn engine at Start."""

    topic: str
    time_limit_sec: int
    thinking_sec: float
    language: str
    provider: ProviderConfig


@dataclass
class DebateSettings:
    """User-editable settings, persisted between runs."""

    topic: str
    time_limit_min: int
    thinking_sec: float
    language: str
    provider: ProviderConfig
    participants: list[Participant] = field(default_factory=list)

    def snapshot(self) -> SessionSettings:
        return SessionSettings(
            topic=self.topic,
            time_limit_sec=int(self.time_limit_min * 60),
            thinking_sec=float(self.thinking_sec),
            language=self.language,
            provider=self.provider,
        )


def participant_from_raw(raw: dict) -> Participant:
    return Participant(
        id=str(raw["id"]),
        name=str(raw["name"]),
        role=ParticipantRole(str(raw.get("role", ParticipantRole.MEMBER.value)).lower()),
        persona=str(raw.get("persona", "")),
        avatar=str(raw.get("avatar", "??")),
        is_custom=bool(raw.get("is_custom", False)),
    )


def participant_to_raw(participant: Participant) -> dict:
    return {
        "id": participant.id,
        "name": participant.name,
        "role": participant.role.value,
        "avatar": participant.avatar,
        "persona": participant.persona,
        "is_custom": participant.is_custom,
    }


def _provider_from_raw(raw: dict, base: ProviderConfig | None = None) -> ProviderConfig:
    base = base or ProviderConfig(kind=PROVIDER_GEMINI)
    kind = str(raw.get("kind", base.kind)).lower()
    if kind not in PROVIDER_KINDS:
        raise ValueError(f"Unknown provider kind: {kind!r} (expected one of {', '.join(PROVIDER_KINDS)})")
    return ProviderConfig(
        kind=kind,
        gemini_model=str(raw.get("gemini_model", base.gemini_model)),
        api_key_env=str(raw.get("api_key_env", base.api_key_env)),
        lmstudio_port=int(raw.get("lmstudio_port", base.lmstudio_port)),
        lmstudio_model=str(raw.get("lmstudio_model", base.lmstudio_model)),
        timeout_sec=int(raw.get("timeout_sec", base.timeout_sec)),
    )


def resolve_api_key(provider: ProviderConfig) -> ProviderConfig:
    """Fill in the credential from the environment unless one is already set."""
    if provider.api_key.strip():
        return provider
    api_key = os.environ.get(provider.api_key_env, "").strip()
    if not api_key and provider.kind == PROVIDER_GEMINI:
        logger.info("No Gemini API key found, set %s in .env", provider.api_key_env)
    return replace(provider, api_key=api_key)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate the bundled configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        topic=str(defaults_raw["topic"]).strip(),
        time_limit_min=int(defaults_raw["time_limit_min"]),
        thinking_sec=float(defaults_raw["thinking_sec"]),
        language=str(defaults_raw["language"]),
        max_turns=int(defaults_raw.get("max_turns", 20)),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        language=prompts_raw["language"],
        opening=prompts_raw["opening"],
        contribution=prompts_raw["contribution"],
        decision=prompts_raw["decision"],
        json_format=prompts_raw["json_format"],
    )

    participants = [participant_from_raw(p) for p in raw.get("participants", [])]
    moderators = [p for p in participants if p.role == ParticipantRole.MODERATOR]
    if len(moderators) != 1:
        raise ValueError(f"Expected exactly one moderator in {settings_path}, found {len(moderators)}")

    return AppConfig(
        defaults=defaults,
        provider=_provider_from_raw(raw.get("provider", {})),
        prompts=prompts,
        languages={str(k): str(v) for k, v in raw.get("languages", {}).items()},
        participants=participants,
    )


def default_settings(config: AppConfig) -> DebateSettings:
    return DebateSettings(
        topic=config.defaults.topic,
        time_limit_min=config.defaults.time_limit_min,
        thinking_sec=config.defaults.thinking_sec,
        language=config.defaults.language,
        provider=config.provider,
        participants=[replace(p) for p in config.participants],
    )


def _default_store_path() -> Path:
    home = os.environ.get("ROUNDTABLE_HOME", "").strip()
    base = Path(home) if home else Path.home() / ".roundtable"
    return base / "settings.yaml"


class SettingsStore:
    """YAML-backed key-value store for the user's debate settings.

    ``load()`` falls back to the bundled defaults for any missing key, so a
    fresh install and a partially written file both yield a usable roster.
    """

    def __init__(self, config: AppConfig, path: Path | None = None) -> None:
        self._config = config
        self.path = path or _default_store_path()

    def load(self) -> DebateSettings:
        settings = default_settings(self._config)
        if not self.path.exists():
            logger.debug("No saved settings at %s, using defaults", self.path)
            return settings

        with self.path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        participants = settings.participants
        if raw.get("participants"):
            participants = [participant_from_raw(p) for p in raw["participants"]]

        return DebateSettings(
            topic=str(raw.get("topic", settings.topic)),
            time_limit_min=int(raw.get("time_limit_min", settings.time_limit_min)),
            thinking_sec=float(raw.get("thinking_sec", settings.thinking_sec)),
            language=str(raw.get("language", settings.language)),
            provider=_provider_from_raw(raw.get("provider", {}), base=settings.provider),
            participants=participants,
        )

    def save(self, settings: DebateSettings) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        provider = settings.provider
        raw = {
            "topic": settings.topic,
            "time_limit_min": settings.time_limit_min,
            "thinking_sec": settings.thinking_sec,
            "language": settings.language,
            "provider": {
                "kind": provider.kind,
                "gemini_model": provider.gemini_model,
                "api_key_env": provider.api_key_env,
                "lmstudio_port": provider.lmstudio_port,
                "lmstudio_model": provider.lmstudio_model,
                "timeout_sec": provider.timeout_sec,
            },
            "participants": [participant_to_raw(p) for p in settings.participants],
        }
        with self.path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(raw, f, sort_keys=False, allow_unicode=True)
        logger.debug("Settings saved to %s", self.path)
        return self.path

    def reset(self) -> DebateSettings:
        settings = default_settings(self._config)
        self.save(settings)
        return settings
