"""Pure dataclasses for the round-table debate. No logic, no deps."""

from dataclasses import dataclass
from enum import Enum


class ParticipantRole(str, Enum):
    MODERATOR = "moderator"
    MEMBER = "member"


class TurnPhase(str, Enum):
    CONTRIBUTING = "contributing"
    DECIDING = "deciding"


class SessionState(str, Enum):
    CONFIGURING = "configuring"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class Participant:
    id: str
    name: str
    role: ParticipantRole
    persona: str
    avatar: str             # short label shown next to messages, e.g. "PF"
    is_custom: bool = False


@dataclass(frozen=True)
class Message:
    id: str
    author_id: str
    text: str


@dataclass(frozen=True)
class Turn:
    speaker_id: str
    phase: TurnPhase


@dataclass(frozen=True)
class Contribution:
    contribution: str


@dataclass(frozen=True)
class Decision:
    contribution: str
    next_speaker_id: str
