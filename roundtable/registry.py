"""Participant registry: one moderator plus the debating members."""

import logging
import uuid
from dataclasses import replace

from roundtable.models import Participant, ParticipantRole

logger = logging.getLogger(__name__)

MIN_MEMBERS = 2

_EDITABLE_FIELDS = {"name", "persona", "avatar"}


class RosterLockedError(Exception):
    """Raised when the roster is edited while a session is active."""


class ParticipantRegistry:
    """Ordered set of participants with stable ids.

    Mutations are only allowed while unlocked; the turn engine locks the
    registry when a session starts and unlocks it on reset.
    """

    def __init__(self, participants: list[Participant]) -> None:
        moderators = [p for p in participants if p.role == ParticipantRole.MODERATOR]
        if len(moderators) != 1:
            raise ValueError(f"A roster needs exactly one moderator, got {len(moderators)}")
        ids = [p.id for p in participants]
        if len(set(ids)) != len(ids):
            raise ValueError("Participant ids must be unique")
        self._participants: list[Participant] = [replace(p) for p in participants]
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    @property
    def moderator(self) -> Participant:
        return next(p for p in self._participants if p.role == ParticipantRole.MODERATOR)

    @property
    def members(self) -> list[Participant]:
        return [p for p in self._participants if p.role == ParticipantRole.MEMBER]

    def all(self) -> list[Participant]:
        return list(self._participants)

    def get(self, participant_id: str) -> Participant | None:
        return next((p for p in self._participants if p.id == participant_id), None)

    def is_member(self, participant_id: str) -> bool:
        participant = self.get(participant_id)
        return participant is not None and participant.role == ParticipantRole.MEMBER

    def _check_unlocked(self, action: str) -> None:
        if self._locked:
            raise RosterLockedError(f"Cannot {action} participants while a debate is in progress")

    def add_member(
        self,
        name: str = "New Mathematician",
        persona: str = "A brilliant mind from an unknown era, specializing in...",
        avatar: str = "??",
    ) -> Participant:
        self._check_unlocked("add")
        participant = Participant(
            id=f"custom-{uuid.uuid4()}",
            name=name,
            role=ParticipantRole.MEMBER,
            persona=persona,
            avatar=avatar,
            is_custom=True,
        )
        self._participants.append(participant)
        logger.debug("Added participant %s (%s)", participant.name, participant.id)
        return participant

    def update(self, participant_id: str, **changes: str) -> Participant:
        self._check_unlocked("edit")
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit participant field(s): {', '.join(sorted(unknown))}")
        for index, participant in enumerate(self._participants):
            if participant.id == participant_id:
                updated = replace(participant, **changes)
                self._participants[index] = updated
                return updated
        raise KeyError(participant_id)

    def remove(self, participant_id: str) -> Participant:
        self._check_unlocked("remove")
        participant = self.get(participant_id)
        if participant is None:
            raise KeyError(participant_id)
        if participant.role == ParticipantRole.MODERATOR:
            raise ValueError("The moderator cannot be removed")
        self._participants.remove(participant)
        logger.debug("Removed participant %s (%s)", participant.name, participant.id)
        return participant
