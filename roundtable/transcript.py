"""Append-only debate transcript and its plain-text export."""

import uuid
from collections.abc import Iterable, Iterator

from roundtable.models import Message, Participant

UNKNOWN_AUTHOR = "Unknown"

_TOPIC_RULE = "===================="
_BLOCK_SEPARATOR = "\n---\n\n"


class Transcript:
    """Messages in creation order.

    ``newest_first()`` is the display order; ``chronological()`` is what
    prompts and exports need.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __bool__(self) -> bool:
        return bool(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.chronological())

    def append(self, author_id: str, text: str) -> Message:
        message = Message(id=str(uuid.uuid4()), author_id=author_id, text=text)
        self._messages.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    def chronological(self) -> list[Message]:
        return list(self._messages)

    def newest_first(self) -> list[Message]:
        return list(reversed(self._messages))

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None


def _names(participants: Iterable[Participant]) -> dict[str, str]:
    return {p.id: p.name for p in participants}


def render_history(messages: Iterable[Message], participants: Iterable[Participant]) -> str:
    """One ``name: text`` line per message, oldest first."""
    names = _names(participants)
    return "\n".join(f"{names.get(m.author_id, UNKNOWN_AUTHOR)}: {m.text}" for m in messages)


def export_text(topic: str, messages: Iterable[Message], participants: Iterable[Participant]) -> str:
    """Render a transcript as the plain-text export document."""
    names = _names(participants)
    blocks = [f"{names.get(m.author_id, UNKNOWN_AUTHOR)}:\n{m.text}\n" for m in messages]
    return f"Debate Topic: {topic}\n\n{_TOPIC_RULE}\n\n" + _BLOCK_SEPARATOR.join(blocks)
