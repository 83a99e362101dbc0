"""Turn engine: drives the debate through contribute / decide turns.

The engine owns the session state, the current turn and the turn counter.
Each time a new turn becomes current while the session is running, one
advance task is scheduled for it; no second advance starts until the first
has applied its result. The session clock runs alongside and can end the
session at any moment, in which case a late generation result is dropped.
"""

import asyncio
import logging
import random
from collections.abc import Callable

from config.config_loader import PROVIDER_GEMINI, PROVIDER_LMSTUDIO, SessionSettings
from roundtable.clock import SessionClock
from roundtable.gateway import GatewayError, GenerationGateway
from roundtable.models import Message, SessionState, Turn, TurnPhase
from roundtable.registry import MIN_MEMBERS, ParticipantRegistry
from roundtable.transcript import Transcript, export_text

logger = logging.getLogger(__name__)

MAX_TURNS = 20

REASON_MAX_TURNS = "max turns reached"
REASON_TIME_UP = "time expired"
REASON_SPEAKER_NOT_FOUND = "speaker not found"

_ACTIVE = (SessionState.RUNNING, SessionState.PAUSED)

# Phases of the advance task currently in flight
_THINKING = "thinking"
_GENERATING = "generating"


class ConfigurationError(Exception):
    """The debate cannot start with the current roster or provider settings."""


class SessionStateError(Exception):
    """The requested operation is not valid in the current session state."""


class TurnEngine:
    """State machine for one debate session at a time.

    Args:
        gateway: Source of opening remarks, contributions and decisions.
        registry: Roster; locked for the duration of a session.
        max_turns: Completed turns after which the debate concludes.
        rng: Random source for overriding a moderator who re-picks the last speaker.
        clock_interval: Seconds between clock ticks.
        on_message: Called with every message appended to the transcript.
        on_status: Called with a human-readable status line on every change.
        on_state: Called with the new state and the end reason on every transition.
        on_tick: Called with the remaining seconds after every clock tick.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        registry: ParticipantRegistry,
        max_turns: int = MAX_TURNS,
        rng: random.Random | None = None,
        clock_interval: float = 1.0,
        on_message: Callable[[Message], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        on_state: Callable[[SessionState, str | None], None] | None = None,
        on_tick: Callable[[int], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._registry = registry
        self._max_turns = max_turns
        self._rng = rng or random.Random()
        self._on_message = on_message
        self._on_status = on_status
        self._on_state = on_state

        self.transcript = Transcript()
        self.clock = SessionClock(on_expire=self._time_up, on_tick=on_tick, interval=clock_interval)

        self._state = SessionState.CONFIGURING
        self._status = "Configure the debate and press start."
        self._turn: Turn | None = None
        self._turn_count = 0
        self._error: str | None = None
        self._reason: str | None = None
        self._settings: SessionSettings | None = None

        # Bumped on every start and reset so results from an older session are ignored
        self._epoch = 0
        self._advance_task: asyncio.Task | None = None
        self._in_flight: str | None = None
        self._closed = asyncio.Event()

    # -- read-only views ---------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def turn(self) -> Turn | None:
        return self._turn

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def status(self) -> str:
        return self._status

    @property
    def remaining_seconds(self) -> int:
        return self.clock.remaining_seconds

    @property
    def registry(self) -> ParticipantRegistry:
        return self._registry

    # -- transitions -------------------------------------------------------

    def validate(self, settings: SessionSettings) -> None:
        """Raise ConfigurationError if a session cannot start with these settings."""
        if len(self._registry.members) < MIN_MEMBERS:
            raise ConfigurationError(f"Need at least {MIN_MEMBERS} members")
        provider = settings.provider
        if provider.kind == PROVIDER_GEMINI:
            if not provider.api_key.strip():
                raise ConfigurationError("API Key required for Gemini")
        elif provider.kind == PROVIDER_LMSTUDIO:
            if not 0 < provider.lmstudio_port < 65536:
                raise ConfigurationError(f"Invalid LM Studio port: {provider.lmstudio_port}")
        else:
            raise ConfigurationError(f"Unknown provider: {provider.kind}")

    async def start(self, settings: SessionSettings) -> None:
        """Open a new session and wait for the moderator's opening remarks."""
        if self._state is not SessionState.CONFIGURING:
            raise SessionStateError(f"Cannot start a debate while {self._state.value}")
        self.validate(settings)

        self._epoch += 1
        epoch = self._epoch
        self._settings = settings
        self._registry.lock()
        self._turn_count = 0
        self._turn = None
        self._error = None
        self._reason = None
        self.transcript.clear()
        self._closed.clear()
        self.clock.reset(settings.time_limit_sec)

        logger.info(
            "Starting debate: %d members, %ds limit, provider %s",
            len(self._registry.members), settings.time_limit_sec, settings.provider.kind,
        )
        self._set_state(SessionState.RUNNING, "The Moderator is starting the debate...")
        self.clock.start()

        result = await self._gateway.open_debate(
            settings.topic, self._registry.all(), settings.language, settings.provider,
        )
        if not self._is_current(epoch):
            logger.info("Dropping opening remarks that arrived after the session ended")
            return
        if isinstance(result, GatewayError):
            self._fail(f"Failed to start debate: {result}")
            return

        self._append(self._registry.moderator.id, result.contribution)
        self._set_turn(Turn(result.next_speaker_id, TurnPhase.CONTRIBUTING))

    def pause(self) -> None:
        if self._state is not SessionState.RUNNING:
            raise SessionStateError(f"Cannot pause a debate that is {self._state.value}")
        self.clock.stop()
        self._cancel_pending(retry_turn=True)
        self._set_state(SessionState.PAUSED, "Debate is paused.")

    def resume(self) -> None:
        if self._state is not SessionState.PAUSED:
            raise SessionStateError(f"Cannot resume a debate that is {self._state.value}")
        speaker = self._registry.get(self._turn.speaker_id) if self._turn else None
        self._set_state(
            SessionState.RUNNING,
            f"Resuming debate... Next up is {speaker.name if speaker else '...'}.",
        )
        self.clock.start()
        self._schedule_advance()

    def toggle_pause(self) -> None:
        if self._state is SessionState.RUNNING:
            self.pause()
        elif self._state is SessionState.PAUSED:
            self.resume()

    def reset(self) -> None:
        """Tear the session down and return to configuration."""
        if self._state is SessionState.CONFIGURING:
            return
        self._epoch += 1
        self.clock.stop()
        self._cancel_pending(include_in_flight=True)
        self.transcript.clear()
        self._turn = None
        self._turn_count = 0
        self._error = None
        self._reason = None
        self._registry.unlock()
        self._set_state(SessionState.CONFIGURING, "Configure the debate and press start.")
        self._closed.set()

    async def wait_closed(self) -> None:
        """Block until the session finishes, fails or is reset."""
        await self._closed.wait()

    def export_transcript(self) -> str:
        if self._state is SessionState.CONFIGURING or not self.transcript or self._settings is None:
            raise SessionStateError("There is no debate transcript to export")
        return export_text(self._settings.topic, self.transcript.chronological(), self._registry.all())

    # -- internals ---------------------------------------------------------

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self._state in _ACTIVE

    def _set_state(self, state: SessionState, status: str) -> None:
        changed = state is not self._state
        if changed:
            logger.info("Session %s -> %s", self._state.value, state.value)
        self._state = state
        if changed and self._on_state:
            self._on_state(state, self._reason)
        self._set_status(status)

    def _set_status(self, status: str) -> None:
        self._status = status
        if self._on_status:
            self._on_status(status)

    def _append(self, author_id: str, text: str) -> Message:
        message = self.transcript.append(author_id, text)
        if self._on_message:
            self._on_message(message)
        return message

    def _set_turn(self, turn: Turn) -> None:
        self._turn = turn
        self._schedule_advance()

    def _schedule_advance(self) -> None:
        if self._state is not SessionState.RUNNING or self._turn is None or self._advance_task is not None:
            return
        self._advance_task = asyncio.get_running_loop().create_task(self._advance(self._epoch))

    def _cancel_pending(self, include_in_flight: bool = False, retry_turn: bool = False) -> None:
        """Cancel a scheduled or thinking advance; leave a running generation call alone.

        With ``retry_turn`` a cancelled thinking delay gives its turn back so
        that resume attempts the same turn again.
        """
        task = self._advance_task
        if task is None or task is asyncio.current_task():
            return
        if self._in_flight == _GENERATING and not include_in_flight:
            return
        if retry_turn and self._in_flight == _THINKING:
            self._turn_count -= 1
        task.cancel()
        self._advance_task = None
        self._in_flight = None

    def _end(self, state: SessionState, reason: str) -> None:
        if self._state not in _ACTIVE:
            return
        self.clock.stop()
        self._cancel_pending()
        self._turn = None
        self._reason = reason
        self._set_state(state, reason)
        self._closed.set()

    def _finish(self, reason: str) -> None:
        self._end(SessionState.FINISHED, reason)

    def _fail(self, message: str) -> None:
        if self._state not in _ACTIVE:
            return
        logger.error("Debate failed: %s", message)
        self._error = message
        self._end(SessionState.FAILED, message)

    def _time_up(self) -> None:
        self._finish(REASON_TIME_UP)

    def _pick_other_member(self, chosen_id: str, last_speaker_id: str | None) -> str:
        if chosen_id != last_speaker_id:
            return chosen_id
        others = [m for m in self._registry.members if m.id != last_speaker_id]
        if not others:
            return chosen_id
        replacement = self._rng.choice(others)
        logger.info("Moderator re-picked the last speaker, passing the turn to %s instead", replacement.name)
        return replacement.id

    async def _advance(self, epoch: int) -> None:
        try:
            await self._run_turn(epoch)
        except asyncio.CancelledError:
            logger.debug("Pending turn cancelled")
            raise
        except Exception as exc:
            logger.exception("Unexpected error while advancing the debate")
            if self._is_current(epoch):
                self._fail(f"An error occurred: {exc}")
        finally:
            if self._advance_task is asyncio.current_task():
                self._advance_task = None
                self._in_flight = None

    async def _run_turn(self, epoch: int) -> None:
        turn = self._turn
        settings = self._settings
        if turn is None or settings is None:
            return

        if self._turn_count >= self._max_turns:
            self._finish(REASON_MAX_TURNS)
            return

        speaker = self._registry.get(turn.speaker_id)
        if speaker is None:
            self._fail(REASON_SPEAKER_NOT_FOUND)
            return

        self._turn_count += 1
        moderator = self._registry.moderator
        if turn.phase is TurnPhase.CONTRIBUTING:
            self._set_status(f"Waiting for {speaker.name}'s contribution...")
        else:
            self._set_status("Moderator is deciding the next turn...")

        if settings.thinking_sec > 0:
            self._in_flight = _THINKING
            await asyncio.sleep(settings.thinking_sec)

        self._in_flight = _GENERATING
        history = self.transcript.chronological()
        roster = self._registry.all()
        if turn.phase is TurnPhase.CONTRIBUTING:
            result = await self._gateway.get_contribution(
                speaker, history, roster, settings.topic, settings.language, settings.provider,
            )
        else:
            result = await self._gateway.get_decision(
                moderator, history, roster, settings.topic, settings.language, settings.provider,
            )
        self._in_flight = None

        if not self._is_current(epoch):
            logger.info("Dropping %s result from %s: session already %s",
                        turn.phase.value, speaker.name, self._state.value)
            return
        if isinstance(result, GatewayError):
            self._fail(f"An error occurred: {result}")
            return

        if turn.phase is TurnPhase.CONTRIBUTING:
            self._append(speaker.id, result.contribution)
            next_turn = Turn(moderator.id, TurnPhase.DECIDING)
        else:
            last = self.transcript.last()
            self._append(moderator.id, result.contribution)
            if not self._registry.is_member(result.next_speaker_id):
                self._fail(f"Moderator selected an invalid next speaker ID: {result.next_speaker_id}")
                return
            next_id = self._pick_other_member(result.next_speaker_id, last.author_id if last else None)
            next_turn = Turn(next_id, TurnPhase.CONTRIBUTING)

        self._advance_task = None
        self._set_turn(next_turn)
