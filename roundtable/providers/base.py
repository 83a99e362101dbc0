"""Abstract base for all AI model providers."""

from abc import ABC, abstractmethod
from typing import Any


class ProviderError(Exception):
    """Raised when a provider call fails.

    ``overloaded`` marks a transient upstream overload (HTTP 503) that is
    worth retrying.
    """

    def __init__(self, provider_name: str, message: str, overloaded: bool = False) -> None:
        self.provider_name = provider_name
        self.overloaded = overloaded
        super().__init__(f"[{provider_name}] {message}")


def is_overload(status_code: int | None, message: str) -> bool:
    lowered = message.lower()
    return status_code == 503 or ("503" in lowered and "overloaded" in lowered)


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    # False when the backend cannot enforce a response schema and the JSON
    # shape has to be spelled out in the prompt instead.
    native_schema: bool = True

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'lmstudio')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(self, system_instruction: str, prompt: str, schema: dict[str, Any]) -> str:
        """Generate a structured (JSON) response.

        Args:
            system_instruction: Persona plus language directive.
            prompt: The user prompt for this turn.
            schema: Object schema the JSON reply must follow.

        Returns:
            Raw response text, expected to contain a JSON object.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    async def check_connection(self) -> None:
        """Cheap reachability check.

        Raises:
            ProviderError: If the backend cannot be reached.
        """
        ...

    async def aclose(self) -> None:
        """Release the underlying SDK client. Providers without one need not override this."""
        return None
