"""Provider connection test, run before starting a debate."""

import asyncio
import logging

from roundtable.providers.base import AIProvider

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


async def check_provider(provider: AIProvider, timeout: float = _TIMEOUT_SEC) -> tuple[bool, str]:
    """Ping the provider backend. Returns (ok, error_message)."""
    try:
        await asyncio.wait_for(provider.check_connection(), timeout=timeout)
        return True, ""
    except TimeoutError:
        return False, f"[{provider.name()}] No answer within {timeout:.0f}s"
    except Exception as exc:
        logger.debug("Connection check for %s failed: %s", provider.name(), exc)
        return False, str(exc)
