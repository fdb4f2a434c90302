"""Credential snapshot and credential-refresh notification.

Two small collaborators around the generation service credential:

- CredentialProvider reads the current API key at call time. Clients call
  snapshot() on every start/poll request and never cache the result, so a key
  rotated between calls is used by the very next call.
- CredentialRefreshNotifier is the one-way signal fired when the error
  classifier yields PERMANENT. The orchestrator never waits on it; the failing
  job simply fails and a later retry uses whatever credential exists then.

Security Notes:
    - NEVER log the key itself, only whether one is present
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from adstudio.config import get_api_key
from adstudio.exceptions import ConfigurationError
from adstudio.models import RawFailure
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


class CredentialProvider:
    """Reads the generation-service credential fresh on every call.

    Args:
        source: Callable returning the current key or None. Defaults to the
            GEMINI_API_KEY environment variable.
    """

    def __init__(self, source: Callable[[], str | None] = get_api_key):
        self._source = source

    def snapshot(self) -> str:
        """Return the key in effect right now.

        Raises:
            ConfigurationError: If no key is available.
        """
        key = (self._source() or "").strip()
        if not key:
            log.warning("credential_missing")
            raise ConfigurationError("Please select an API key to begin.")
        return key

    def is_available(self) -> bool:
        return bool((self._source() or "").strip())


class CredentialRefreshNotifier:
    """Fire-and-forget bridge to the credential-refresh collaborator.

    The callback may be a plain function or a coroutine function. Coroutines
    are scheduled on the running loop and never awaited by the caller;
    their exceptions are logged.

    Attributes:
        fired: Number of notifications sent so far.
    """

    def __init__(self, callback: Callable[[RawFailure], Any] | None = None):
        self._callback = callback
        self._pending: set[asyncio.Future[Any]] = set()
        self.fired = 0

    def __call__(self, failure: RawFailure) -> None:
        self.fired += 1
        log.warning(
            "credential_refresh_requested",
            status_code=failure.status_code,
            error=failure.message,
        )
        if self._callback is None:
            return

        result = self._callback(failure)
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._on_done)

    def _on_done(self, future: "asyncio.Future[Any]") -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            log.error("credential_refresh_callback_failed", error=str(exc))

    async def aclose(self) -> None:
        """Cancel notifications still in flight (used at shutdown)."""
        for future in list(self._pending):
            future.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
