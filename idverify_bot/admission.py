from __future__ import annotations

import logging
from typing import Final, Protocol

from .errors import BackendError

log: Final = logging.getLogger(__name__)


class VerificationCounter(Protocol):
    async def get_recent_verification_count(self) -> int: ...


class DailyLimitGate:
    """Daily quota check consulted before opening a provider session."""

    def __init__(self, backend: VerificationCounter, daily_limit: int) -> None:
        self._backend = backend
        self.daily_limit = daily_limit

    async def is_exceeded(self) -> bool:
        # Fails open: an unavailable counter must not block verification.
        try:
            count = await self._backend.get_recent_verification_count()
        except BackendError as exc:
            log.error("Failed to check daily limit: %s", exc)
            return False
        return count >= self.daily_limit
