from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Final, Protocol

from . import notifications
from .errors import ProviderError, StillProcessingError
from .notifications import NotificationSink

log: Final = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS: Final = 12
DEFAULT_BASE_DELAY: Final = 10.0
DEFAULT_GRACE_DELAY: Final = 5.0


class SessionDataDeleter(Protocol):
    async def delete_session_data(self, session_key: str) -> None: ...


class DeletionReconciler:
    """Purges provider-held data after a verification reaches a final state.

    Each reconciliation waits ``grace_delay`` seconds, then retries deletion
    while the provider reports the session as still processing; attempt *n*
    is followed by a wait of ``n * base_delay`` seconds.
    """

    def __init__(
        self,
        provider: SessionDataDeleter,
        notifier: NotificationSink,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        grace_delay: float = DEFAULT_GRACE_DELAY,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._notifier = notifier
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.grace_delay = grace_delay
        self._sleep = sleep
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def schedule(self, session_key: str, subject_id: str | None = None) -> asyncio.Task[None]:
        """Start a detached reconciliation; the caller must not await it."""
        task = asyncio.create_task(
            self._run_detached(session_key, subject_id),
            name=f"reconcile-{session_key}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_detached(self, session_key: str, subject_id: str | None) -> None:
        try:
            await self.reconcile(session_key, subject_id)
        except Exception:  # pylint: disable=broad-except
            log.exception("Background deletion retry failed for %s", session_key)

    async def reconcile(self, session_key: str, subject_id: str | None = None) -> bool:
        log.info(
            "Waiting %ss before attempting to delete iDenfy data for %s...",
            self.grace_delay,
            session_key,
        )
        await self._sleep(self.grace_delay)

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._provider.delete_session_data(session_key)
            except StillProcessingError as exc:
                if attempt == self.max_attempts:
                    log.error(
                        "Failed to delete iDenfy data for %s after %d attempts: %s",
                        session_key,
                        attempt,
                        exc,
                    )
                    break
                delay = self.base_delay * attempt
                log.info(
                    "Deletion failed for %s (attempt %d/%d): %s. Retrying in %ss...",
                    session_key,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
            except ProviderError as exc:
                log.error(
                    "Failed to delete iDenfy data for %s after %d attempts: %s",
                    session_key,
                    attempt,
                    exc,
                )
                break
            else:
                log.info(
                    "Successfully deleted iDenfy data for %s on attempt %d",
                    session_key,
                    attempt,
                )
                if subject_id is not None:
                    await self._notifier.notify(
                        subject_id, notifications.data_deleted(session_key)
                    )
                return True

        failure = notifications.data_deletion_failed(session_key)
        if subject_id is not None:
            await self._notifier.notify(subject_id, failure)
        await self._notifier.announce(failure)
        return False
