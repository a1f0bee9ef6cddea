from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass
from typing import Final, Literal, get_args

from . import notifications
from .backend_api import BackendClient
from .coordinator import VerificationCoordinator
from .errors import BackendError
from .models import (
    APPROVED,
    PENDING_MANUAL_APPROVAL,
    REVIEWING,
    TERMINAL_FAILURE_STATUSES,
    StatusView,
    VerificationRecord,
)
from .notifications import Notification, NotificationSink
from .provider_api import IdenfyClient
from .reconciler import DeletionReconciler

log: Final = logging.getLogger(__name__)

ReviewNotifyPolicy = Literal["always", "first", "never"]
REVIEW_NOTIFY_POLICIES: Final[tuple[str, ...]] = get_args(ReviewNotifyPolicy)

CallbackAction = Literal[
    "ignored_unknown",
    "ignored_in_flight",
    "ignored_status",
    "submitted",
    "submission_failed",
    "rejected",
    "reviewing",
]


@dataclass(slots=True, frozen=True)
class CallbackOutcome:
    session_key: str
    status: str | None
    action: CallbackAction
    record: VerificationRecord | None = None


class CallbackProcessor:
    """Applies provider dispositions to the ledger and fans out side effects.

    Notifications run as background tasks so the HTTP acknowledgement never
    waits on chat delivery.
    """

    def __init__(
        self,
        coordinator: VerificationCoordinator,
        backend: BackendClient,
        provider: IdenfyClient,
        notifier: NotificationSink,
        reconciler: DeletionReconciler,
        *,
        review_policy: ReviewNotifyPolicy = "first",
    ) -> None:
        if review_policy not in REVIEW_NOTIFY_POLICIES:
            raise ValueError(f"Unknown review notification policy: {review_policy}")
        self._coordinator = coordinator
        self._backend = backend
        self._provider = provider
        self._notifier = notifier
        self._reconciler = reconciler
        self.review_policy = review_policy
        self._in_flight: set[str] = set()
        self._review_notified: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()

    # ----- Background notifications -----
    def _spawn(self, coro: Coroutine[object, object, object], label: str) -> None:
        async def runner() -> None:
            try:
                await coro
            except Exception:  # pylint: disable=broad-except
                log.exception("Notification task %s failed", label)

        task = asyncio.create_task(runner(), name=f"notify-{label}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self, subject_id: str, notification: Notification) -> None:
        self._spawn(self._notifier.notify(subject_id, notification), subject_id)

    def _announce(self, notification: Notification) -> None:
        self._spawn(self._notifier.announce(notification), "announce")

    async def drain(self) -> None:
        """Wait for outstanding notification tasks."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ----- Dispositions -----
    async def handle_disposition(
        self,
        session_key: str,
        overall_status: str | None,
        reason_codes: Iterable[str] = (),
    ) -> CallbackOutcome:
        record = self._coordinator.get(session_key)
        if record is None:
            log.info("No pending verification found for scanRef: %s", session_key)
            return CallbackOutcome(session_key, overall_status, "ignored_unknown")
        if session_key in self._in_flight:
            log.info("Callback for %s already being processed", session_key)
            return CallbackOutcome(session_key, overall_status, "ignored_in_flight", record)

        log.info("Received iDenfy callback for %s: %s", session_key, overall_status)

        if overall_status == APPROVED:
            return await self._handle_approved(record)

        if overall_status in TERMINAL_FAILURE_STATUSES:
            reasons = tuple(reason_codes)
            self._coordinator.reject(session_key)
            self._review_notified.discard(session_key)
            self._notify(
                record.subject_id,
                notifications.verification_failed(record, overall_status, reasons),
            )
            self._reconciler.schedule(session_key, record.subject_id)
            return CallbackOutcome(session_key, overall_status, "rejected", record)

        if overall_status == REVIEWING:
            log.info("Verification %s is still under review", session_key)
            if self._should_notify_review(session_key):
                self._notify(
                    record.subject_id, notifications.verification_under_review(record)
                )
            return CallbackOutcome(session_key, overall_status, "reviewing", record)

        log.info("Received unexpected status for %s: %s", session_key, overall_status)
        return CallbackOutcome(session_key, overall_status, "ignored_status", record)

    async def _handle_approved(self, record: VerificationRecord) -> CallbackOutcome:
        session_key = record.session_key
        self._in_flight.add(session_key)
        try:
            await self._backend.submit_verification(
                record.subject_id,
                record.external_key,
                is_debug=record.is_debug,
                provider_ref=session_key,
            )
        except BackendError as exc:
            log.error("Failed to submit verification for %s: %s", session_key, exc)
            self._notify(record.subject_id, notifications.submission_failed(record))
            return CallbackOutcome(session_key, APPROVED, "submission_failed", record)
        finally:
            self._in_flight.discard(session_key)

        log.info("Successfully submitted verification for %s", record.external_key)
        self._coordinator.complete(session_key)
        self._review_notified.discard(session_key)
        self._notify(record.subject_id, notifications.verification_succeeded(record))
        self._announce(notifications.verification_logged(record))
        self._reconciler.schedule(session_key, record.subject_id)
        return CallbackOutcome(session_key, APPROVED, "submitted", record)

    def _should_notify_review(self, session_key: str) -> bool:
        if self.review_policy == "never":
            return False
        if self.review_policy == "always":
            return True
        # Records can also leave the ledger by expiry or cancellation.
        self._review_notified = {
            key for key in self._review_notified if self._coordinator.get(key) is not None
        }
        if session_key in self._review_notified:
            return False
        self._review_notified.add(session_key)
        return True

    # ----- Manual recheck -----
    async def recheck(self, subject_id: str) -> StatusView:
        """Poll the provider for the subject's live session and apply the result.

        This is the retry path for approved verifications whose submission
        failed. Raises :class:`ProviderError` if the status poll fails.
        """
        record = self._coordinator.find_live(subject_id)
        if record is None:
            return await self._coordinator.inspect(subject_id)
        if record.kind == PENDING_MANUAL_APPROVAL:
            return StatusView.for_record(record)

        status = await self._provider.get_session_status(record.session_key)
        if status.status == APPROVED or (
            status.final and status.status in TERMINAL_FAILURE_STATUSES
        ):
            outcome = await self.handle_disposition(
                record.session_key, status.status, status.reason_codes
            )
            if outcome.action == "submitted":
                return StatusView(
                    subject_id=subject_id,
                    external_key=record.external_key,
                    state="verified",
                    session_key=record.session_key,
                    provider_status=status,
                )
            if outcome.action == "rejected":
                return StatusView(
                    subject_id=subject_id,
                    external_key=record.external_key,
                    state="failed",
                    session_key=record.session_key,
                    provider_status=status,
                )
        current = self._coordinator.get(record.session_key) or record
        return StatusView.for_record(current, provider_status=status)
