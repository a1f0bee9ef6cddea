from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Final

from . import notifications
from .admission import DailyLimitGate
from .backend_api import BackendClient
from .errors import (
    AlreadyPendingError,
    AlreadyVerifiedError,
    BackendError,
    NotAwaitingApprovalError,
    RecordNotFoundError,
)
from .ledger import VerificationLedger
from .models import (
    DEBUG_SESSION,
    PENDING_MANUAL_APPROVAL,
    PROVIDER_SESSION,
    Approval,
    Disposition,
    ProviderSession,
    RecordKind,
    StatusView,
    VerificationRecord,
    utc_now,
)
from .notifications import NotificationSink
from .provider_api import IdenfyClient
from .reconciler import DeletionReconciler

log: Final = logging.getLogger(__name__)


def _new_token() -> str:
    return str(uuid.uuid4())


class VerificationCoordinator:
    """Owns the lifecycle of verification records.

    Every transition goes through the ledger by key. A subject may hold at
    most one live record; the check and the insert are separated by I/O, so
    subjects with an initiation in flight are tracked as well.
    """

    def __init__(
        self,
        ledger: VerificationLedger,
        backend: BackendClient,
        provider: IdenfyClient,
        gate: DailyLimitGate,
        notifier: NotificationSink,
        reconciler: DeletionReconciler,
        *,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = _new_token,
        admin_role_id: int | None = None,
    ) -> None:
        self._ledger = ledger
        self._backend = backend
        self._provider = provider
        self._gate = gate
        self._notifier = notifier
        self._reconciler = reconciler
        self._clock = clock
        self._token_factory = token_factory
        self._admin_mention = f"<@&{admin_role_id}>" if admin_role_id else None
        self._initiating: set[str] = set()
        self._approving: set[str] = set()

    # ----- Queries -----
    def get(self, session_key: str) -> VerificationRecord | None:
        return self._ledger.get(session_key)

    def find_live(self, subject_id: str) -> VerificationRecord | None:
        return self._ledger.find_by_subject(subject_id)

    def list_live(self) -> list[VerificationRecord]:
        return [record for _key, record in self._ledger.entries()]

    async def inspect(self, subject_id: str) -> StatusView:
        record = self._ledger.find_by_subject(subject_id)
        if record is not None:
            return StatusView.for_record(record)
        mapping = await self._backend.get_verification(subject_id)
        if mapping is None:
            raise RecordNotFoundError(f"No verification found for {subject_id}")
        return StatusView.for_mapping(mapping)

    # ----- Session creation -----
    @contextlib.contextmanager
    def _reserve_subject(self, subject_id: str) -> Iterator[None]:
        existing = self._ledger.find_by_subject(subject_id)
        if existing is not None:
            raise AlreadyPendingError(subject_id, existing.session_key)
        if subject_id in self._initiating:
            raise AlreadyPendingError(subject_id)
        self._initiating.add(subject_id)
        try:
            yield
        finally:
            self._initiating.discard(subject_id)

    def _session_record(
        self,
        session: ProviderSession,
        subject_id: str,
        external_key: str,
        kind: RecordKind,
        display_name: str | None,
    ) -> VerificationRecord:
        return VerificationRecord(
            session_key=session.session_key,
            subject_id=subject_id,
            external_key=external_key,
            kind=kind,
            created_at=self._clock(),
            display_name=display_name,
            client_correlation_id=session.client_correlation_id,
            session_token=session.session_token,
        )

    async def initiate(
        self,
        subject_id: str,
        external_key: str,
        *,
        display_name: str | None = None,
    ) -> Disposition:
        with self._reserve_subject(subject_id):
            try:
                existing = await self._backend.get_verification(subject_id)
            except BackendError as exc:
                log.warning(
                    "Error checking existing verification for %s: %s", subject_id, exc
                )
                existing = None
            if existing is not None and existing.has_completed_scan:
                raise AlreadyVerifiedError(subject_id, existing.external_key)

            if await self._gate.is_exceeded():
                record = VerificationRecord(
                    session_key=self._token_factory(),
                    subject_id=subject_id,
                    external_key=external_key,
                    kind=PENDING_MANUAL_APPROVAL,
                    created_at=self._clock(),
                    display_name=display_name,
                )
                self._ledger.set(record.session_key, record)
                log.info(
                    "Daily limit reached; %s queued for manual approval as %s",
                    subject_id,
                    record.session_key,
                )
                await self._notifier.announce(
                    notifications.approval_required(record), content=self._admin_mention
                )
                return Disposition(outcome="awaiting_approval", record=record)

            session = await self._provider.create_session(subject_id, external_key)
            record = self._session_record(
                session, subject_id, external_key, PROVIDER_SESSION, display_name
            )
            self._ledger.set(record.session_key, record)
            log.info("Verification %s started for %s", record.session_key, subject_id)
            return Disposition(
                outcome="session_started",
                record=record,
                redirect_url=session.redirect_url,
            )

    async def start_test_session(
        self,
        subject_id: str,
        external_key: str,
        dummy_status: str = "APPROVED",
        *,
        display_name: str | None = None,
    ) -> Disposition:
        """Create a provider dummy session that completes with ``dummy_status``."""
        with self._reserve_subject(subject_id):
            session = await self._provider.create_session(
                subject_id, external_key, dummy_status=dummy_status
            )
            record = self._session_record(
                session, subject_id, external_key, DEBUG_SESSION, display_name
            )
            self._ledger.set(record.session_key, record)
            return Disposition(
                outcome="session_started",
                record=record,
                redirect_url=session.redirect_url,
            )

    async def debug_verify(self, subject_id: str, external_key: str) -> dict:
        return await self._backend.submit_verification(
            subject_id, external_key, is_debug=True
        )

    # ----- Manual approval -----
    async def approve(self, token: str, approver_id: str) -> Disposition:
        record = self._ledger.get(token)
        if record is None:
            raise RecordNotFoundError(f"No pending verification with ID {token}")
        if record.kind != PENDING_MANUAL_APPROVAL or token in self._approving:
            raise NotAwaitingApprovalError(
                f"Verification {token} is not awaiting manual approval"
            )

        self._approving.add(token)
        try:
            session = await self._provider.create_session(
                record.subject_id, record.external_key
            )
        finally:
            self._approving.discard(token)

        # Re-read: the request may have been cancelled or swept meanwhile.
        current = self._ledger.get(token)
        if current is None or current.kind != PENDING_MANUAL_APPROVAL:
            log.warning(
                "Verification %s disappeared during approval; discarding session %s",
                token,
                session.session_key,
            )
            self._reconciler.schedule(session.session_key)
            raise RecordNotFoundError(f"No pending verification with ID {token}")

        now = self._clock()
        promoted = current.promote(
            session, Approval(approved_by=approver_id, approved_at=now), now=now
        )
        self._ledger.delete(token)
        self._ledger.set(promoted.session_key, promoted)
        log.info(
            "Verification %s approved by %s; session %s",
            token,
            approver_id,
            promoted.session_key,
        )
        await self._notifier.notify(
            promoted.subject_id,
            notifications.session_started(promoted, session.redirect_url),
        )
        return Disposition(
            outcome="session_started",
            record=promoted,
            redirect_url=session.redirect_url,
        )

    # ----- Terminal transitions -----
    def complete(self, session_key: str) -> VerificationRecord | None:
        """Remove a record whose verification was submitted downstream."""
        return self._remove(session_key)

    def reject(self, session_key: str) -> VerificationRecord | None:
        """Remove a record the provider reported as failed."""
        return self._remove(session_key)

    def _remove(self, session_key: str) -> VerificationRecord | None:
        record = self._ledger.get(session_key)
        if record is None:
            return None
        self._ledger.delete(session_key)
        return record

    async def cancel(self, subject_id: str) -> VerificationRecord:
        record = self._ledger.find_by_subject(subject_id)
        if record is None:
            raise RecordNotFoundError(f"No pending verification for {subject_id}")
        self._ledger.delete(record.session_key)
        log.info("Cancelled verification %s for %s", record.session_key, subject_id)
        await self._notifier.notify(
            subject_id, notifications.verification_cancelled(record)
        )
        if record.has_provider_session:
            self._reconciler.schedule(record.session_key)
        return record

    async def sweep_expired(self) -> list[VerificationRecord]:
        expired = self._ledger.sweep_expired()
        for record in expired:
            await self._notifier.notify(
                record.subject_id, notifications.verification_expired(record)
            )
            if record.has_provider_session:
                self._reconciler.schedule(record.session_key)
        return expired
