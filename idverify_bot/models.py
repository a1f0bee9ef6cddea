from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Final, Literal, get_args

from .errors import InvalidRecordError

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
MAX_RECORD_AGE: Final = timedelta(hours=24)

RecordKind = Literal["pending_manual_approval", "provider_session", "debug"]
RECORD_KINDS: Final[tuple[str, ...]] = get_args(RecordKind)

PENDING_MANUAL_APPROVAL: Final = "pending_manual_approval"
PROVIDER_SESSION: Final = "provider_session"
DEBUG_SESSION: Final = "debug"

APPROVED: Final = "APPROVED"
DENIED: Final = "DENIED"
EXPIRED: Final = "EXPIRED"
SUSPECTED: Final = "SUSPECTED"
REVIEWING: Final = "REVIEWING"
TERMINAL_FAILURE_STATUSES: Final = frozenset({DENIED, EXPIRED, SUSPECTED})


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Return ``value`` as an ISO-8601 UTC string (microsecond precision)."""
    return value.astimezone(UTC).strftime(ISO_FORMAT)


def parse_timestamp(raw: str) -> datetime:
    return datetime.strptime(raw, ISO_FORMAT).replace(tzinfo=UTC)


@dataclass(slots=True, frozen=True)
class Approval:
    approved_by: str
    approved_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "approved_by": self.approved_by,
            "approved_at": format_timestamp(self.approved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Approval:
        try:
            return cls(
                approved_by=str(data["approved_by"]),
                approved_at=parse_timestamp(str(data["approved_at"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRecordError(f"Invalid approval block: {exc}") from exc


@dataclass(slots=True, frozen=True)
class VerificationRecord:
    """One verification attempt, keyed in the ledger by ``session_key``.

    Records are immutable. Code that changes a record builds a new one and
    writes it back through the ledger, so no caller can hold a stale copy
    and overwrite a newer state.
    """

    session_key: str
    subject_id: str
    external_key: str
    kind: RecordKind
    created_at: datetime
    display_name: str | None = None
    approval: Approval | None = None
    client_correlation_id: str | None = None
    session_token: str | None = None

    @property
    def has_provider_session(self) -> bool:
        return self.kind in (PROVIDER_SESSION, DEBUG_SESSION)

    @property
    def is_debug(self) -> bool:
        return self.kind == DEBUG_SESSION

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or utc_now()) - self.created_at

    def is_expired(
        self, now: datetime | None = None, max_age: timedelta = MAX_RECORD_AGE
    ) -> bool:
        return self.age(now) > max_age

    def promote(
        self,
        session: ProviderSession,
        approval: Approval,
        *,
        now: datetime | None = None,
    ) -> VerificationRecord:
        """Return the provider-session record replacing a manual-approval one."""
        if self.kind != PENDING_MANUAL_APPROVAL:
            raise ValueError(f"Cannot promote a {self.kind} record")
        return VerificationRecord(
            session_key=session.session_key,
            subject_id=self.subject_id,
            external_key=self.external_key,
            kind=PROVIDER_SESSION,
            created_at=now or utc_now(),
            display_name=self.display_name,
            approval=approval,
            client_correlation_id=session.client_correlation_id,
            session_token=session.session_token,
        )

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = {
            "subject_id": self.subject_id,
            "external_key": self.external_key,
            "kind": self.kind,
            "created_at": format_timestamp(self.created_at),
        }
        if self.display_name is not None:
            item["display_name"] = self.display_name
        if self.approval is not None:
            item["approval"] = self.approval.to_dict()
        if self.client_correlation_id is not None:
            item["client_correlation_id"] = self.client_correlation_id
        if self.session_token is not None:
            item["session_token"] = self.session_token
        return item

    @classmethod
    def from_item(cls, session_key: str, item: object) -> VerificationRecord:
        if not isinstance(item, dict):
            raise InvalidRecordError("entry is not an object")
        for name in ("subject_id", "external_key", "kind", "created_at"):
            if not item.get(name):
                raise InvalidRecordError(f"missing required field {name!r}")
        kind = item["kind"]
        if kind not in RECORD_KINDS:
            raise InvalidRecordError(f"unknown kind {kind!r}")
        try:
            created_at = parse_timestamp(str(item["created_at"]))
        except ValueError as exc:
            raise InvalidRecordError(f"unparseable created_at: {exc}") from exc

        approval_raw = item.get("approval")
        approval = None
        if approval_raw is not None:
            if not isinstance(approval_raw, dict):
                raise InvalidRecordError("approval is not an object")
            approval = Approval.from_dict(approval_raw)

        def optional(name: str) -> str | None:
            value = item.get(name)
            return str(value) if value is not None else None

        return cls(
            session_key=session_key,
            subject_id=str(item["subject_id"]),
            external_key=str(item["external_key"]),
            kind=kind,
            created_at=created_at,
            display_name=optional("display_name"),
            approval=approval,
            client_correlation_id=optional("client_correlation_id"),
            session_token=optional("session_token"),
        )


@dataclass(slots=True, frozen=True)
class ProviderSession:
    """Session handle returned by the provider when a verification starts."""

    session_key: str
    session_token: str
    redirect_url: str
    client_correlation_id: str


@dataclass(slots=True, frozen=True)
class ProviderStatus:
    status: str | None
    final: bool
    reason_codes: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class VerifiedMapping:
    """Verified ``discord_id -> ckey`` mapping held by the backend."""

    subject_id: str
    external_key: str
    verification_method: str | None = None
    scan_ref: str | None = None
    verified_flags: dict[str, object] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def has_completed_scan(self) -> bool:
        return bool(self.scan_ref)

    @classmethod
    def from_response(cls, data: dict[str, object]) -> VerifiedMapping:
        flags = data.get("verified_flags") or {}
        if not isinstance(flags, dict):
            flags = {}
        scan_ref = flags.get("scan_ref")
        return cls(
            subject_id=str(data.get("discord_id", "")),
            external_key=str(data.get("ckey", "")),
            verification_method=data.get("verification_method"),  # type: ignore[arg-type]
            scan_ref=str(scan_ref) if scan_ref else None,
            verified_flags=dict(flags),
            created_at=data.get("created_at"),  # type: ignore[arg-type]
            updated_at=data.get("updated_at"),  # type: ignore[arg-type]
        )


DispositionOutcome = Literal["awaiting_approval", "session_started"]


@dataclass(slots=True, frozen=True)
class Disposition:
    """Result of starting or approving a verification."""

    outcome: DispositionOutcome
    record: VerificationRecord
    redirect_url: str | None = None

    @property
    def token(self) -> str:
        return self.record.session_key


StatusState = Literal["awaiting_approval", "in_progress", "verified", "failed"]


@dataclass(slots=True, frozen=True)
class StatusView:
    subject_id: str
    external_key: str
    state: StatusState
    session_key: str | None = None
    record: VerificationRecord | None = None
    verification: VerifiedMapping | None = None
    provider_status: ProviderStatus | None = None

    @classmethod
    def for_record(
        cls,
        record: VerificationRecord,
        provider_status: ProviderStatus | None = None,
    ) -> StatusView:
        state: StatusState = (
            "awaiting_approval"
            if record.kind == PENDING_MANUAL_APPROVAL
            else "in_progress"
        )
        return cls(
            subject_id=record.subject_id,
            external_key=record.external_key,
            state=state,
            session_key=record.session_key,
            record=record,
            provider_status=provider_status,
        )

    @classmethod
    def for_mapping(cls, mapping: VerifiedMapping) -> StatusView:
        return cls(
            subject_id=mapping.subject_id,
            external_key=mapping.external_key,
            state="verified",
            session_key=mapping.scan_ref,
            verification=mapping,
        )
