from __future__ import annotations


class VerificationError(Exception):
    """Base exception for verification lifecycle failures."""


class AlreadyVerifiedError(VerificationError):
    """Raised when the backend already holds an ID-verified mapping for the user."""

    def __init__(self, subject_id: str, external_key: str) -> None:
        super().__init__(f"{subject_id} is already verified as {external_key}")
        self.subject_id = subject_id
        self.external_key = external_key


class AlreadyPendingError(VerificationError):
    """Raised when the user already has a live verification attempt."""

    def __init__(self, subject_id: str, session_key: str | None = None) -> None:
        super().__init__(f"{subject_id} already has a pending verification")
        self.subject_id = subject_id
        self.session_key = session_key


class RecordNotFoundError(VerificationError):
    """Raised when no live record (or verified mapping) matches the lookup."""


class NotAwaitingApprovalError(VerificationError):
    """Raised when approving a record that is not waiting for manual approval."""


class ProviderError(VerificationError):
    """Identity-verification provider call failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StillProcessingError(ProviderError):
    """Provider refused deletion because the session is still being processed."""


class BackendError(VerificationError):
    """Backend record store call failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthenticationError(BackendError):
    """Backend login failed."""


class PersistenceError(VerificationError):
    """Writing the ledger snapshot to disk failed."""


class InvalidRecordError(ValueError):
    """Raised when a stored ledger entry fails validation."""
