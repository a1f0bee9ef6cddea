"""Identity-verification lifecycle for the Discord gateway bot.

This package holds the ledger, the lifecycle coordinator and the provider
callback handling; ``bots.verification`` wires them to Discord.
"""

from .admission import DailyLimitGate
from .backend_api import BackendClient
from .callbacks import CallbackOutcome, CallbackProcessor
from .coordinator import VerificationCoordinator
from .errors import (
    AlreadyPendingError,
    AlreadyVerifiedError,
    AuthenticationError,
    BackendError,
    InvalidRecordError,
    NotAwaitingApprovalError,
    PersistenceError,
    ProviderError,
    RecordNotFoundError,
    StillProcessingError,
    VerificationError,
)
from .ledger import VerificationLedger
from .models import (
    Approval,
    Disposition,
    ProviderSession,
    ProviderStatus,
    StatusView,
    VerificationRecord,
    VerifiedMapping,
)
from .provider_api import IdenfyClient
from .reconciler import DeletionReconciler

__all__ = [
    "DailyLimitGate",
    "BackendClient",
    "CallbackOutcome",
    "CallbackProcessor",
    "VerificationCoordinator",
    "AlreadyPendingError",
    "AlreadyVerifiedError",
    "AuthenticationError",
    "BackendError",
    "InvalidRecordError",
    "NotAwaitingApprovalError",
    "PersistenceError",
    "ProviderError",
    "RecordNotFoundError",
    "StillProcessingError",
    "VerificationError",
    "VerificationLedger",
    "Approval",
    "Disposition",
    "ProviderSession",
    "ProviderStatus",
    "StatusView",
    "VerificationRecord",
    "VerifiedMapping",
    "IdenfyClient",
    "DeletionReconciler",
]
