from .confirmation import (
    ConfirmationAction,
    ConfirmationCodec,
    ConfirmationExpired,
    PendingConfirmation,
)
from .journal import JournalNotLoaded, TransactionJournal
from .provider import (
    InvalidRequestError,
    MalformedResponseError,
    PaymentApiClient,
    classify_error,
    get_error_message,
    is_retryable,
)
from .wizard import (
    AmountLimits,
    InvalidInputPolicy,
    NoActiveSession,
    SessionStore,
    StepPrompt,
    ValidationFailed,
    WizardFinalized,
    WizardKind,
    WizardSession,
    WizardStateMachine,
)

__all__ = [
    "ConfirmationAction",
    "ConfirmationCodec",
    "ConfirmationExpired",
    "PendingConfirmation",
    "JournalNotLoaded",
    "TransactionJournal",
    "InvalidRequestError",
    "MalformedResponseError",
    "PaymentApiClient",
    "classify_error",
    "get_error_message",
    "is_retryable",
    "AmountLimits",
    "InvalidInputPolicy",
    "NoActiveSession",
    "SessionStore",
    "StepPrompt",
    "ValidationFailed",
    "WizardFinalized",
    "WizardKind",
    "WizardSession",
    "WizardStateMachine",
]
