from .journal import (
    JournalDocument,
    JournalSettings,
    JournalStats,
    SystemCounters,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    UserRecord,
)
from .provider import (
    AccountCheck,
    ConnectionStatus,
    PayoutChannel,
    ProviderEnvelope,
    ProviderErrorKind,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
    TransferData,
)

__all__ = [
    "JournalDocument",
    "JournalSettings",
    "JournalStats",
    "SystemCounters",
    "TransactionKind",
    "TransactionRecord",
    "TransactionStatus",
    "UserRecord",
    "AccountCheck",
    "ConnectionStatus",
    "PayoutChannel",
    "ProviderEnvelope",
    "ProviderErrorKind",
    "ProviderFailure",
    "ProviderResult",
    "ProviderSuccess",
    "TransferData",
]
