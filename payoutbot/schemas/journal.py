from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionKind(str, Enum):
    TRANSFER = "transfer"
    DEPOSIT = "deposit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def from_provider(cls, raw: Any) -> "TransactionStatus":
        """Fold the provider's free-form status words onto the journal's three states."""
        value = str(raw or "").strip().lower()
        if value in {"success", "sukses", "berhasil", "done", "completed"}:
            return cls.SUCCESS
        if value in {"failed", "gagal", "cancel", "canceled", "cancelled", "error", "refund"}:
            return cls.FAILED
        return cls.PENDING


class TransactionRecord(BaseModel):
    """A transfer or deposit as stored in the journal."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()))
    reference_id: str = Field(validation_alias=AliasChoices("reference_id", "reff_id"))
    user_id: int
    kind: TransactionKind = Field(
        default=TransactionKind.TRANSFER, validation_alias=AliasChoices("kind", "type")
    )
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    amount: int = Field(validation_alias=AliasChoices("amount", "nominal"), ge=0)
    fee: int = 0
    total: Optional[int] = None
    status: TransactionStatus = TransactionStatus.PENDING
    method: Optional[str] = None
    note: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _fold_status(cls, data: Any) -> Any:
        """Map unknown status words onto the three journal states, keeping the raw word."""
        if not isinstance(data, dict):
            return data
        raw = data.get("status")
        if raw is None or isinstance(raw, TransactionStatus):
            return data
        word = str(raw).strip().lower()
        if word in {status.value for status in TransactionStatus}:
            return {**data, "status": word}
        metadata = dict(data.get("metadata") or {})
        metadata.setdefault("provider_status", raw)
        return {**data, "status": TransactionStatus.from_provider(raw), "metadata": metadata}

    @field_validator("id", "reference_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("total", mode="after")
    @classmethod
    def _non_negative_total(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("total cannot be negative")
        return value

    @property
    def effective_total(self) -> int:
        return self.total if self.total is not None else self.amount + self.fee


class UserRecord(BaseModel):
    id: int
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    language_code: str = "id"
    created_at: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)


class JournalSettings(BaseModel):
    """Runtime-editable business settings persisted with the journal."""

    min_deposit: int = Field(default=1000, gt=0)
    max_deposit: int = Field(default=10_000_000, gt=0)
    min_transfer: int = Field(default=1000, gt=0)
    max_transfer: int = Field(default=10_000_000, gt=0)
    fee_percentage: float = Field(default=0.1, ge=0, le=1)
    notification_enabled: bool = True


class SystemCounters(BaseModel):
    total_requests: int = 0
    failed_requests: int = 0
    successful_transfers: int = 0
    successful_deposits: int = 0
    total_volume: int = 0
    last_startup: Optional[datetime] = None
    last_backup: Optional[datetime] = None


class JournalDocument(BaseModel):
    """The whole persisted journal file. Missing sections fall back to defaults."""

    model_config = ConfigDict(extra="ignore")

    users: list[UserRecord] = Field(default_factory=list)
    transactions: list[TransactionRecord] = Field(default_factory=list)
    deposits: list[TransactionRecord] = Field(default_factory=list)
    settings: JournalSettings = Field(default_factory=JournalSettings)
    system: SystemCounters = Field(default_factory=SystemCounters)

    @field_validator("settings", "system", mode="before")
    @classmethod
    def _null_section(cls, value: Any) -> Any:
        return {} if value is None else value


class JournalStats(SystemCounters):
    total_users: int = 0
    total_transactions: int = 0
    total_deposits: int = 0
    pending_transactions: int = 0
    pending_deposits: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return (1 - self.failed_requests / self.total_requests) * 100
