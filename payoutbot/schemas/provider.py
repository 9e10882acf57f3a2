from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProviderErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    UNKNOWN = "unknown"


class ProviderEnvelope(BaseModel):
    """Common wrapper returned by every provider endpoint."""

    model_config = ConfigDict(extra="allow")

    status: bool
    message: Optional[str] = None
    data: Any = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> bool:
        """The provider sends booleans, but older endpoints answer with "true"/"false" strings."""
        if isinstance(value, str):
            return value.strip().lower() in {"true", "1", "success"}
        if value is None:
            raise ValueError("status flag is missing")
        return bool(value)


class PayoutChannel(BaseModel):
    """A bank or e-wallet the provider can pay out to."""

    model_config = ConfigDict(extra="allow")

    bank_code: str
    bank_name: str
    type: str = Field(default="bank")


class AccountCheck(BaseModel):
    model_config = ConfigDict(extra="allow")

    nama_pemilik: Optional[str] = None
    status: Optional[str] = None
    bank_code: Optional[str] = None
    account_number: Optional[str] = None


class TransferData(BaseModel):
    """Transfer object returned by the create and status endpoints."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    reff_id: Optional[str] = None
    name: Optional[str] = None
    nomor_tujuan: Optional[str] = None
    bank_code: Optional[str] = None
    nominal: Optional[int] = None
    fee: Optional[int] = 0
    total: Optional[int] = None
    status: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("id", "reff_id", "nomor_tujuan", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)

    @field_validator("nominal", "fee", "total", mode="before")
    @classmethod
    def _coerce_money(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return int(float(value))
        return value


class ProviderSuccess(BaseModel):
    success: Literal[True] = True
    data: Any = None
    message: str = "Success"


class ProviderFailure(BaseModel):
    success: Literal[False] = False
    data: None = None
    message: str
    error: Optional[ProviderErrorKind] = None


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class ConnectionStatus(BaseModel):
    connected: bool
    message: str
    channels: list[PayoutChannel] = Field(default_factory=list)
