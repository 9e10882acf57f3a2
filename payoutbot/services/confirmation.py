"""Encoding of pending confirmations into Telegram callback data.

Telegram caps ``callback_data`` at 64 bytes. A confirmation that fits is
embedded inline as compact JSON (``i:{...}``); anything larger is parked in
a server-side table and referenced by a short random token (``t:<token>``).
Tokens are single use and expire with the wizard session TTL.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CALLBACK_DATA_LIMIT = 64
CONFIRM_CALLBACK_PREFIX = "cfm:"
CANCEL_CALLBACK_PREFIX = "cnl:"
INLINE_MARKER = "i:"
TOKEN_MARKER = "t:"


class ConfirmationAction(str, Enum):
    TRANSFER = "transfer"
    DEPOSIT = "deposit"


class PendingConfirmation(BaseModel):
    action: ConfirmationAction
    reference_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


class ConfirmationExpired(LookupError):
    """Raised when a token no longer maps to a stored confirmation."""


class ConfirmationCodec:
    def __init__(
        self,
        *,
        limit: int = CALLBACK_DATA_LIMIT - len(CONFIRM_CALLBACK_PREFIX),
        max_age: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.limit = limit
        self.max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stored: dict[str, tuple[PendingConfirmation, datetime]] = {}

    def encode(self, pending: PendingConfirmation) -> str:
        compact = json.dumps(
            {"a": pending.action.value, "r": pending.reference_id, "f": pending.fields},
            separators=(",", ":"),
            ensure_ascii=False,
        )
        inline = INLINE_MARKER + compact
        if len(inline.encode("utf-8")) <= self.limit:
            return inline
        token = secrets.token_urlsafe(12)
        self._stored[token] = (pending.model_copy(deep=True), self._clock())
        return TOKEN_MARKER + token

    def decode(self, body: str, *, consume: bool = True) -> PendingConfirmation:
        if body.startswith(INLINE_MARKER):
            try:
                raw = json.loads(body[len(INLINE_MARKER):])
                return PendingConfirmation(action=raw["a"], reference_id=raw["r"], fields=raw["f"])
            except (ValueError, KeyError, TypeError, ValidationError) as exc:
                raise ValueError("Malformed confirmation payload.") from exc
        if body.startswith(TOKEN_MARKER):
            token = body[len(TOKEN_MARKER):]
            entry = self._stored.pop(token, None) if consume else self._stored.get(token)
            if entry is None:
                raise ConfirmationExpired(token)
            pending, created_at = entry
            if self._clock() - created_at > self.max_age:
                self._stored.pop(token, None)
                raise ConfirmationExpired(token)
            return pending.model_copy(deep=True)
        raise ValueError("Unknown confirmation payload format.")

    def discard(self, body: str) -> None:
        if body.startswith(TOKEN_MARKER):
            self._stored.pop(body[len(TOKEN_MARKER):], None)

    def sweep_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        expired = [
            token
            for token, (_, created_at) in self._stored.items()
            if now - created_at > self.max_age
        ]
        for token in expired:
            del self._stored[token]
        if expired:
            logger.info("Dropped %d expired confirmation(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._stored)
