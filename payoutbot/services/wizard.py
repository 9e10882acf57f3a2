"""Step-indexed wizards that collect one field per chat turn.

A session is keyed by ``(user_id, chat_id)``. Each reply is validated against
the current step; the last valid reply destroys the session and yields a
``WizardFinalized`` carrying every collected field and a reference id.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)

ConversationKey = tuple[int, int]

DEFAULT_SESSION_TTL = timedelta(minutes=30)
_NON_DIGITS = re.compile(r"[^0-9]")


class WizardKind(str, Enum):
    CHECK_ACCOUNT = "check_account"
    CREATE_TRANSFER = "create_transfer"
    CREATE_DEPOSIT = "create_deposit"


class InvalidInputPolicy(str, Enum):
    ABORT = "abort"
    REPROMPT = "reprompt"


class NoActiveSession(LookupError):
    """Raised when a reply arrives for a conversation without a wizard."""


@dataclass(frozen=True)
class AmountLimits:
    minimum: int
    maximum: int


@dataclass(frozen=True)
class WizardStep:
    field: str
    prompt: str
    is_amount: bool = False


WIZARD_STEPS: dict[WizardKind, tuple[WizardStep, ...]] = {
    WizardKind.CHECK_ACCOUNT: (
        WizardStep("bank_code", "Enter the bank code (e.g. `bca`, `mandiri`, `ovo`):"),
        WizardStep("account_number", "Enter the destination account number:"),
    ),
    WizardKind.CREATE_TRANSFER: (
        WizardStep("bank_code", "Enter the destination bank code (e.g. `bca`, `mandiri`, `ovo`):"),
        WizardStep("account_number", "Enter the destination account number:"),
        WizardStep("account_name", "Enter the account holder name:"),
        WizardStep("amount", "Enter the transfer amount (min {minimum}, max {maximum}):", True),
    ),
    WizardKind.CREATE_DEPOSIT: (
        WizardStep("amount", "Enter the deposit amount (min {minimum}, max {maximum}):", True),
    ),
}

REFERENCE_PREFIXES: dict[WizardKind, str] = {
    WizardKind.CHECK_ACCOUNT: "CHK",
    WizardKind.CREATE_TRANSFER: "TRF",
    WizardKind.CREATE_DEPOSIT: "DEP",
}


@dataclass
class WizardSession:
    kind: WizardKind
    step: int = 1
    fields: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def current_step(self) -> WizardStep:
        return WIZARD_STEPS[self.kind][self.step - 1]

    @property
    def is_last_step(self) -> bool:
        return self.step >= len(WIZARD_STEPS[self.kind])


@dataclass(frozen=True)
class StepPrompt:
    prompt: str
    step: int


@dataclass(frozen=True)
class ValidationFailed:
    message: str
    aborted: bool


@dataclass(frozen=True)
class WizardFinalized:
    kind: WizardKind
    fields: dict[str, Any]
    reference_id: str


StepResult = Union[StepPrompt, ValidationFailed, WizardFinalized]


class SessionStore:
    """In-memory wizard sessions, one per conversation key."""

    def __init__(self) -> None:
        self._sessions: dict[ConversationKey, WizardSession] = {}

    def get(self, key: ConversationKey) -> WizardSession | None:
        return self._sessions.get(key)

    def put(self, key: ConversationKey, session: WizardSession) -> None:
        self._sessions[key] = session

    def pop(self, key: ConversationKey) -> WizardSession | None:
        return self._sessions.pop(key, None)

    def items(self) -> Iterator[tuple[ConversationKey, WizardSession]]:
        return iter(list(self._sessions.items()))

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def parse_amount(raw: str) -> int | None:
    """Strip everything but digits and parse; ``None`` when nothing numeric is left."""
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        return None
    return int(digits)


class WizardStateMachine:
    def __init__(
        self,
        amount_limits: Callable[[WizardKind], AmountLimits],
        *,
        store: SessionStore | None = None,
        invalid_input_policy: InvalidInputPolicy = InvalidInputPolicy.ABORT,
        format_amount: Callable[[int], str] = "{:,}".format,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.amount_limits = amount_limits
        self.format_amount = format_amount
        self.store = store or SessionStore()
        self.invalid_input_policy = invalid_input_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def has_session(self, key: ConversationKey) -> bool:
        return key in self.store

    def start(self, key: ConversationKey, kind: WizardKind) -> str:
        session = WizardSession(kind=kind, created_at=self._clock())
        if self.store.get(key) is not None:
            logger.debug("Replacing stale wizard session for %s", key)
        self.store.put(key, session)
        return self._render_prompt(session)

    def submit(self, key: ConversationKey, raw_text: str) -> StepResult:
        session = self.store.get(key)
        if session is None:
            raise NoActiveSession(key)

        step = session.current_step
        value, error = self._validate(session.kind, step, raw_text)
        if error is not None:
            aborted = self.invalid_input_policy is InvalidInputPolicy.ABORT
            if aborted:
                self.store.pop(key)
            return ValidationFailed(message=error, aborted=aborted)

        session.fields[step.field] = value
        if not session.is_last_step:
            session.step += 1
            return StepPrompt(prompt=self._render_prompt(session), step=session.step)

        self.store.pop(key)
        return WizardFinalized(
            kind=session.kind,
            fields=dict(session.fields),
            reference_id=self.generate_reference_id(session.kind),
        )

    def cancel(self, key: ConversationKey) -> bool:
        return self.store.pop(key) is not None

    def sweep_expired(
        self,
        now: datetime | None = None,
        max_age: timedelta = DEFAULT_SESSION_TTL,
    ) -> int:
        now = now or self._clock()
        removed = 0
        for key, session in self.store.items():
            if now - session.created_at > max_age:
                self.store.pop(key)
                removed += 1
        if removed:
            logger.info("Swept %d expired wizard session(s)", removed)
        return removed

    def generate_reference_id(self, kind: WizardKind) -> str:
        return f"{REFERENCE_PREFIXES[kind]}-{int(time.time() * 1000)}"

    def _render_prompt(self, session: WizardSession) -> str:
        step = session.current_step
        if step.is_amount:
            limits = self.amount_limits(session.kind)
            return step.prompt.format(
                minimum=self.format_amount(limits.minimum),
                maximum=self.format_amount(limits.maximum),
            )
        return step.prompt

    def _validate(
        self, kind: WizardKind, step: WizardStep, raw_text: str
    ) -> tuple[Any, str | None]:
        text = (raw_text or "").strip()
        if step.is_amount:
            amount = parse_amount(text)
            limits = self.amount_limits(kind)
            if amount is None or amount <= 0:
                return None, "Invalid amount. Send digits only, e.g. 10000."
            if amount < limits.minimum:
                return None, f"Amount too small. Minimum is {self.format_amount(limits.minimum)}."
            if amount > limits.maximum:
                return None, f"Amount too large. Maximum is {self.format_amount(limits.maximum)}."
            return amount, None
        if not text:
            return None, f"The {step.field.replace('_', ' ')} cannot be empty."
        if step.field == "bank_code":
            return text.lower(), None
        return text, None
