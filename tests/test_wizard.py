from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from unittest import TestCase

from payoutbot.services.wizard import (
    AmountLimits,
    InvalidInputPolicy,
    NoActiveSession,
    StepPrompt,
    ValidationFailed,
    WizardFinalized,
    WizardKind,
    WizardStateMachine,
    parse_amount,
)
from payoutbot.telegram.helpers import format_rupiah

KEY = (528101001, 528101001)


def _limits(kind: WizardKind) -> AmountLimits:
    if kind is WizardKind.CREATE_DEPOSIT:
        return AmountLimits(10_000, 1_000_000)
    return AmountLimits(1_000, 10_000_000)


class FixedClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class WizardStateMachineTests(TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock()
        self.wizard = WizardStateMachine(_limits, format_amount=format_rupiah, clock=self.clock)

    def test_transfer_wizard_collects_every_field(self) -> None:
        prompt = self.wizard.start(KEY, WizardKind.CREATE_TRANSFER)
        self.assertIn("bank code", prompt)

        step = self.wizard.submit(KEY, "ovo")
        self.assertIsInstance(step, StepPrompt)
        self.assertEqual(step.step, 2)
        self.wizard.submit(KEY, "62895600689900")
        amount_prompt = self.wizard.submit(KEY, "Arfi")
        self.assertIn("Rp 1.000", amount_prompt.prompt)
        self.assertIn("Rp 10.000.000", amount_prompt.prompt)

        result = self.wizard.submit(KEY, "10000")

        self.assertIsInstance(result, WizardFinalized)
        self.assertEqual(result.kind, WizardKind.CREATE_TRANSFER)
        self.assertEqual(
            result.fields,
            {
                "bank_code": "ovo",
                "account_number": "62895600689900",
                "account_name": "Arfi",
                "amount": 10000,
            },
        )
        self.assertRegex(result.reference_id, r"^TRF-\d+$")
        self.assertFalse(self.wizard.has_session(KEY))

    def test_check_account_finalizes_after_two_steps(self) -> None:
        self.wizard.start(KEY, WizardKind.CHECK_ACCOUNT)
        self.wizard.submit(KEY, "  BCA ")
        result = self.wizard.submit(KEY, "1234567890")

        self.assertIsInstance(result, WizardFinalized)
        self.assertEqual(result.fields, {"bank_code": "bca", "account_number": "1234567890"})
        self.assertTrue(result.reference_id.startswith("CHK-"))

    def test_deposit_uses_deposit_bounds(self) -> None:
        self.wizard.start(KEY, WizardKind.CREATE_DEPOSIT)
        result = self.wizard.submit(KEY, "5000")

        self.assertIsInstance(result, ValidationFailed)
        self.assertIn("Rp 10.000", result.message)
        self.assertTrue(result.aborted)
        self.assertFalse(self.wizard.has_session(KEY))

    def test_deposit_amount_strips_formatting(self) -> None:
        self.wizard.start(KEY, WizardKind.CREATE_DEPOSIT)
        result = self.wizard.submit(KEY, "Rp 50.000")

        self.assertIsInstance(result, WizardFinalized)
        self.assertEqual(result.fields["amount"], 50000)
        self.assertTrue(re.fullmatch(r"DEP-\d+", result.reference_id))

    def test_amount_above_maximum_is_rejected(self) -> None:
        self.wizard.start(KEY, WizardKind.CREATE_DEPOSIT)
        result = self.wizard.submit(KEY, "2000000")

        self.assertIsInstance(result, ValidationFailed)
        self.assertIn("Maximum", result.message)

    def test_non_numeric_amount_aborts_by_default(self) -> None:
        self.wizard.start(KEY, WizardKind.CREATE_TRANSFER)
        for text in ("ovo", "62895600689900", "Arfi"):
            self.wizard.submit(KEY, text)

        result = self.wizard.submit(KEY, "ten thousand")

        self.assertIsInstance(result, ValidationFailed)
        self.assertTrue(result.aborted)
        with self.assertRaises(NoActiveSession):
            self.wizard.submit(KEY, "10000")

    def test_reprompt_policy_keeps_session_on_same_step(self) -> None:
        wizard = WizardStateMachine(
            _limits,
            invalid_input_policy=InvalidInputPolicy.REPROMPT,
            format_amount=format_rupiah,
            clock=self.clock,
        )
        wizard.start(KEY, WizardKind.CREATE_TRANSFER)
        for text in ("ovo", "62895600689900", "Arfi"):
            wizard.submit(KEY, text)

        failed = wizard.submit(KEY, "500")
        self.assertIsInstance(failed, ValidationFailed)
        self.assertFalse(failed.aborted)
        self.assertEqual(wizard.store.get(KEY).step, 4)

        result = wizard.submit(KEY, "15000")
        self.assertIsInstance(result, WizardFinalized)
        self.assertEqual(result.fields["amount"], 15000)

    def test_empty_text_is_rejected(self) -> None:
        self.wizard.start(KEY, WizardKind.CHECK_ACCOUNT)
        result = self.wizard.submit(KEY, "   ")

        self.assertIsInstance(result, ValidationFailed)
        self.assertIn("bank code", result.message)

    def test_submit_without_session_raises(self) -> None:
        with self.assertRaises(NoActiveSession):
            self.wizard.submit(KEY, "ovo")

    def test_start_replaces_existing_session(self) -> None:
        self.wizard.start(KEY, WizardKind.CREATE_TRANSFER)
        self.wizard.submit(KEY, "ovo")

        self.wizard.start(KEY, WizardKind.CREATE_DEPOSIT)

        session = self.wizard.store.get(KEY)
        self.assertEqual(session.kind, WizardKind.CREATE_DEPOSIT)
        self.assertEqual(session.step, 1)
        self.assertEqual(session.fields, {})
        self.assertEqual(len(self.wizard.store), 1)

    def test_cancel_is_idempotent(self) -> None:
        self.wizard.start(KEY, WizardKind.CHECK_ACCOUNT)

        self.assertTrue(self.wizard.cancel(KEY))
        self.assertFalse(self.wizard.cancel(KEY))
        self.assertFalse(self.wizard.has_session(KEY))

    def test_sessions_are_scoped_per_conversation(self) -> None:
        other = (528101001, -100200300)
        self.wizard.start(KEY, WizardKind.CHECK_ACCOUNT)
        self.wizard.start(other, WizardKind.CREATE_DEPOSIT)

        self.wizard.submit(KEY, "bca")

        self.assertEqual(self.wizard.store.get(KEY).step, 2)
        self.assertEqual(self.wizard.store.get(other).step, 1)

    def test_sweep_removes_only_expired_sessions(self) -> None:
        stale = (1, 1)
        self.wizard.start(stale, WizardKind.CHECK_ACCOUNT)
        self.clock.now += timedelta(minutes=20)
        self.wizard.start(KEY, WizardKind.CREATE_DEPOSIT)
        self.clock.now += timedelta(minutes=15)

        removed = self.wizard.sweep_expired()

        self.assertEqual(removed, 1)
        self.assertFalse(self.wizard.has_session(stale))
        self.assertTrue(self.wizard.has_session(KEY))
        self.assertEqual(self.wizard.sweep_expired(), 0)

    def test_sweep_honours_custom_max_age(self) -> None:
        self.wizard.start(KEY, WizardKind.CHECK_ACCOUNT)
        later = self.clock.now + timedelta(minutes=6)

        self.assertEqual(self.wizard.sweep_expired(later, max_age=timedelta(minutes=5)), 1)


class AmountHelperTests(TestCase):
    def test_parse_amount(self) -> None:
        self.assertEqual(parse_amount("10000"), 10000)
        self.assertEqual(parse_amount("Rp 1.250.000"), 1250000)
        self.assertIsNone(parse_amount("abc"))
        self.assertIsNone(parse_amount(""))

    def test_default_amount_format_is_plain_grouping(self) -> None:
        wizard = WizardStateMachine(_limits)
        wizard.start(KEY, WizardKind.CREATE_DEPOSIT)

        result = wizard.submit(KEY, "5000")

        self.assertIn("10,000", result.message)
