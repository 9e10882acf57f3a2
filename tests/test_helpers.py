from __future__ import annotations

from datetime import datetime, timezone
from unittest import TestCase

from payoutbot.schemas.journal import TransactionStatus
from payoutbot.telegram import helpers


class FormattingHelperTests(TestCase):
    def test_compute_fee_rounds_half_up(self) -> None:
        self.assertEqual(helpers.compute_fee(10000, 0.1), 1000)
        self.assertEqual(helpers.compute_fee(12345, 0.1), 1235)
        self.assertEqual(helpers.compute_fee(5, 0.1), 1)
        self.assertEqual(helpers.compute_fee(10000, 0), 0)

    def test_percentages(self) -> None:
        self.assertEqual(helpers.format_percentage(0.1), "10%")
        self.assertEqual(helpers.format_percentage(0.025), "2.5%")
        self.assertAlmostEqual(helpers.parse_percentage("2,5%"), 0.025)
        with self.assertRaises(ValueError):
            helpers.parse_percentage("abc")
        with self.assertRaises(ValueError):
            helpers.parse_percentage("150")

    def test_format_rupiah(self) -> None:
        self.assertEqual(helpers.format_rupiah(1250000), "Rp 1.250.000")
        self.assertEqual(helpers.format_rupiah("10000"), "Rp 10.000")
        self.assertEqual(helpers.format_rupiah(500), "Rp 500")
        self.assertEqual(helpers.format_rupiah(10_000_000), "Rp 10.000.000")
        self.assertEqual(helpers.format_rupiah("n/a"), "Rp n/a")

    def test_escape_markdown(self) -> None:
        self.assertEqual(helpers.escape_markdown("a_b*c`d[e"), "a\\_b\\*c\\`d\\[e")

    def test_format_timestamp_uses_jakarta_time(self) -> None:
        moment = datetime(2024, 5, 1, 1, 30, tzinfo=timezone.utc)

        self.assertEqual(helpers.format_timestamp(moment), "01/05/2024 08:30")
        self.assertEqual(helpers.format_timestamp(None), "Never")

    def test_format_uptime(self) -> None:
        self.assertEqual(helpers.format_uptime(0), "0s")
        self.assertEqual(helpers.format_uptime(90061), "1d 1h 1m 1s")
        self.assertEqual(helpers.format_uptime(3600), "1h")

    def test_status_emoji(self) -> None:
        self.assertEqual(helpers.status_emoji(TransactionStatus.SUCCESS), "✅")
        self.assertEqual(helpers.status_emoji("unknown"), "❔")


class ProviderStatusMappingTests(TestCase):
    def test_provider_words_fold_to_journal_states(self) -> None:
        self.assertEqual(TransactionStatus.from_provider("Sukses"), TransactionStatus.SUCCESS)
        self.assertEqual(TransactionStatus.from_provider("berhasil"), TransactionStatus.SUCCESS)
        self.assertEqual(TransactionStatus.from_provider("GAGAL"), TransactionStatus.FAILED)
        self.assertEqual(TransactionStatus.from_provider("cancel"), TransactionStatus.FAILED)
        self.assertEqual(TransactionStatus.from_provider("processing"), TransactionStatus.PENDING)
        self.assertEqual(TransactionStatus.from_provider(None), TransactionStatus.PENDING)
