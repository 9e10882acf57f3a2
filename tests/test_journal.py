from __future__ import annotations

import asyncio
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import IsolatedAsyncioTestCase

from payoutbot.schemas.journal import (
    JournalSettings,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from payoutbot.services.journal import JournalNotLoaded, TransactionJournal


class TickingClock:
    """Advances one second per call so backup names are strictly ordered."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _transfer(**overrides) -> TransactionRecord:
    values = {
        "reference_id": "TRF-1714550400000",
        "user_id": 528101001,
        "kind": TransactionKind.TRANSFER,
        "bank_code": "ovo",
        "account_number": "62895600689900",
        "account_name": "Arfi",
        "amount": 10000,
        "fee": 2500,
    }
    values.update(overrides)
    return TransactionRecord(**values)


class TransactionJournalTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.path = self.root / "database.json"
        self.backups = self.root / "backups"
        self.clock = TickingClock()
        self.journal = self._journal()
        await self.journal.load()

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _journal(self, **kwargs) -> TransactionJournal:
        kwargs.setdefault("backup_retention", 3)
        return TransactionJournal(self.path, self.backups, clock=self.clock, **kwargs)

    def _read_file(self) -> dict:
        return json.loads(self.path.read_text(encoding="utf-8"))

    async def test_load_creates_file_with_seeded_settings(self) -> None:
        path = self.root / "fresh" / "database.json"
        journal = TransactionJournal(
            path, defaults=JournalSettings(min_deposit=5000, fee_percentage=0.05)
        )

        self.assertTrue(await journal.load())

        self.assertTrue(path.exists())
        stored = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(stored["settings"]["min_deposit"], 5000)
        self.assertEqual(stored["settings"]["fee_percentage"], 0.05)
        self.assertEqual(stored["transactions"], [])
        self.assertIsNotNone(journal.stats().last_startup)

    async def test_use_before_load_raises(self) -> None:
        journal = TransactionJournal(self.root / "other.json")

        with self.assertRaises(JournalNotLoaded):
            journal.find("anything")

    async def test_append_persists_and_fills_total(self) -> None:
        record = await self.journal.append(_transfer())

        self.assertEqual(record.total, 12500)
        stored = self._read_file()["transactions"]
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0]["reference_id"], "TRF-1714550400000")
        self.assertEqual(stored[0]["total"], 12500)

    async def test_append_accepts_mappings(self) -> None:
        record = await self.journal.append(
            {"reff_id": "DEP-1", "user_id": 1, "type": "deposit", "nominal": 50000, "fee": 5000}
        )

        self.assertEqual(record.kind, TransactionKind.DEPOSIT)
        self.assertEqual(self.journal.document.deposits, [record])
        self.assertEqual(record.total, 55000)

    async def test_append_is_idempotent_by_id(self) -> None:
        first = await self.journal.append(_transfer(id="tx-1", status=TransactionStatus.SUCCESS))
        second = await self.journal.append(_transfer(id="tx-1", status=TransactionStatus.SUCCESS))

        self.assertIs(first, second)
        self.assertEqual(len(self.journal.document.transactions), 1)
        stats = self.journal.stats()
        self.assertEqual(stats.successful_transfers, 1)
        self.assertEqual(stats.total_volume, 10000)

    async def test_append_upserts_by_reference_id(self) -> None:
        await self.journal.append(_transfer(id="tx-1"))
        updated = await self.journal.append(
            _transfer(id="tx-2", status=TransactionStatus.SUCCESS, metadata={"provider_id": "99"})
        )

        self.assertEqual(updated.id, "tx-1")
        self.assertEqual(updated.status, TransactionStatus.SUCCESS)
        self.assertEqual(updated.metadata, {"provider_id": "99"})
        self.assertEqual(self.journal.stats().successful_transfers, 1)

    async def test_update_status_counts_success_once(self) -> None:
        await self.journal.append(_transfer(id="tx-1"))

        await self.journal.update_status("tx-1", TransactionStatus.SUCCESS)
        await self.journal.update_status("tx-1", "success")

        stats = self.journal.stats()
        self.assertEqual(stats.successful_transfers, 1)
        self.assertEqual(stats.total_volume, 10000)
        self.assertEqual(stats.pending_transactions, 0)

    async def test_update_status_counts_deposits_separately(self) -> None:
        await self.journal.append(
            TransactionRecord(
                reference_id="DEP-1", user_id=1, kind=TransactionKind.DEPOSIT, amount=50000
            )
        )

        record = await self.journal.update_status(
            "DEP-1", TransactionStatus.SUCCESS, metadata={"verified_by": 1}
        )

        self.assertEqual(record.metadata, {"verified_by": 1})
        stats = self.journal.stats()
        self.assertEqual(stats.successful_deposits, 1)
        self.assertEqual(stats.successful_transfers, 0)
        self.assertEqual(stats.total_volume, 50000)

    async def test_update_status_unknown_record(self) -> None:
        self.assertIsNone(await self.journal.update_status("missing", TransactionStatus.FAILED))

    async def test_duplicate_reference_ids_use_first_match(self) -> None:
        first = _transfer(id="tx-1")
        second = _transfer(id="tx-2")
        self.journal.document.transactions.extend([first, second])

        with self.assertLogs("payoutbot.services.journal", level="WARNING") as captured:
            record = await self.journal.update_status(first.reference_id, TransactionStatus.FAILED)

        self.assertIs(record, first)
        self.assertEqual(second.status, TransactionStatus.PENDING)
        self.assertTrue(any("Data integrity" in line for line in captured.output))

    async def test_list_for_user_newest_first(self) -> None:
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        for index in range(4):
            await self.journal.append(
                _transfer(reference_id=f"TRF-{index}", created_at=base + timedelta(hours=index))
            )
        await self.journal.append(
            TransactionRecord(
                reference_id="DEP-1",
                user_id=528101001,
                kind=TransactionKind.DEPOSIT,
                amount=20000,
                created_at=base + timedelta(hours=10),
            )
        )
        await self.journal.append(_transfer(reference_id="TRF-other", user_id=42))

        everything = self.journal.list_for_user(528101001, limit=3)
        transfers = self.journal.list_for_user(528101001, kind=TransactionKind.TRANSFER)

        self.assertEqual([record.reference_id for record in everything], ["DEP-1", "TRF-3", "TRF-2"])
        self.assertEqual(len(transfers), 4)
        self.assertEqual(transfers[-1].reference_id, "TRF-0")

    async def test_request_counters_and_success_rate(self) -> None:
        for ok in (True, True, True, False):
            self.journal.record_request(ok)

        stats = self.journal.stats()

        self.assertEqual(stats.total_requests, 4)
        self.assertEqual(stats.failed_requests, 1)
        self.assertAlmostEqual(stats.success_rate, 75.0)

    async def test_concurrent_appends_are_all_persisted(self) -> None:
        await asyncio.gather(
            *(self.journal.append(_transfer(reference_id=f"TRF-{index}")) for index in range(10))
        )

        stored = self._read_file()["transactions"]
        self.assertEqual(len(stored), 10)

    async def test_backups_are_pruned_to_retention(self) -> None:
        for index in range(6):
            await self.journal.append(_transfer(reference_id=f"TRF-{index}"))

        backups = self.journal.list_backups()
        self.assertEqual(len(backups), 3)
        self.assertEqual(backups, sorted(backups, reverse=True))
        self.assertIsNotNone(self.journal.stats().last_backup)

    async def test_create_backup_writes_snapshot(self) -> None:
        await self.journal.append(_transfer())

        target = await self.journal.create_backup()

        self.assertTrue(target.exists())
        snapshot = json.loads(target.read_text(encoding="utf-8"))
        self.assertEqual(len(snapshot["transactions"]), 1)
        self.assertEqual(self.journal.list_backups()[0], target.name)

    async def test_corrupted_file_recovers_from_newest_backup(self) -> None:
        await self.journal.append(_transfer())
        await self.journal.save()
        self.path.write_text("{not json", encoding="utf-8")

        journal = self._journal()
        await journal.load()

        self.assertIsNotNone(journal.find("TRF-1714550400000"))

    async def test_corrupted_file_without_backups_starts_empty(self) -> None:
        path = self.root / "broken" / "database.json"
        path.parent.mkdir(parents=True)
        path.write_text("[]", encoding="utf-8")
        journal = TransactionJournal(path, self.root / "broken" / "backups")

        self.assertTrue(await journal.load())

        self.assertEqual(journal.document.transactions, [])

    async def test_loads_legacy_field_names(self) -> None:
        path = self.root / "legacy.json"
        path.write_text(
            json.dumps(
                {
                    "transactions": [
                        {
                            "id": 1700000000000,
                            "reff_id": "TRF-1700000000000",
                            "user_id": 528101001,
                            "type": "transfer",
                            "nominal": 10000,
                            "status": "success",
                        }
                    ],
                    "settings": None,
                }
            ),
            encoding="utf-8",
        )
        journal = TransactionJournal(path, self.root / "legacy-backups")

        await journal.load()

        record = journal.find("TRF-1700000000000")
        self.assertEqual(record.id, "1700000000000")
        self.assertEqual(record.amount, 10000)
        self.assertEqual(record.effective_total, 10000)
        self.assertEqual(journal.settings, JournalSettings())

    async def test_restore_backup(self) -> None:
        await self.journal.append(_transfer())
        snapshot = await self.journal.create_backup()
        await self.journal.append(_transfer(reference_id="TRF-later"))

        self.assertTrue(await self.journal.restore_backup(snapshot.name))

        self.assertIsNone(self.journal.find("TRF-later"))
        self.assertFalse(await self.journal.restore_backup("../database.json"))

    async def test_update_settings_validates_bounds(self) -> None:
        settings = await self.journal.update_settings(min_deposit=2000)
        self.assertEqual(settings.min_deposit, 2000)
        self.assertEqual(self._read_file()["settings"]["min_deposit"], 2000)

        with self.assertRaises(ValueError):
            await self.journal.update_settings(min_deposit=settings.max_deposit + 1)
        with self.assertRaises(ValueError):
            await self.journal.update_settings(fee_percentage=2)

    async def test_upsert_user_tracks_activity(self) -> None:
        user = await self.journal.upsert_user(528101001, username="arfi", first_name="Arfi")
        again = await self.journal.upsert_user(528101001, username="arfi_new")

        self.assertIs(user, again)
        self.assertEqual(again.username, "arfi_new")
        self.assertEqual(again.first_name, "Arfi")
        self.assertEqual(self.journal.stats().total_users, 1)

    async def test_unknown_status_words_are_folded_on_load(self) -> None:
        path = self.root / "provider-status.json"
        records = [
            {
                "id": str(index),
                "reff_id": f"TRF-{index}",
                "user_id": 528101001,
                "nominal": 10000,
                "status": "success",
            }
            for index in range(50)
        ]
        records.append(
            {
                "id": "50",
                "reff_id": "TRF-50",
                "user_id": 528101001,
                "nominal": 10000,
                "status": "processing",
            }
        )
        records.append(
            {"id": "51", "reff_id": "TRF-51", "user_id": 1, "nominal": 5000, "status": "Sukses"}
        )
        path.write_text(json.dumps({"transactions": records}), encoding="utf-8")
        journal = TransactionJournal(
            path, self.root / "provider-status-backups", backup_retention=3, clock=self.clock
        )

        await journal.load()
        for _ in range(8):
            await journal.save()

        self.assertEqual(len(journal.document.transactions), 52)
        processing = journal.find("TRF-50")
        self.assertEqual(processing.status, TransactionStatus.PENDING)
        self.assertEqual(processing.metadata["provider_status"], "processing")
        self.assertEqual(journal.find("TRF-51").status, TransactionStatus.SUCCESS)
        self.assertEqual(journal.find("TRF-0").metadata, {})
        stored = json.loads(path.read_text(encoding="utf-8"))["transactions"]
        self.assertEqual(len(stored), 52)

    async def test_unreadable_journal_is_preserved_before_saving(self) -> None:
        folder = self.root / "quarantine"
        folder.mkdir()
        path = folder / "database.json"
        path.write_text('{"transactions": [{"broken": true}]}', encoding="utf-8")
        journal = TransactionJournal(path, folder / "backups", backup_retention=2, clock=self.clock)

        await journal.load()
        for _ in range(5):
            await journal.save()

        preserved = list(folder.glob("database.corrupt-*.json"))
        self.assertEqual(len(preserved), 1)
        self.assertEqual(
            preserved[0].read_text(encoding="utf-8"), '{"transactions": [{"broken": true}]}'
        )
        self.assertEqual(journal.document.transactions, [])

    async def test_backups_taken_within_one_tick_keep_the_newest(self) -> None:
        moment = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
        folder = self.root / "same-tick"
        journal = TransactionJournal(
            folder / "database.json", folder / "backups", backup_retention=3, clock=lambda: moment
        )
        await journal.load()

        for index in range(5):
            await journal.append(_transfer(reference_id=f"TRF-{index}"))

        backups = journal.list_backups()
        self.assertEqual(
            backups,
            [
                "backup-20240501T080000000000-004.json",
                "backup-20240501T080000000000-003.json",
                "backup-20240501T080000000000-002.json",
            ],
        )
        newest = json.loads((folder / "backups" / backups[0]).read_text(encoding="utf-8"))
        self.assertEqual(len(newest["transactions"]), 4)
