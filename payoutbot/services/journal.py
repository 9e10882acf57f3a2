from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import anyio
from pydantic import ValidationError

from ..schemas.journal import (
    JournalDocument,
    JournalSettings,
    JournalStats,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    UserRecord,
)

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup-"
BACKUP_SUFFIX = ".json"


class JournalNotLoaded(RuntimeError):
    """Raised when the journal is used before ``load()``."""


class TransactionJournal:
    """Append-only store of transfers and deposits persisted as one JSON document.

    All mutations happen synchronously on the in-memory document; only the
    write to disk is awaited. Writes are serialised by a FIFO lock, each one
    snapshots the previous file into the backup directory and then replaces
    the journal file atomically.
    """

    def __init__(
        self,
        path: Path,
        backup_dir: Path | None = None,
        *,
        backup_retention: int = 7,
        defaults: JournalSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.path.parent / "backups"
        self.backup_retention = backup_retention
        self.defaults = defaults or JournalSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._document: JournalDocument | None = None
        self._save_lock = asyncio.Lock()

    @property
    def document(self) -> JournalDocument:
        if self._document is None:
            raise JournalNotLoaded("Journal used before load()")
        return self._document

    @property
    def settings(self) -> JournalSettings:
        return self.document.settings

    @property
    def is_loaded(self) -> bool:
        return self._document is not None

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    async def load(self) -> bool:
        """Read the journal file, falling back to the newest backup, then to defaults."""
        await anyio.to_thread.run_sync(self._ensure_dirs)
        if not self.path.exists():
            self._document = self._default_document()
            self._document.system.last_startup = self._clock()
            logger.info("Journal %s not found; creating a new one", self.path)
            return await self.save()

        try:
            raw = await anyio.to_thread.run_sync(self.path.read_text, "utf-8")
            document = JournalDocument.model_validate_json(raw)
        except (OSError, ValueError, ValidationError):
            logger.exception("Journal %s is unreadable; trying the newest backup", self.path)
            await self._quarantine()
            document = await self._load_newest_backup()
            if document is None:
                logger.error("No usable backup found; starting from an empty journal")
                document = self._default_document()

        document.system.last_startup = self._clock()
        self._document = document
        logger.info(
            "Journal loaded: %d users, %d transfers, %d deposits",
            len(document.users),
            len(document.transactions),
            len(document.deposits),
        )
        return True

    def _default_document(self) -> JournalDocument:
        return JournalDocument(settings=self.defaults.model_copy())

    async def _quarantine(self) -> Path | None:
        """Copy an unreadable journal aside so later saves cannot rotate it away."""
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        target = self.path.with_name(f"{self.path.stem}.corrupt-{stamp}{self.path.suffix}")
        try:
            await anyio.to_thread.run_sync(shutil.copy2, self.path, target)
        except OSError:
            logger.exception("Could not preserve unreadable journal %s", self.path)
            return None
        logger.warning("Unreadable journal preserved as %s", target)
        return target

    def _ensure_dirs(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    async def _load_newest_backup(self) -> JournalDocument | None:
        for name in self.list_backups():
            try:
                raw = await anyio.to_thread.run_sync((self.backup_dir / name).read_text, "utf-8")
                document = JournalDocument.model_validate_json(raw)
            except (OSError, ValueError, ValidationError):
                logger.warning("Backup %s is unreadable; skipping", name)
                continue
            logger.warning("Recovered journal from backup %s", name)
            return document
        return None

    async def save(self) -> bool:
        """Persist the whole document. Concurrent callers queue in FIFO order."""
        document = self.document
        async with self._save_lock:
            payload = document.model_dump_json(indent=2)
            try:
                backup = await anyio.to_thread.run_sync(self._snapshot_and_write, payload)
            except OSError:
                logger.exception("Failed to save journal %s", self.path)
                return False
            if backup is not None:
                document.system.last_backup = self._clock()
            logger.debug("Journal saved to %s", self.path)
            return True

    def _snapshot_and_write(self, payload: str) -> Optional[Path]:
        self._ensure_dirs()
        backup = None
        if self.path.exists():
            backup = self._backup_path()
            shutil.copy2(self.path, backup)
            self._prune_backups()
        fd, tmp_name = tempfile.mkstemp(prefix=".journal-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        return backup

    def _backup_path(self) -> Path:
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        counter = 0
        while True:
            candidate = self.backup_dir / f"{BACKUP_PREFIX}{stamp}-{counter:03d}{BACKUP_SUFFIX}"
            if not candidate.exists():
                return candidate
            counter += 1

    def _prune_backups(self) -> None:
        for name in self.list_backups()[self.backup_retention:]:
            with contextlib.suppress(OSError):
                (self.backup_dir / name).unlink()

    def list_backups(self) -> list[str]:
        """Backup file names, newest first."""
        if not self.backup_dir.exists():
            return []
        names = [
            entry.name
            for entry in self.backup_dir.iterdir()
            if entry.name.startswith(BACKUP_PREFIX) and entry.name.endswith(BACKUP_SUFFIX)
        ]
        return sorted(names, reverse=True)

    async def create_backup(self) -> Path | None:
        """Write a snapshot of the in-memory document without touching the journal file."""
        payload = self.document.model_dump_json(indent=2)

        def _write() -> Path:
            self._ensure_dirs()
            target = self._backup_path()
            target.write_text(payload, encoding="utf-8")
            self._prune_backups()
            return target

        async with self._save_lock:
            try:
                target = await anyio.to_thread.run_sync(_write)
            except OSError:
                logger.exception("Failed to create journal backup")
                return None
        self.document.system.last_backup = self._clock()
        logger.info("Journal backup written to %s", target)
        return target

    async def restore_backup(self, name: str) -> bool:
        if Path(name).name != name or name not in self.list_backups():
            logger.warning("Refusing to restore unknown backup %r", name)
            return False
        try:
            raw = await anyio.to_thread.run_sync((self.backup_dir / name).read_text, "utf-8")
            document = JournalDocument.model_validate_json(raw)
        except (OSError, ValueError, ValidationError):
            logger.exception("Backup %s could not be restored", name)
            return False
        self._document = document
        logger.warning("Journal restored from backup %s", name)
        return await self.save()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _collection(self, kind: TransactionKind) -> list[TransactionRecord]:
        if kind is TransactionKind.DEPOSIT:
            return self.document.deposits
        return self.document.transactions

    def find(self, id_or_reference: str) -> TransactionRecord | None:
        key = str(id_or_reference)
        matches = [
            record
            for record in (*self.document.transactions, *self.document.deposits)
            if record.id == key or record.reference_id == key
        ]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "Data integrity: %d journal records share id/reference %s; using the first",
                len(matches),
                key,
            )
        return matches[0]

    def _count_success(self, record: TransactionRecord) -> None:
        system = self.document.system
        if record.kind is TransactionKind.DEPOSIT:
            system.successful_deposits += 1
        else:
            system.successful_transfers += 1
        system.total_volume += record.amount

    async def append(self, record: TransactionRecord | Mapping[str, Any]) -> TransactionRecord:
        """Store a record, or update the existing one with the same id or reference id."""
        if not isinstance(record, TransactionRecord):
            record = TransactionRecord.model_validate(dict(record))

        existing = self.find(record.id)
        if existing is None:
            existing = self.find(record.reference_id)
        now = self._clock()

        if existing is None:
            record.updated_at = now
            if record.total is None:
                record.total = record.amount + record.fee
            self._collection(record.kind).append(record)
            if record.status is TransactionStatus.SUCCESS:
                self._count_success(record)
            stored = record
            logger.info(
                "Journal %s %s added (%s, amount=%d)",
                record.kind.value,
                record.reference_id,
                record.status.value,
                record.amount,
            )
        else:
            previous = existing.status
            updates = record.model_dump(exclude={"id", "created_at", "kind"}, exclude_unset=True)
            metadata = updates.pop("metadata", None)
            for name, value in updates.items():
                setattr(existing, name, value)
            if metadata:
                existing.metadata = {**existing.metadata, **metadata}
            existing.updated_at = now
            if previous is not TransactionStatus.SUCCESS and existing.status is TransactionStatus.SUCCESS:
                self._count_success(existing)
            stored = existing
            logger.info("Journal record %s upserted", existing.reference_id)

        await self.save()
        return stored

    async def update_status(
        self,
        id_or_reference: str,
        status: TransactionStatus | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TransactionRecord | None:
        record = self.find(id_or_reference)
        if record is None:
            logger.info("No journal record for %s; status update skipped", id_or_reference)
            return None
        status = TransactionStatus(status)
        previous = record.status
        record.status = status
        record.updated_at = self._clock()
        if metadata:
            record.metadata = {**record.metadata, **dict(metadata)}
        if previous is not TransactionStatus.SUCCESS and status is TransactionStatus.SUCCESS:
            self._count_success(record)
        logger.info(
            "Journal %s %s: %s -> %s",
            record.kind.value,
            record.reference_id,
            previous.value,
            status.value,
        )
        await self.save()
        return record

    def list_for_user(
        self,
        user_id: int,
        limit: int = 10,
        kind: TransactionKind | None = None,
    ) -> list[TransactionRecord]:
        if kind is None:
            pool = [*self.document.transactions, *self.document.deposits]
        else:
            pool = list(self._collection(kind))
        records = [record for record in pool if record.user_id == user_id]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[: max(limit, 0)]

    def stats(self) -> JournalStats:
        document = self.document
        return JournalStats(
            **document.system.model_dump(),
            total_users=len(document.users),
            total_transactions=len(document.transactions),
            total_deposits=len(document.deposits),
            pending_transactions=sum(
                1 for record in document.transactions if record.status is TransactionStatus.PENDING
            ),
            pending_deposits=sum(
                1 for record in document.deposits if record.status is TransactionStatus.PENDING
            ),
        )

    def record_request(self, ok: bool) -> None:
        """Count an outbound provider request; persisted with the next save."""
        system = self.document.system
        system.total_requests += 1
        if not ok:
            system.failed_requests += 1

    # ------------------------------------------------------------------
    # Users and settings
    # ------------------------------------------------------------------

    async def upsert_user(
        self,
        user_id: int,
        *,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        language_code: str | None = None,
    ) -> UserRecord:
        now = self._clock()
        user = next((item for item in self.document.users if item.id == user_id), None)
        if user is None:
            user = UserRecord(
                id=user_id,
                username=username or "",
                first_name=first_name or "",
                last_name=last_name or "",
                language_code=language_code or "id",
                created_at=now,
                last_active=now,
            )
            self.document.users.append(user)
            logger.info("New user %s registered", user_id)
        else:
            user.last_active = now
            if username is not None:
                user.username = username
            if first_name is not None:
                user.first_name = first_name
        await self.save()
        return user

    async def update_settings(self, **changes: Any) -> JournalSettings:
        merged = self.settings.model_dump()
        merged.update(changes)
        settings = JournalSettings.model_validate(merged)
        if settings.min_deposit > settings.max_deposit:
            raise ValueError("Minimum deposit cannot exceed the maximum deposit.")
        if settings.min_transfer > settings.max_transfer:
            raise ValueError("Minimum transfer cannot exceed the maximum transfer.")
        self.document.settings = settings
        logger.info("Journal settings updated: %s", ", ".join(sorted(changes)))
        await self.save()
        return settings
