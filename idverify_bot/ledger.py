from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final

from .errors import InvalidRecordError, PersistenceError
from .models import MAX_RECORD_AGE, VerificationRecord, utc_now

log: Final = logging.getLogger("idv-gateway")

BACKUP_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S_%f_UTC"


class VerificationLedger:
    """In-memory map of live verification records backed by a JSON file.

    Mutations apply to memory immediately and schedule a persist in the
    background. While a persist is running, further mutations only flag a
    single follow-up pass, so a burst of N writes costs at most two file
    writes.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        max_age: timedelta = MAX_RECORD_AGE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = Path(path)
        self._max_age = max_age
        self._clock = clock
        self._records: dict[str, VerificationRecord] = {}
        self._persist_task: asyncio.Task[None] | None = None
        self._persist_queued = False
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def tmp_path(self) -> Path:
        return self._path.with_name(self._path.name + ".tmp")

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    # ----- Key-addressed access -----
    def get(self, key: str) -> VerificationRecord | None:
        return self._records.get(key)

    def set(self, key: str, record: VerificationRecord) -> None:
        if record.session_key != key:
            raise ValueError(
                f"Record session key {record.session_key!r} does not match {key!r}"
            )
        self._records[key] = record
        self._schedule_persist()

    def delete(self, key: str) -> bool:
        if self._records.pop(key, None) is None:
            return False
        self._schedule_persist()
        return True

    def clear(self) -> None:
        if not self._records:
            return
        self._records.clear()
        self._schedule_persist()

    def entries(self) -> list[tuple[str, VerificationRecord]]:
        return list(self._records.items())

    def find_by_subject(self, subject_id: str) -> VerificationRecord | None:
        for record in self._records.values():
            if record.subject_id == subject_id:
                return record
        return None

    def sweep_expired(self) -> list[VerificationRecord]:
        """Remove and return every record older than the maximum age."""
        now = self._clock()
        expired = [
            record
            for record in self._records.values()
            if record.is_expired(now, self._max_age)
        ]
        for record in expired:
            self.delete(record.session_key)
            log.info(
                "Cleaned up expired verification: %s (%s)",
                record.session_key,
                record.kind,
            )
        if expired:
            log.info(
                "Cleanup completed: removed %d expired pending verifications",
                len(expired),
            )
        return expired

    # ----- Persistence -----
    def _schedule_persist(self) -> None:
        if self._persist_task is not None and not self._persist_task.done():
            self._persist_queued = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Written by the next persist or force_flush.
            self._persist_queued = True
            return
        self._persist_task = loop.create_task(
            self._persist_loop(), name="ledger-persist"
        )

    async def _persist_loop(self) -> None:
        while True:
            self._persist_queued = False
            try:
                await self._write_snapshot()
            except PersistenceError as exc:
                log.error("Failed to save pending verifications: %s", exc)
            if not self._persist_queued:
                return

    def _snapshot(self) -> dict[str, dict[str, object]]:
        return {key: record.to_item() for key, record in self._records.items()}

    async def _write_snapshot(self) -> None:
        async with self._write_lock:
            payload = json.dumps(self._snapshot(), indent=2)
            count = len(self._records)
            await asyncio.to_thread(self._write_file, payload)
        log.debug("Saved %d pending verifications to disk", count)

    def _write_file(self, payload: str) -> None:
        tmp_path = self.tmp_path
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                log.debug("Could not remove stale temp file %s", tmp_path)
            raise PersistenceError(f"{self._path}: {exc}") from exc

    async def force_flush(self) -> None:
        """Write the current state to disk, waiting for any in-flight persist.

        Raises :class:`PersistenceError` when the final write fails.
        """
        task = self._persist_task
        if task is not None and not task.done():
            await task
        self._persist_queued = False
        await self._write_snapshot()

    async def load_from_storage(self) -> None:
        """Hydrate the ledger from disk, dropping invalid and expired entries."""
        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except FileNotFoundError:
            log.info("No pending verifications file found, starting fresh")
            return
        except OSError as exc:
            log.error("Error loading pending verifications: %s", exc)
            log.info("Starting with empty pending verifications")
            return

        if not raw.strip():
            log.info("Pending verifications file is empty, starting fresh")
            return

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.error("Failed to parse pending verifications JSON: %s", exc)
            await self._backup_corrupt_file()
            return

        if not isinstance(data, dict):
            log.error("Pending verifications file does not contain an object")
            await self._backup_corrupt_file()
            return

        now = self._clock()
        self._records.clear()
        skipped = 0
        for key, item in data.items():
            try:
                record = VerificationRecord.from_item(key, item)
            except InvalidRecordError as exc:
                log.warning("Skipping invalid verification entry %s: %s", key, exc)
                skipped += 1
                continue
            if record.is_expired(now, self._max_age):
                log.debug(
                    "Skipping expired verification %s (%dh old)",
                    key,
                    record.age(now).total_seconds() // 3600,
                )
                skipped += 1
                continue
            self._records[key] = record

        if skipped:
            log.info(
                "Loaded %d pending verifications, skipped %d invalid/expired entries",
                len(self._records),
                skipped,
            )
            try:
                await self._write_snapshot()
            except PersistenceError as exc:
                log.error("Failed to save cleaned pending verifications: %s", exc)
        else:
            log.info("Loaded %d pending verifications", len(self._records))

    async def _backup_corrupt_file(self) -> Path | None:
        stamp = self._clock().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup = self._path.with_name(f"{self._path.name}.backup.{stamp}")
        try:
            await asyncio.to_thread(os.replace, self._path, backup)
        except OSError as exc:
            log.error("Could not back up corrupted ledger file: %s", exc)
            return None
        log.info("Corrupted file backed up to: %s", backup)
        return backup
