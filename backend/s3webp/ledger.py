"""Conversion ledger: which source keys have already been converted.

Two files live side by side:

- the primary store (``converted-images.json``), a JSON array of records,
  rewritten in batches;
- the journal (``converted-images-append.log``), one JSON record per line,
  appended and fsync'd on every conversion.

A record is durable once its journal line is written. Compaction moves
queued records into the primary store and truncates the journal; on load,
whatever is still in the journal is merged back into the primary store.
"""
import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from s3webp.conversion.models import ConversionRecord
from s3webp.errors import LedgerWriteError

logger = logging.getLogger("s3webp.ledger")

DEFAULT_TRACKING_FILE = Path("logs") / "converted-images.json"
DEFAULT_BATCH_SIZE = 100


def journal_path_for(tracking_file: Path) -> Path:
    name = tracking_file.name
    if name.endswith(".json"):
        name = name[: -len(".json")] + "-append.log"
    else:
        name = name + "-append.log"
    return tracking_file.with_name(name)


def _dedupe(records: Iterable[ConversionRecord]) -> list[ConversionRecord]:
    """Keep the first record per source key, preserving order."""
    seen: set[str] = set()
    out: list[ConversionRecord] = []
    for r in records:
        if r.source_key in seen:
            continue
        seen.add(r.source_key)
        out.append(r)
    return out


class ConversionLedger:
    """Durable, thread-safe record of converted source keys.

    ``_lock`` serializes the membership set, journal appends and the write
    queue. ``_store_lock`` serializes rewrites of the primary store, so a
    background compaction and an explicit flush never write it at once.
    """

    def __init__(self, tracking_file: Union[str, Path] = DEFAULT_TRACKING_FILE, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.tracking_file = Path(tracking_file)
        self.journal_file = journal_path_for(self.tracking_file)
        self.batch_size = batch_size
        self._keys: set[str] = set()
        self._write_queue: list[ConversionRecord] = []
        self._journal_lines = 0  # lines appended since the journal was last truncated
        self._loaded = False
        self._compacting = False
        self._closed = False
        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._store_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-compact")

    # -- loading / recovery -------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def pending_writes(self) -> int:
        with self._lock:
            return len(self._write_queue)

    def load(self) -> None:
        """Read the primary store and replay the journal. Runs once; concurrent callers wait."""
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            self.tracking_file.parent.mkdir(parents=True, exist_ok=True)
            primary = self._read_primary_for_load()
            journal, journal_lines = self._read_journal()
            with self._lock:
                self._keys.update(r.source_key for r in primary)
                self._keys.update(r.source_key for r in journal)
            if journal_lines:
                self._recover(primary, journal, journal_lines)
            self._loaded = True
            logger.info(
                "Loaded %s previously converted images from %s",
                len(self._keys),
                self.tracking_file,
                extra={"operation": "ledger.load"},
            )

    def _read_primary(self) -> list[ConversionRecord]:
        """Raises OSError / ValueError; a missing file is an empty store."""
        try:
            raw = self.tracking_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        if not raw.strip():
            return []
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"{self.tracking_file} does not hold a JSON list")
        return [ConversionRecord.from_dict(item) for item in data]

    def _read_primary_for_load(self) -> list[ConversionRecord]:
        try:
            return self._read_primary()
        except ValueError as e:
            # Move the unreadable store aside so the next rewrite cannot clobber it.
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            aside = self.tracking_file.with_name(f"{self.tracking_file.name}.corrupt-{stamp}")
            logger.warning("Unreadable tracking file %s (%s), moved to %s", self.tracking_file, e, aside)
            try:
                os.replace(self.tracking_file, aside)
            except OSError as move_err:
                logger.warning("Could not move %s aside: %s", self.tracking_file, move_err)
            return []
        except OSError as e:
            logger.warning("Error reading tracking file %s: %s", self.tracking_file, e)
            return []

    def _read_journal(self) -> tuple[list[ConversionRecord], int]:
        """Return (records, non-empty line count). Malformed lines are skipped."""
        try:
            raw = self.journal_file.read_bytes()
        except FileNotFoundError:
            return [], 0
        except OSError as e:
            logger.warning("Error reading journal %s: %s", self.journal_file, e)
            return [], 0
        records: list[ConversionRecord] = []
        count = 0
        # Decoded per line: a write cut short by a crash can end mid-character.
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            count += 1
            try:
                records.append(ConversionRecord.from_dict(json.loads(line.decode("utf-8"))))
            except (UnicodeDecodeError, ValueError, TypeError) as e:
                logger.warning("Invalid line in journal %s: %r (%s)", self.journal_file, line[:200], e)
        return records, count

    def _recover(self, primary: list[ConversionRecord], journal: list[ConversionRecord], journal_lines: int) -> None:
        merged = _dedupe(primary + journal)
        with self._store_lock:
            try:
                self._write_primary(merged)
            except OSError as e:
                # Journal stays; its records queue up for the next compaction.
                known = {r.source_key for r in primary}
                with self._lock:
                    self._write_queue[:0] = [r for r in _dedupe(journal) if r.source_key not in known]
                    self._journal_lines = journal_lines
                logger.error("Failed to consolidate tracking files: %s", e, extra={"operation": "ledger.consolidateError"})
                return
            with self._lock:
                self._truncate_journal()
        logger.info(
            "Consolidated tracking files: %s unique records (%s recovered from journal)",
            len(merged),
            len(journal),
            extra={"operation": "ledger.consolidate"},
        )

    # -- queries ------------------------------------------------------------

    def is_converted(self, source_key: str) -> bool:
        self.load()
        with self._lock:
            return source_key in self._keys

    def get_converted_keys(self) -> set[str]:
        self.load()
        with self._lock:
            return set(self._keys)

    def get_records(self) -> list[ConversionRecord]:
        """Committed records from both files, first occurrence per source key."""
        self.load()
        with self._store_lock:
            try:
                primary = self._read_primary()
            except (OSError, ValueError) as e:
                logger.warning("Error reading tracking file %s: %s", self.tracking_file, e)
                primary = []
            journal, _ = self._read_journal()
        return _dedupe(primary + journal)

    def __len__(self) -> int:
        self.load()
        with self._lock:
            return len(self._keys)

    # -- writes -------------------------------------------------------------

    def mark_as_converted(self, record: ConversionRecord) -> None:
        """Record a conversion. Raises LedgerWriteError if the journal append fails."""
        self.load()
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        with self._lock:
            self._keys.add(record.source_key)
            try:
                self._append_journal(line)
            except OSError as e:
                logger.error(
                    "Failed to append %s to journal %s: %s",
                    record.source_key,
                    self.journal_file,
                    e,
                    extra={"operation": "ledger.appendError"},
                )
                raise LedgerWriteError(f"Failed to record conversion of {record.source_key}: {e}") from e
            self._journal_lines += 1
            self._write_queue.append(record)
            schedule = len(self._write_queue) >= self.batch_size and not self._compacting and not self._closed
            if schedule:
                self._compacting = True
        if schedule:
            self._executor.submit(self._background_compact)
        logger.info(
            "Image converted and tracked: %s -> %s (%s -> %s bytes)",
            record.source_key,
            record.target_key,
            record.original_size,
            record.converted_size,
            extra={"operation": "conversion.tracked"},
        )

    def _append_journal(self, line: str) -> None:
        with self.journal_file.open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def _truncate_journal(self) -> None:
        """Caller holds _lock."""
        try:
            with self.journal_file.open("w", encoding="utf-8"):
                pass
            self._journal_lines = 0
        except OSError as e:
            # Harmless: the next load replays and deduplicates.
            logger.warning("Could not truncate journal %s: %s", self.journal_file, e)

    def _write_primary(self, records: list[ConversionRecord]) -> None:
        tmp = self.tracking_file.with_name(self.tracking_file.name + ".tmp")
        payload = json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False)
        with tmp.open("w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.tracking_file)

    def _background_compact(self) -> None:
        try:
            self._compact()
        except Exception:
            logger.exception("Unexpected error during ledger compaction")
        finally:
            with self._lock:
                self._compacting = False

    def _compact(self) -> int:
        """Move queued records into the primary store. Returns how many were committed."""
        with self._store_lock:
            with self._lock:
                batch = self._write_queue
                self._write_queue = []
                journal_mark = self._journal_lines
            if not batch:
                return 0
            try:
                existing = self._read_primary()
                known = {r.source_key for r in existing}
                added = [r for r in _dedupe(batch) if r.source_key not in known]
                self._write_primary(existing + added)
            except (OSError, ValueError) as e:
                with self._lock:
                    self._write_queue[:0] = batch
                logger.error(
                    "Failed to batch update tracking file (%s records re-queued): %s",
                    len(batch),
                    e,
                    extra={"operation": "ledger.batchWriteError"},
                )
                return 0
            with self._lock:
                # Lines appended after the batch was taken are not in the store yet.
                if self._journal_lines == journal_mark:
                    self._truncate_journal()
        logger.info(
            "Batch updated tracking file with %s records (%s total)",
            len(added),
            len(existing) + len(added),
            extra={"operation": "ledger.batchWrite"},
        )
        return len(added)

    def flush(self) -> int:
        """Commit the queued batch now. Waits for a running background compaction."""
        if not self._loaded:
            return 0
        return self._compact()

    def clear(self) -> None:
        """Forget every conversion: removes both files."""
        with self._store_lock, self._lock:
            for path in (self.tracking_file, self.journal_file):
                path.unlink(missing_ok=True)
            self._keys.clear()
            self._write_queue.clear()
            self._journal_lines = 0
            self._loaded = True
        logger.info("Cleared conversion history at %s", self.tracking_file, extra={"operation": "ledger.clear"})

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.flush()
        self._executor.shutdown(wait=True)
        # a compaction that was running when we flushed may have re-queued
        if self.pending_writes:
            self.flush()


def new_record(
    source_key: str,
    target_key: str,
    original_size: int,
    converted_size: int,
    compression_ratio: float,
    converted_at: Optional[datetime] = None,
) -> ConversionRecord:
    when = converted_at or datetime.now(timezone.utc)
    return ConversionRecord(
        source_key=source_key,
        target_key=target_key,
        converted_at=when.isoformat().replace("+00:00", "Z"),
        original_size=original_size,
        converted_size=converted_size,
        compression_ratio=compression_ratio,
    )
