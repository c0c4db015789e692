"""Bounded-concurrency batch runner. Folds per-object results into one ConversionReport."""
import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from s3webp.conversion.models import ConversionReport, ConversionResult, ConversionStatus, SourceObject
from s3webp.conversion.pipeline import target_key_for

logger = logging.getLogger("s3webp.batch")

ProcessFn = Callable[[SourceObject], ConversionResult]
ProgressFn = Callable[[int, int, ConversionResult], None]


@dataclass
class ProcessingQueue:
    """A key is pending or in flight, then completed or failed; never pending again."""

    pending: deque = field(default_factory=deque)
    in_flight: set[str] = field(default_factory=set)
    completed: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)

    def load(self, objects: Iterable[SourceObject]) -> int:
        self.pending.clear()
        self.in_flight.clear()
        self.completed.clear()
        self.failed.clear()
        seen: set[str] = set()
        for obj in objects:
            if obj.key in seen:
                logger.warning("Duplicate key in batch input, ignoring: %s", obj.key)
                continue
            seen.add(obj.key)
            self.pending.append(obj)
        return len(self.pending)

    def dequeue(self) -> SourceObject:
        obj = self.pending.popleft()
        self.in_flight.add(obj.key)
        return obj

    def finish(self, key: str, status: ConversionStatus) -> None:
        self.in_flight.discard(key)
        if status is ConversionStatus.FAILED:
            self.failed.add(key)
        else:
            self.completed.add(key)


class BatchScheduler:
    """Runs ``process`` over many objects with at most N calls in flight.

    ``process`` is expected to return a ConversionResult for every object;
    anything it raises is turned into a failed result for that object.
    """

    def __init__(self, process: ProcessFn, dispatch_delay: float = 0.01):
        self.process = process
        self.dispatch_delay = dispatch_delay
        self.queue = ProcessingQueue()
        self._stop = threading.Event()

    def stop(self) -> None:
        """Stop dispatching. In-flight work still runs to completion."""
        if not self._stop.is_set():
            logger.info("Stop requested: no new conversions will start")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_batch(
        self,
        objects: Iterable[SourceObject],
        concurrency_limit: int,
        on_progress: Optional[ProgressFn] = None,
    ) -> ConversionReport:
        """Process ``objects``; a stop() issued before or during the call ends this batch only."""
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        try:
            return self._run(objects, concurrency_limit, on_progress)
        finally:
            self._stop.clear()

    def _run(
        self,
        objects: Iterable[SourceObject],
        concurrency_limit: int,
        on_progress: Optional[ProgressFn],
    ) -> ConversionReport:
        started = time.monotonic()
        report = ConversionReport()
        queue = self.queue
        report.total_images = queue.load(objects)
        in_flight: dict[Future, SourceObject] = {}
        done_count = 0

        logger.info("Starting batch of %s objects (concurrency=%s)", report.total_images, concurrency_limit)
        with ThreadPoolExecutor(max_workers=concurrency_limit, thread_name_prefix="convert") as executor:
            while (queue.pending and not self._stop.is_set()) or in_flight:
                while queue.pending and len(in_flight) < concurrency_limit and not self._stop.is_set():
                    obj = queue.dequeue()
                    in_flight[executor.submit(self.process, obj)] = obj
                    if queue.pending and self.dispatch_delay > 0:
                        self._stop.wait(self.dispatch_delay)

                if not in_flight:
                    break
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    obj = in_flight.pop(future)
                    result = self._result_of(future, obj)
                    queue.finish(obj.key, result.status)
                    report.add(result)
                    done_count += 1
                    if on_progress is not None:
                        try:
                            on_progress(done_count, report.total_images, result)
                        except Exception:
                            logger.exception("Progress callback failed")

        if queue.pending:
            logger.warning("Batch stopped with %s objects not started", len(queue.pending))
        report.finalize(time.monotonic() - started)
        logger.info(
            "Batch completed in %.2fs: %s successful, %s failed, %s skipped",
            report.processing_duration,
            report.successful,
            report.failed,
            report.skipped,
            extra={"operation": "batch.complete"},
        )
        return report

    @staticmethod
    def _result_of(future: Future, obj: SourceObject) -> ConversionResult:
        try:
            return future.result()
        except Exception as e:
            logger.exception("Failed to process image %s", obj.key)
            return ConversionResult(
                source_key=obj.key,
                target_key=target_key_for(obj.key),
                original_size=obj.size,
                status=ConversionStatus.FAILED,
                error=str(e) or type(e).__name__,
            )
