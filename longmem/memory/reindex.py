"""
Reindex pipeline.

Recomputes the embedding of every stored memory after the embedding model
changes. Three stage threads connected by bounded queues do the work:

    feeder -> [embed] -> [write] -> done
                 ^          |
                 +- [retry] <- failed embed or write

Failed jobs are retried with a linear backoff until the retry ceiling is
reached; permanent failures are collected and reported together once the
run ends. Successful updates are kept either way, so a rerun is safe.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

from ..llm.base import EmbeddingProvider, Model
from ..llm.config import ReindexConfig
from .storage import SQLiteStore
from .types import MemoryItem
from .vector import normalize


logger = logging.getLogger(__name__)


# Seconds between checks of the cancel flag while blocked
POLL_INTERVAL = 0.05

_STOP = object()


class ReindexError(Exception):
    """
    Raised when one or more memories could not be reindexed.

    Attributes:
        failures: ``(memory_id, error)`` pairs, one per failed memory
    """

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = list(failures)
        details = "\n".join(f"- ID {memory_id}: {error}" for memory_id, error in self.failures)
        super().__init__(
            f"{len(self.failures)} memories failed to reindex:\n"
            f"{details}\n"
            f"Please try reindexing again later."
        )


class ReindexCancelled(Exception):
    """Raised when a reindex run is cancelled."""
    pass


@dataclass(frozen=True)
class ReindexJob:
    """
    One memory moving through the pipeline.

    Stages never mutate a job; they derive new ones with
    ``dataclasses.replace``.
    """
    item: MemoryItem
    retry_count: int = 0
    embedding: Optional[Tuple[float, ...]] = None
    error: Optional[Exception] = None


@dataclass
class ReindexReport:
    """Outcome of a reindex run."""
    model: Model
    total: int = 0
    succeeded: int = 0
    attempts: int = 0
    failures: List[Tuple[str, Exception]] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "model": self.model.to_dict(),
            "total": self.total,
            "succeeded": self.succeeded,
            "attempts": self.attempts,
            "failures": [
                {"id": memory_id, "error": str(error)} for memory_id, error in self.failures
            ],
            "elapsed_seconds": self.elapsed_seconds,
        }


class ReindexPipeline:
    """
    Re-embeds all memories with a new model.

    Example usage:
        pipeline = ReindexPipeline(store, provider, Model("openai", "text-embedding-3-large"))
        report = pipeline.run()
    """

    def __init__(
        self,
        store: SQLiteStore,
        embedding_provider: EmbeddingProvider,
        model: Model,
        config: Optional[ReindexConfig] = None,
        cancel: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            store: Store whose memories are reindexed
            embedding_provider: Provider for the new model
            model: The new embedding model
            config: Retry settings; defaults if None
            cancel: Optional event that stops the run when set
            progress_callback: Optional callback(done, total)
            wait: Backoff function ``wait(seconds) -> cancelled``. Defaults
                to waiting on the cancel event.
        """
        self.store = store
        self.embedding_provider = embedding_provider
        self.model = model
        self.config = config or ReindexConfig()
        self.cancel = cancel or threading.Event()
        self.progress_callback = progress_callback
        self.wait = wait or self.cancel.wait

        self._lock = threading.Lock()
        self._failures: List[Tuple[str, Exception]] = []
        self._succeeded = 0
        self._done = 0
        self._attempts = 0
        self._total = 0
        self._finished = threading.Event()
        self._stop = threading.Event()

        queue_size = max(self.config.queue_size, 1)
        self._slots = threading.BoundedSemaphore(queue_size)
        self._embed_queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._write_queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._retry_queue: "queue.Queue" = queue.Queue(maxsize=queue_size)

    def run(self) -> ReindexReport:
        """
        Reindex every memory.

        Returns:
            Report of the run

        Raises:
            ReindexError: If some memories exhausted their retries
            ReindexCancelled: If the cancel event was set
        """
        start_time = time.perf_counter()
        memories = self.store.get_all_memories()
        self._total = len(memories)
        report = ReindexReport(model=self.model, total=self._total)

        if not memories:
            logger.info("No memories to reindex")
            return report

        logger.info(f"Reindexing {self._total} memories with {self.model}")

        workers = [
            threading.Thread(target=self._embed_worker, name="longmem-reindex-embed", daemon=True),
            threading.Thread(target=self._write_worker, name="longmem-reindex-write", daemon=True),
            threading.Thread(target=self._retry_worker, name="longmem-reindex-retry", daemon=True),
        ]
        for worker in workers:
            worker.start()

        try:
            for item in memories:
                if not self._acquire_slot():
                    break
                if not self._put(self._embed_queue, ReindexJob(item=item)):
                    break

            while not self._finished.wait(POLL_INTERVAL):
                if self._stopping():
                    break
        finally:
            if self._finished.is_set():
                for q in (self._embed_queue, self._write_queue, self._retry_queue):
                    q.put(_STOP)
            else:
                self._stop.set()
            for worker in workers:
                worker.join()

        report.succeeded = self._succeeded
        report.attempts = self._attempts
        report.failures = list(self._failures)
        report.elapsed_seconds = time.perf_counter() - start_time

        if not self._finished.is_set():
            logger.warning(f"Reindex cancelled after {self._done}/{self._total} memories")
            raise ReindexCancelled(f"reindex cancelled after {self._done} of {self._total} memories")

        if report.failures:
            logger.error(
                f"Reindex finished with {len(report.failures)} failures "
                f"({report.succeeded}/{report.total} updated)"
            )
            raise ReindexError(report.failures)

        logger.info(
            f"Reindexed {report.succeeded} memories in {report.elapsed_seconds:.2f}s "
            f"({report.attempts} attempts)"
        )
        return report

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _embed_worker(self):
        while True:
            job = self._get(self._embed_queue)
            if job is _STOP:
                return

            with self._lock:
                self._attempts += 1

            try:
                vector = self.embedding_provider.embed(self.model, job.item.text)
                job = replace(job, embedding=tuple(vector), error=None)
            except Exception as e:
                logger.debug(f"Embedding failed for memory {job.item.id}: {e}")
                job = replace(job, embedding=None, error=e)

            if not self._put(self._write_queue, job):
                return

    def _write_worker(self):
        try:
            while True:
                job = self._get(self._write_queue)
                if job is _STOP:
                    return

                if self._stopping():
                    return

                if job.error is None:
                    try:
                        self._write(job)
                        self._finish(job, succeeded=True)
                        continue
                    except Exception as e:
                        logger.debug(f"Writing embedding failed for memory {job.item.id}: {e}")
                        job = replace(job, error=e)

                if not self._put(self._retry_queue, job):
                    return
        finally:
            self.store.release_connection()

    def _retry_worker(self):
        while True:
            job = self._get(self._retry_queue)
            if job is _STOP:
                return

            if job.retry_count >= self.config.max_retries:
                logger.error(
                    f"Giving up on memory {job.item.id} after {job.retry_count + 1} attempts: {job.error}"
                )
                with self._lock:
                    self._failures.append((job.item.id, job.error))
                self._finish(job, succeeded=False)
                continue

            delay = (job.retry_count + 1) * self.config.backoff_seconds
            logger.debug(f"Retrying memory {job.item.id} in {delay:.1f}s")
            if self.wait(delay) or self._stopping():
                return

            retried = replace(job, retry_count=job.retry_count + 1, embedding=None, error=None)
            if not self._put(self._embed_queue, retried):
                return

    def _write(self, job: ReindexJob):
        embedding = normalize(list(job.embedding or ()))
        if not embedding:
            raise ValueError(f"empty embedding returned by {self.model}")
        dim = len(embedding)
        updated = self.store.update_memory_embedding(
            job.item.id,
            embedding,
            self.model.model_id,
            dim,
            self.model.provider,
        )
        if not updated:
            logger.debug(f"Memory {job.item.id} was deleted during reindex")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _finish(self, job: ReindexJob, succeeded: bool):
        with self._lock:
            self._done += 1
            if succeeded:
                self._succeeded += 1
            done = self._done

        self._slots.release()
        self._report_progress(done)

        if done >= self._total:
            self._finished.set()

    def _report_progress(self, done: int):
        """Report progress if callback is configured."""
        if self.progress_callback:
            try:
                self.progress_callback(done, self._total)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _stopping(self) -> bool:
        return self.cancel.is_set() or self._stop.is_set()

    def _acquire_slot(self) -> bool:
        """Limit jobs in flight to the queue size so the stage cycle cannot fill up."""
        while not self._slots.acquire(timeout=POLL_INTERVAL):
            if self._stopping():
                return False
        return True

    def _put(self, q: "queue.Queue", job) -> bool:
        """Put a job, giving up if cancelled. Returns False when cancelled."""
        while not self._stopping():
            try:
                q.put(job, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _get(self, q: "queue.Queue"):
        """Get a job, or the stop marker when cancelled."""
        while not self._stopping():
            try:
                return q.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
        return _STOP


def reindex_memories(
    store: SQLiteStore,
    embedding_provider: EmbeddingProvider,
    model: Model,
    cancel: Optional[threading.Event] = None,
    config: Optional[ReindexConfig] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> ReindexReport:
    """
    Recompute every memory's embedding with ``model``.

    Raises:
        ReindexError: If some memories could not be reindexed
        ReindexCancelled: If ``cancel`` was set before the run completed
    """
    pipeline = ReindexPipeline(
        store,
        embedding_provider,
        model,
        config=config,
        cancel=cancel,
        progress_callback=progress_callback,
    )
    return pipeline.run()
