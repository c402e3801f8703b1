"""
Embedding pipeline: note -> chunks -> batched embed requests -> index rows.

Three entry points:

- embed_note(): fire-and-forget, called on note create/edit. Work goes
  onto a bounded queue drained by background workers. A full queue makes
  the writer wait briefly, then the note is left for the next catch-up.
  Failures are logged and recorded, never raised to the caller.
- embed_batch(): bulk embedding with settle-all semantics. One note's
  failure never affects its siblings; failures come back in the report.
  A dimension mismatch is the exception: it means the model changed, so
  the batch halts with EmbeddingError.
- catch_up_project(): finds missing and stale notes in the background and
  embeds them. Returns a Future immediately.

At most ``concurrency`` notes are embedded at once across all entry
points (EMBEDDING_CONCURRENCY, default 4).
"""

import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Optional

from .chunker import chunk_note
from .errors import (
    BrainError,
    DeadlineExceededError,
    EmbeddingError,
    VectorIndexError,
)
from .model_client import DOCUMENT_PREFIX
from .notes import NoteStoreProtocol, list_all_notes
from .vector_index import ChunkVector, VectorIndex

logger = logging.getLogger(__name__)

# Chunks per embed request (bounds request body and response memory)
SUB_BATCH_SIZE = 32

DEFAULT_CONCURRENCY = 4
MAX_CONCURRENCY = 16

# Fire-and-forget queue: size and how long a writer waits when it is full
QUEUE_SIZE = 256
ENQUEUE_WAIT = 1.0  # seconds

NOTE_DEADLINE = 60.0  # seconds per note

_STOP = object()


def resolve_concurrency(value: Optional[int] = None) -> int:
    """Concurrency from argument or EMBEDDING_CONCURRENCY, clamped to 1..16."""
    if value is None:
        raw = os.environ.get("EMBEDDING_CONCURRENCY")
        if not raw:
            return DEFAULT_CONCURRENCY
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer EMBEDDING_CONCURRENCY=%r", raw)
            return DEFAULT_CONCURRENCY
    if not 1 <= value <= MAX_CONCURRENCY:
        logger.warning(
            "EMBEDDING_CONCURRENCY=%d out of range 1..%d, using %d",
            value, MAX_CONCURRENCY, DEFAULT_CONCURRENCY,
        )
        return DEFAULT_CONCURRENCY
    return value


@dataclass
class NoteFailure:
    note_id: str
    kind: str
    error: str


@dataclass
class BatchReport:
    """Outcome of embed_batch / catch-up. No silent success: every failed
    note is listed in ``failed``."""
    embedded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[NoteFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class EmbeddingPipeline:
    """Owns the embed workers. One instance per process (brain.runtime)."""

    def __init__(
        self,
        notes: NoteStoreProtocol,
        index: VectorIndex,
        client,
        *,
        default_project: Optional[str] = None,
        concurrency: Optional[int] = None,
        queue_size: int = QUEUE_SIZE,
    ):
        """
        Args:
            notes: Upstream note store
            index: Vector index
            client: Model client (anything with ``model`` and ``embed_batch``)
            default_project: Project used when a call omits one
            concurrency: Max notes embedded at once (env/default if None)
            queue_size: Capacity of the fire-and-forget queue
        """
        self._notes = notes
        self._index = index
        self._client = client
        self._default_project = default_project
        self.concurrency = resolve_concurrency(concurrency)
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="brain-embed",
        )
        # Catch-up runs enumerate + embed_batch; kept off the embed pool so
        # a catch-up never waits on a slot it occupies itself
        self._catchup_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="brain-catchup",
        )
        self._catchups: dict[str, Future] = {}
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._pending: set[tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._workers: list[threading.Thread] = []
        self.failures: dict[str, NoteFailure] = {}

    def _project(self, project: Optional[str]) -> str:
        project = project or self._default_project
        if not project:
            raise ValueError("No project given and no default project configured")
        return project

    # ---- Single note ----

    def _embed_one(self, project: str, note_id: str) -> str:
        """Embed one note. Returns 'embedded', 'skipped' or 'deleted'."""
        deadline = time.monotonic() + NOTE_DEADLINE
        content = self._notes.read_note(note_id, project=project)
        if content is None or not content.strip():
            self._index.delete_note(project, note_id)
            return "deleted"

        chunks = chunk_note(content, DOCUMENT_PREFIX)
        stored = self._index.checksums(project, note_id)
        if stored == {c.chunk_ix: c.checksum for c in chunks}:
            return "skipped"

        vectors: list = []
        for start in range(0, len(chunks), SUB_BATCH_SIZE):
            if time.monotonic() > deadline:
                raise DeadlineExceededError(
                    f"Embedding {note_id} exceeded {NOTE_DEADLINE:.0f}s"
                )
            batch = chunks[start:start + SUB_BATCH_SIZE]
            vectors.extend(
                self._client.embed_batch([c.text for c in batch], DOCUMENT_PREFIX)
            )

        self._index.upsert_chunks(
            project, note_id,
            [ChunkVector(c.chunk_ix, c.text, v, c.checksum) for c, v in zip(chunks, vectors)],
            model_id=self._client.model,
            task_prefix=DOCUMENT_PREFIX,
        )
        return "embedded"

    def _embed_slot(self, project: str, note_id: str) -> str:
        with self._slots:
            return self._embed_one(project, note_id)

    def _record_failure(self, note_id: str, exc: Exception) -> NoteFailure:
        kind = exc.kind if isinstance(exc, BrainError) else type(exc).__name__
        failure = NoteFailure(note_id=note_id, kind=kind, error=str(exc))
        with self._lock:
            self.failures[note_id] = failure
        return failure

    def _clear_failure(self, note_id: str) -> None:
        with self._lock:
            self.failures.pop(note_id, None)

    # ---- Fire-and-forget ----

    def _ensure_workers(self) -> None:
        with self._lock:
            if self._workers:
                return
            for i in range(self.concurrency):
                t = threading.Thread(
                    target=self._worker, name=f"brain-embed-q{i}", daemon=True,
                )
                t.start()
                self._workers.append(t)

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                project, note_id = item
                with self._lock:
                    self._pending.discard(item)
                try:
                    outcome = self._embed_slot(project, note_id)
                    self._clear_failure(note_id)
                    logger.debug("embed_note %s: %s", note_id, outcome)
                except Exception as e:
                    self._record_failure(note_id, e)
                    logger.warning("Failed to embed %s: %s", note_id, e)
            finally:
                self._queue.task_done()

    def embed_note(self, note_id: str, project: Optional[str] = None) -> bool:
        """Queue a note for embedding. Never raises.

        Returns False when the queue stayed full and the note was deferred
        to the next catch-up.
        """
        try:
            item = (self._project(project), note_id)
        except ValueError as e:
            logger.warning("embed_note(%s) ignored: %s", note_id, e)
            return False
        self._ensure_workers()
        with self._lock:
            if item in self._pending:
                return True
            self._pending.add(item)
        try:
            self._queue.put(item, timeout=ENQUEUE_WAIT)
        except queue.Full:
            with self._lock:
                self._pending.discard(item)
            logger.warning("Embed queue full; %s deferred to next catch-up", note_id)
            return False
        return True

    def drain(self) -> None:
        """Block until every queued embed_note has been processed."""
        self._queue.join()

    # ---- Batch ----

    def embed_batch(
        self,
        note_ids: list[str],
        project: Optional[str] = None,
        *,
        limit: Optional[int] = None,
    ) -> BatchReport:
        """Embed many notes concurrently; collect every outcome.

        Raises:
            EmbeddingError: (kind dimension_mismatch) the model's vector
                size no longer matches the index; remaining work is cancelled.
        """
        project = self._project(project)
        ids = list(dict.fromkeys(note_ids))
        if limit is not None:
            ids = ids[:limit]
        report = BatchReport()
        if not ids:
            return report

        futures = {
            self._executor.submit(self._embed_slot, project, note_id): note_id
            for note_id in ids
        }
        halt: Optional[VectorIndexError] = None
        for future in as_completed(futures):
            note_id = futures[future]
            if future.cancelled():
                continue
            try:
                outcome = future.result()
            except VectorIndexError as e:
                if e.kind == "dimension_mismatch":
                    report.failed.append(self._record_failure(note_id, e))
                    if halt is None:
                        halt = e
                        for other in futures:
                            other.cancel()
                    continue
                report.failed.append(self._record_failure(note_id, e))
                continue
            except Exception as e:
                report.failed.append(self._record_failure(note_id, e))
                logger.warning("Failed to embed %s: %s", note_id, e)
                continue
            self._clear_failure(note_id)
            getattr(report, outcome).append(note_id)

        logger.info(
            "Embed batch %s: %d embedded, %d skipped, %d deleted, %d failed",
            project, len(report.embedded), len(report.skipped),
            len(report.deleted), len(report.failed),
        )
        if halt is not None:
            err = EmbeddingError(
                f"Embedding halted: {halt.message}",
                kind="dimension_mismatch",
                remediation=halt.remediation,
            )
            err.report = report
            raise err from halt
        return report

    # ---- Reconciliation ----

    def list_missing(self, project: Optional[str] = None) -> list[str]:
        """Notes in the note store with no rows in the index."""
        project = self._project(project)
        ids = [ref.permalink for ref in list_all_notes(self._notes, project)]
        return self._index.list_missing(project, ids)

    def list_stale(self, project: Optional[str] = None) -> list[str]:
        """Indexed notes whose current text no longer matches stored checksums."""
        project = self._project(project)
        texts = {}
        for note_id in sorted(self._index.indexed_notes(project)):
            content = self._notes.read_note(note_id, project=project)
            # Deleted or emptied notes have no chunks at all
            texts[note_id] = content or ""
        return self._index.list_stale(project, texts, DOCUMENT_PREFIX)

    def _catch_up(self, project: str) -> BatchReport:
        listed = [ref.permalink for ref in list_all_notes(self._notes, project)]
        missing = self._index.list_missing(project, listed)
        stale = self.list_stale(project)
        orphans = sorted(self._index.indexed_notes(project) - set(listed))
        work = [n for n in dict.fromkeys(missing + stale) if n not in orphans]

        report = BatchReport()
        for note_id in orphans:
            self._index.delete_note(project, note_id)
            report.deleted.append(note_id)
        if not work:
            logger.debug("Catch-up %s: nothing to do", project)
            return report

        logger.info("Catch-up %s: %d missing, %d stale", project, len(missing), len(stale))
        batch = self.embed_batch(work, project)
        batch.deleted = report.deleted + batch.deleted
        return batch

    def catch_up_project(self, project: Optional[str] = None) -> Future:
        """Start reconciliation for a project in the background.

        Never blocks. A catch-up already running for the project is reused.
        """
        project = self._project(project)
        with self._lock:
            running = self._catchups.get(project)
            if running is not None and not running.done():
                return running
            future = self._catchup_executor.submit(self._catch_up, project)
            self._catchups[project] = future
        future.add_done_callback(self._log_catch_up(project))
        return future

    @staticmethod
    def _log_catch_up(project: str):
        def _done(future: Future) -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is not None:
                logger.warning("Catch-up for %s failed: %s", project, exc)
        return _done

    # ---- Lifecycle ----

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            workers, self._workers = self._workers, []
        for _ in workers:
            self._queue.put(_STOP)
        if wait:
            for t in workers:
                t.join()
        self._catchup_executor.shutdown(wait=wait)
        self._executor.shutdown(wait=wait)
