"""
Chunk-level vector index backed by SQLite.

Rows are keyed by (project, note_id, chunk_ix) and hold a float32 vector
plus the checksum of the prefixed chunk text it was computed from. Search
is exact cosine similarity over the project's rows, which stays fast well
past a million vectors on a single node.

Writes for one note are atomic: a single IMMEDIATE transaction replaces
the note's rows, so readers never see old and new chunks mixed. Writes to
the same note are serialized with a per-note lock; reads use per-thread
connections and never wait on writers (WAL).

The index records its vector dimension on first write. A vector of any
other dimension raises VectorIndexError(kind="dimension_mismatch"); the
index does not heal itself, a full re-embed is required.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional, Sequence

import numpy as np

from .chunker import chunk_note
from .errors import VectorIndexError
from .model_client import DOCUMENT_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7


@dataclass
class ChunkVector:
    """A chunk ready to be written: (ix, text, vector, checksum)."""
    chunk_ix: int
    text: str
    vector: Sequence[float]
    checksum: str


@dataclass
class SearchHit:
    """Best-matching chunk of one note."""
    note_id: str
    chunk_ix: int
    score: float


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class VectorIndex:
    """
    SQLite + numpy vector index.

    One instance per process (see brain.runtime). Safe to share across
    threads.
    """

    def __init__(self, index_path: Path):
        """
        Args:
            index_path: Path to SQLite database file
        """
        self._index_path = Path(index_path)
        self._lock = threading.Lock()          # guards _note_locks and the writer
        self._note_locks: dict[tuple[str, str], threading.Lock] = {}
        self._local = threading.local()
        self._conns: list[sqlite3.Connection] = []
        self._dimension: Optional[int] = None
        with self._translate_errors("open"):
            self._index_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = self._connect()
            self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: explicit BEGIN IMMEDIATE per write
        conn = sqlite3.connect(
            str(self._index_path), check_same_thread=False,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        self._conns.append(conn)
        return conn

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            with self._lock:
                conn = self._connect()
            self._local.conn = conn
        return conn

    def _init_db(self) -> None:
        self._writer.execute("""
            CREATE TABLE IF NOT EXISTS embeddings (
                project TEXT NOT NULL,
                note_id TEXT NOT NULL,
                chunk_ix INTEGER NOT NULL,
                vector BLOB NOT NULL,
                dim INTEGER NOT NULL,
                model_id TEXT NOT NULL,
                task_prefix TEXT NOT NULL,
                content_checksum TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project, note_id, chunk_ix)
            )
        """)
        self._writer.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        row = self._writer.execute(
            "SELECT value FROM meta WHERE key = 'dimension'"
        ).fetchone()
        if row:
            self._dimension = int(row[0])

    @contextmanager
    def _translate_errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except VectorIndexError:
            raise
        except sqlite3.OperationalError as e:
            raise VectorIndexError("io", f"Vector index {op} failed: {e}") from e
        except sqlite3.DatabaseError as e:
            raise VectorIndexError("corrupt", f"Vector index is corrupt ({op}): {e}") from e
        except OSError as e:
            raise VectorIndexError("io", f"Vector index {op} failed: {e}") from e

    def _note_lock(self, project: str, note_id: str) -> threading.Lock:
        key = (project, note_id)
        with self._lock:
            lock = self._note_locks.get(key)
            if lock is None:
                lock = self._note_locks[key] = threading.Lock()
            return lock

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _check_dimension(self, dim: int) -> None:
        if self._dimension is not None and dim != self._dimension:
            raise VectorIndexError(
                "dimension_mismatch",
                f"Vector dimension {dim} does not match index dimension {self._dimension}",
            )

    # ---- Write Operations ----

    def upsert_chunks(
        self,
        project: str,
        note_id: str,
        chunks: list[ChunkVector],
        *,
        model_id: str,
        task_prefix: str = DOCUMENT_PREFIX,
    ) -> None:
        """
        Replace a note's rows with ``chunks`` atomically.

        Rows with chunk_ix >= len(chunks) are deleted in the same
        transaction. An empty list removes the note.
        """
        dims = {len(c.vector) for c in chunks}
        if len(dims) > 1:
            raise VectorIndexError(
                "dimension_mismatch", f"Mixed vector dimensions for {note_id}: {sorted(dims)}"
            )
        now = datetime.now(timezone.utc).isoformat()
        with self._note_lock(project, note_id), self._lock, self._translate_errors("write"):
            conn = self._writer
            conn.execute("BEGIN IMMEDIATE")
            try:
                new_dim = None
                if dims:
                    # Dimension is checked and recorded under the write transaction
                    row = conn.execute("SELECT value FROM meta WHERE key = 'dimension'").fetchone()
                    self._dimension = int(row[0]) if row is not None else None
                    dim = next(iter(dims))
                    self._check_dimension(dim)
                    if self._dimension is None:
                        new_dim = dim
                        conn.execute(
                            "INSERT OR REPLACE INTO meta (key, value) VALUES ('dimension', ?)",
                            (str(dim),),
                        )
                conn.execute(
                    "DELETE FROM embeddings WHERE project = ? AND note_id = ? AND chunk_ix >= ?",
                    (project, note_id, len(chunks)),
                )
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO embeddings
                        (project, note_id, chunk_ix, vector, dim, model_id,
                         task_prefix, content_checksum, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (project, note_id, c.chunk_ix, _to_blob(c.vector), len(c.vector),
                         model_id, task_prefix, c.checksum, now)
                        for c in chunks
                    ],
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            if new_dim is not None:
                self._dimension = new_dim
        logger.debug("Indexed %d chunks for %s/%s", len(chunks), project, note_id)

    def delete_note(self, project: str, note_id: str) -> int:
        """Remove all rows for a note. Returns number of rows removed."""
        with self._note_lock(project, note_id), self._lock, self._translate_errors("delete"):
            cursor = self._writer.execute(
                "DELETE FROM embeddings WHERE project = ? AND note_id = ?",
                (project, note_id),
            )
            return cursor.rowcount

    def clear(self, project: Optional[str] = None) -> None:
        """Drop all rows (for one project, or everything including the dimension)."""
        with self._lock, self._translate_errors("clear"):
            if project is None:
                self._writer.execute("DELETE FROM embeddings")
                self._writer.execute("DELETE FROM meta WHERE key = 'dimension'")
                self._dimension = None
            else:
                self._writer.execute("DELETE FROM embeddings WHERE project = ?", (project,))

    # ---- Read Operations ----

    def search_ann(
        self,
        project: str,
        query_vector: Sequence[float],
        k: int = 10,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> list[SearchHit]:
        """
        Cosine-similarity search.

        Each note appears once, represented by its best chunk. Hits below
        ``threshold`` are dropped; the rest are sorted by descending score.
        """
        self._check_dimension(len(query_vector))
        with self._translate_errors("search"):
            rows = self._reader().execute(
                "SELECT note_id, chunk_ix, vector FROM embeddings WHERE project = ?",
                (project,),
            ).fetchall()
        if not rows:
            return []

        matrix = np.vstack([_from_blob(r[2]) for r in rows])
        query = np.asarray(query_vector, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        best: dict[str, SearchHit] = {}
        for (note_id, chunk_ix, _), score in zip(rows, scores):
            score = float(score)
            current = best.get(note_id)
            if current is None or score > current.score:
                best[note_id] = SearchHit(note_id=note_id, chunk_ix=chunk_ix, score=score)

        hits = [h for h in best.values() if h.score >= threshold]
        hits.sort(key=lambda h: (-h.score, h.note_id))
        return hits[:k]

    def checksums(self, project: str, note_id: str) -> dict[int, str]:
        """Stored content checksum per chunk_ix for one note."""
        with self._translate_errors("read"):
            rows = self._reader().execute(
                "SELECT chunk_ix, content_checksum FROM embeddings "
                "WHERE project = ? AND note_id = ? ORDER BY chunk_ix",
                (project, note_id),
            ).fetchall()
        return {ix: checksum for ix, checksum in rows}

    def indexed_notes(self, project: str) -> set[str]:
        with self._translate_errors("read"):
            rows = self._reader().execute(
                "SELECT DISTINCT note_id FROM embeddings WHERE project = ?",
                (project,),
            ).fetchall()
        return {r[0] for r in rows}

    def count(self, project: str) -> int:
        """Number of embedding rows for a project."""
        with self._translate_errors("read"):
            row = self._reader().execute(
                "SELECT COUNT(*) FROM embeddings WHERE project = ?", (project,)
            ).fetchone()
        return row[0]

    def list_missing(self, project: str, note_ids: Iterable[str]) -> list[str]:
        """Notes (from the upstream listing) with no rows in the index."""
        indexed = self.indexed_notes(project)
        return [n for n in note_ids if n not in indexed]

    def list_stale(
        self,
        project: str,
        notes: Mapping[str, str],
        task_prefix: str = DOCUMENT_PREFIX,
    ) -> list[str]:
        """Indexed notes whose stored checksums differ from their current text.

        Args:
            notes: note_id -> current body text
        """
        stale = []
        for note_id, text in notes.items():
            stored = self.checksums(project, note_id)
            if not stored:
                continue
            current = {c.chunk_ix: c.checksum for c in chunk_note(text, task_prefix)}
            if current != stored:
                stale.append(note_id)
        return stale

    # ---- Lifecycle ----

    def close(self) -> None:
        with self._lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
            self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
