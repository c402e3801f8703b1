"""
Shared pytest fixtures for brain tests.

Provides an in-memory note store and a deterministic embedder so tests
never start basic-memory or talk to a model server.
"""

import re
import threading
from datetime import datetime, timezone
from typing import Optional

import pytest

from brain.enrichment import detect_type, parse_frontmatter
from brain.errors import ModelClientError, UpstreamUnavailableError
from brain.notes import NoteHit, NoteRef, folder_of, slugify, title_from_slug
from brain.pipeline import EmbeddingPipeline
from brain.search import SearchService
from brain.session import SessionStore
from brain.vector_index import VectorIndex

SECRET = "test-secret"


class MockModelClient:
    """
    Bag-of-words embedder over a tiny vocabulary.

    One dimension per vocabulary word plus a small constant bias so no
    vector is all zeros. Texts sharing vocabulary words are similar;
    texts sharing none score near zero.
    """

    VOCAB = ("alpha", "beta", "gamma", "delta", "epsilon", "zeta", "auth", "cache")
    BIAS = 0.01

    def __init__(self, model: str = "mock-embed"):
        self.model = model
        self.extra_dims = 0
        self.fail_words: set[str] = set()
        self.batch_calls = 0
        self.texts: list[str] = []
        self._lock = threading.Lock()

    def vector(self, text: str) -> list[float]:
        words = re.findall(r"[a-z]+", text.lower())
        vec = [float(words.count(w)) for w in self.VOCAB] + [self.BIAS]
        return vec + [0.0] * self.extra_dims

    def embed_batch(self, texts, task_prefix="search_document", model=None):
        with self._lock:
            self.batch_calls += 1
            self.texts.extend(texts)
        for text in texts:
            for word in self.fail_words:
                if word in text:
                    raise ModelClientError(f"Embedding request rejected: 400 ({word})")
        return [self.vector(t) for t in texts]

    def embed_one(self, text, task_prefix="search_query", model=None):
        return self.embed_batch([text], task_prefix, model)[0]


class MockNoteStore:
    """
    In-memory stand-in for the upstream note store.

    Notes are kept per project as permalink -> record. read_note resolves
    a permalink, a title (case-insensitive) or a bare slug. Set
    ``unavailable`` to make every call fail like a dead transport.
    """

    def __init__(self, default_project: str = "demo"):
        self.default_project = default_project
        self.unavailable = False
        self.reads = 0
        self.writes = 0
        self._notes: dict[str, dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _check(self) -> None:
        if self.unavailable:
            raise UpstreamUnavailableError("Note store connection lost")

    def _bucket(self, project: Optional[str]) -> dict[str, dict]:
        return self._notes.setdefault(project or self.default_project, {})

    def add(
        self,
        permalink: str,
        content: str,
        *,
        project: Optional[str] = None,
        title: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> str:
        """Seed a note directly (bypasses ``unavailable``)."""
        fm = parse_frontmatter(content)
        with self._lock:
            self._bucket(project)[permalink] = {
                "title": title or fm.get("title") or title_from_slug(permalink),
                "content": content,
                "updated_at": updated_at or datetime.now(timezone.utc).isoformat(),
            }
        return permalink

    def _find(self, identifier: str, project: Optional[str]) -> Optional[str]:
        bucket = self._bucket(project)
        if identifier in bucket:
            return identifier
        lowered = identifier.lower()
        for permalink, record in bucket.items():
            if record["title"].lower() == lowered:
                return permalink
        slug = slugify(identifier)
        for permalink in bucket:
            if permalink == slug or permalink.endswith("/" + slug):
                return permalink
        return None

    # ---- NoteStoreProtocol ----

    def write_note(self, folder, title, content, *, project=None):
        self._check()
        folder = folder.strip("/")
        permalink = f"{folder}/{slugify(title)}" if folder else slugify(title)
        with self._lock:
            self.writes += 1
            self._bucket(project)[permalink] = {
                "title": title,
                "content": content,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        return permalink

    def read_note(self, identifier, *, project=None):
        self._check()
        with self._lock:
            self.reads += 1
            permalink = self._find(identifier, project)
            if permalink is None:
                return None
            return self._bucket(project)[permalink]["content"]

    def edit_note(self, identifier, operation, content, *, project=None, section=None, find_text=None):
        self._check()
        with self._lock:
            permalink = self._find(identifier, project)
            if permalink is None:
                raise ValueError(f"Note not found: {identifier}")
            record = self._bucket(project)[permalink]
            body = record["content"]
            if operation == "append":
                body = body + content
            elif operation == "prepend":
                body = content + body
            elif operation == "find_replace":
                body = body.replace(find_text or "", content)
            elif operation == "replace_section":
                pattern = re.compile(rf"(^#+ {re.escape(section or '')}\s*\n).*?(?=^#+ |\Z)",
                                     re.MULTILINE | re.DOTALL)
                body = pattern.sub(lambda m: m.group(1) + content + "\n", body)
            else:
                raise ValueError(f"Unknown edit operation: {operation}")
            record["content"] = body
            record["updated_at"] = datetime.now(timezone.utc).isoformat()

    def delete_note(self, identifier, *, project=None):
        self._check()
        with self._lock:
            permalink = self._find(identifier, project)
            if permalink is None:
                return False
            del self._bucket(project)[permalink]
            return True

    def list_directory(self, folder="/", *, project=None, depth=1):
        self._check()
        prefix = folder.strip("/")
        with self._lock:
            items = sorted(self._bucket(project).items())
        return [
            NoteRef(permalink=p, title=r["title"], folder=folder_of(p), updated_at=r["updated_at"])
            for p, r in items
            if not prefix or p.startswith(prefix + "/")
        ]

    def search_notes(self, query, *, project=None, types=None, after_date=None, page_size=10):
        self._check()
        with self._lock:
            items = sorted(self._bucket(project).items())
        hits = []
        needle = query.strip().lower()
        for permalink, record in items:
            content = record["content"]
            if needle != "*" and needle not in content.lower() and needle not in record["title"].lower():
                continue
            fm = parse_frontmatter(content)
            note_type = detect_type(permalink, record["title"], fm.get("type"))
            if types and note_type not in types:
                continue
            if after_date and record["updated_at"][:10] < after_date:
                continue
            hits.append(NoteHit(
                permalink=permalink,
                title=record["title"],
                note_type=note_type,
                content=content,
                updated_at=record["updated_at"],
            ))
        return hits[:page_size]


# ---- Fixtures ----

@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """Point every brain path at tmp_path and clear brain env vars."""
    monkeypatch.setenv("BRAIN_CONFIG_DIR", str(tmp_path / "brain-config"))
    monkeypatch.setenv("BRAIN_UPSTREAM_CONFIG", str(tmp_path / "basic-memory" / "config.json"))
    for var in (
        "BRAIN_PROJECT", "BRAIN_SESSION_SECRET", "BRAIN_INDEX_PATH",
        "EMBEDDING_CONCURRENCY", "OLLAMA_BASE_URL", "BRAIN_EMBED_MODEL",
        "BRAIN_VERBOSE",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def secret(monkeypatch):
    monkeypatch.setenv("BRAIN_SESSION_SECRET", SECRET)
    return SECRET


@pytest.fixture
def notes():
    return MockNoteStore()


@pytest.fixture
def mock_client():
    return MockModelClient()


@pytest.fixture
def index(tmp_path):
    idx = VectorIndex(tmp_path / "vectors.db")
    yield idx
    idx.close()


@pytest.fixture
def pipeline(notes, index, mock_client):
    p = EmbeddingPipeline(notes, index, mock_client, default_project="demo", concurrency=2)
    yield p
    p.shutdown()


@pytest.fixture
def search_service(notes, index, mock_client):
    return SearchService(notes, index, mock_client, default_project="demo")


@pytest.fixture
def sessions(notes, secret):
    return SessionStore(notes, secret=secret, project="demo", sleep=lambda s: None)
