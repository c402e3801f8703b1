"""
Process-wide resources.

One ``Runtime`` owns the config manager, model client, vector index,
upstream note-store client, embedding pipeline and the services built on
them. Everything is created once and closed together; nothing is
re-created per operation. The session store needs BRAIN_SESSION_SECRET
and is created on first use so commands that never touch sessions work
without it.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from .bootstrap import BootstrapBuilder
from .config import ConfigManager
from .config.paths import expand_path
from .errors import BrainError
from .hooks import HookLayer
from .logging_config import configure_ops_log
from .model_client import get_model_client, reset_model_client
from .notes import BasicMemoryClient
from .pipeline import EmbeddingPipeline
from .search import SearchService
from .session import SessionStore
from .vector_index import VectorIndex
from .workflow import WorkflowCoordinator

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, config_dir: Optional[Path] = None, *, notes=None, client=None, index=None):
        self.config_manager = ConfigManager(config_dir, catch_up=self._catch_up)
        # --- Persistent operations log ---
        self._ops_log_handler = configure_ops_log(self.config_manager.config_dir)
        config = self.config_manager.startup()
        self.project = os.environ.get("BRAIN_PROJECT") or None

        self.client = client or get_model_client(
            os.environ.get("OLLAMA_BASE_URL") or config.embedding.base_url,
            os.environ.get("BRAIN_EMBED_MODEL") or config.embedding.model,
        )
        index_path = os.environ.get("BRAIN_INDEX_PATH")
        self.index = index or VectorIndex(
            Path(index_path) if index_path else self.config_manager.config_dir / "vectors.db"
        )
        self.notes = notes or BasicMemoryClient(default_project=self.project)
        concurrency = None if os.environ.get("EMBEDDING_CONCURRENCY") else config.embedding.concurrency
        self.pipeline = EmbeddingPipeline(
            self.notes, self.index, self.client,
            default_project=self.project, concurrency=concurrency,
        )
        self.search = SearchService(self.notes, self.index, self.client, default_project=self.project)
        self._lock = threading.Lock()
        self._sessions: Optional[SessionStore] = None
        self._coordinator: Optional[WorkflowCoordinator] = None
        self.hooks = HookLayer(lambda: self.sessions, self._bootstrap, self.resolve_project)

    def _catch_up(self, project: str):
        return self.pipeline.catch_up_project(project)

    def _bootstrap(self) -> BootstrapBuilder:
        try:
            sessions = self.sessions
        except BrainError as e:
            logger.debug("Bootstrap without session info: %s", e)
            sessions = None
        return BootstrapBuilder(self.notes, self.pipeline, sessions)

    @property
    def sessions(self) -> SessionStore:
        """Session store (raises SecretMissingError without BRAIN_SESSION_SECRET)."""
        with self._lock:
            if self._sessions is None:
                self._sessions = SessionStore(self.notes, project=self.project)
            return self._sessions

    @property
    def coordinator(self) -> WorkflowCoordinator:
        sessions = self.sessions
        with self._lock:
            if self._coordinator is None:
                self._coordinator = WorkflowCoordinator(
                    sessions, self._bootstrap(), project_resolver=self.resolve_project,
                )
            return self._coordinator

    def resolve_project(self, cwd: Optional[str] = None) -> Optional[str]:
        """BRAIN_PROJECT, else the configured project whose code_path contains cwd."""
        if self.project:
            return self.project
        cwd = expand_path(cwd or os.getcwd())
        best, best_len = None, -1
        for name, project in self.config_manager.config.projects.items():
            root = expand_path(project.code_path)
            if (cwd == root or cwd.startswith(root.rstrip(os.sep) + os.sep)) and len(root) > best_len:
                best, best_len = name, len(root)
        return best

    def close(self) -> None:
        if self._coordinator is not None:
            self._coordinator.shutdown()
        self.pipeline.shutdown(wait=False)
        self.config_manager.close()
        close_notes = getattr(self.notes, "close", None)
        if close_notes is not None:
            close_notes()
        self.index.close()
        reset_model_client()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("brain").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """The shared Runtime, created on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
        return _runtime


def reset_runtime() -> None:
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close()
            _runtime = None
