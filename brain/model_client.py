"""
HTTP client for the local embedding model server (Ollama-compatible).

Every input is prefixed with ``"{task_prefix}: "`` before it is sent;
nomic-style embedding models need the task marker to place documents and
queries in the same space. The single-text path is a batch of one so the
prefix can never be skipped.

One client (and one keep-alive connection pool) serves the whole process:
use get_model_client().
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

import httpx
import requests

from .errors import (
    DeadlineExceededError,
    IndexMismatchError,
    ModelClientError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "nomic-embed-text"

# Task prefixes understood by the embedding model
DOCUMENT_PREFIX = "search_document"
QUERY_PREFIX = "search_query"

# Retry config: 1s, 2s between attempts
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

# Per-request budget
REQUEST_TIMEOUT = 60.0
HEALTH_TIMEOUT = 5.0

# Transport failures that are worth another attempt (reset, EOF, refused)
_RETRYABLE_TRANSPORT = (httpx.NetworkError, httpx.RemoteProtocolError)


def apply_prefix(text: str, task_prefix: str) -> str:
    return f"{task_prefix}: {text}"


class ModelClient:
    """Embedding client with retry classification.

    5xx and transport resets are retried with exponential backoff.
    4xx, count mismatches and deadline expiry are fatal.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        *,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def base_url(self) -> str:
        return self._base_url

    def embed_one(
        self,
        text: str,
        task_prefix: str = DOCUMENT_PREFIX,
        model: Optional[str] = None,
    ) -> list[float]:
        """Embed a single text. Implemented as a batch of one."""
        return self.embed_batch([text], task_prefix, model)[0]

    def embed_batch(
        self,
        texts: list[str],
        task_prefix: str = DOCUMENT_PREFIX,
        model: Optional[str] = None,
    ) -> list[list[float]]:
        """POST /api/embed -> one vector per input text, in input order.

        Raises:
            IndexMismatchError: server returned a different number of vectors
            DeadlineExceededError: request exceeded the timeout budget
            ModelClientError: 4xx, or retries exhausted
        """
        if not texts:
            return []

        payload = {
            "model": model or self._model,
            "input": [apply_prefix(t, task_prefix) for t in texts],
            "truncate": True,
        }

        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._client.post("/api/embed", json=payload)
                resp.raise_for_status()
                embeddings = resp.json().get("embeddings")
                if not isinstance(embeddings, list):
                    raise ModelClientError("Embedding response has no 'embeddings' array")
                if len(embeddings) != len(texts):
                    raise IndexMismatchError(len(texts), len(embeddings))
                return embeddings
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise ModelClientError(
                        f"Embedding request rejected: {e.response.status_code} {e.response.text}"
                    ) from e
                last_error = e
            except httpx.TimeoutException as e:
                raise DeadlineExceededError(
                    f"Embedding request exceeded {self._timeout:.0f}s"
                ) from e
            except _RETRYABLE_TRANSPORT as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Embed attempt %d failed, retrying in %.1fs: %s",
                    attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise ModelClientError(
            f"Embedding failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def health(self) -> str:
        """GET /api/tags -> "ok" when the server answers, else "fail"."""
        try:
            resp = requests.get(f"{self._base_url}/api/tags", timeout=HEALTH_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.debug("Model server health check failed: %s", e)
            return "fail"
        return "ok"

    def has_model(self) -> bool:
        """Check whether the configured model is installed on the server."""
        try:
            resp = requests.get(f"{self._base_url}/api/tags", timeout=HEALTH_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ModelClientError(
                f"Cannot reach model server at {self._base_url}. "
                "Is Ollama running? Start it with: ollama serve"
            ) from e
        installed = {m.get("name") for m in resp.json().get("models", [])}
        bare = self._model.split(":")[0]
        return any(
            name in installed
            for name in (self._model, f"{self._model}:latest", bare, f"{bare}:latest")
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
# Process-wide singleton
# ---------------------------------------------------------------------------

_client: Optional[ModelClient] = None
_client_lock = threading.Lock()


def get_model_client(
    base_url: Optional[str] = None,
    model: Optional[str] = None,
) -> ModelClient:
    """Return the shared ModelClient, creating it on first use.

    Arguments only apply on first creation; env vars OLLAMA_BASE_URL and
    BRAIN_EMBED_MODEL fill in when they are omitted.
    """
    global _client
    with _client_lock:
        if _client is None:
            _client = ModelClient(
                base_url or os.environ.get("OLLAMA_BASE_URL", DEFAULT_BASE_URL),
                model or os.environ.get("BRAIN_EMBED_MODEL", DEFAULT_MODEL),
            )
        return _client


def reset_model_client() -> None:
    """Close and drop the shared client (config change, shutdown, tests)."""
    global _client
    with _client_lock:
        if _client is not None:
            _client.close()
            _client = None
