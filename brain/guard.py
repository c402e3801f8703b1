"""
Input guard for search queries.

Rejects queries that are oversized, carry control bytes, try path
traversal, or look like pattern probing (wildcard/regex-heavy strings used
to enumerate the store). The guard is created once and shared.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000

# Characters typical of wildcard / regex probing
PROBE_CHARS = frozenset("*?[]()|\\^$%")
PROBE_RATIO = 0.3   # share of probe chars in the query
PROBE_RUN = 5       # consecutive probe chars

_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAVERSAL = re.compile(r"(\.\.[/\\])|(%2e%2e)", re.IGNORECASE)


class GuardError(ValueError):
    """Raised when a query fails a guard check."""


class QueryGuard:
    """Bounds and sanity checks for free-text queries."""

    def __init__(
        self,
        max_length: int = MAX_QUERY_LENGTH,
        probe_ratio: float = PROBE_RATIO,
        probe_run: int = PROBE_RUN,
    ):
        self._max_length = max_length
        self._probe_ratio = probe_ratio
        self._probe_run = probe_run

    def check(self, query: str) -> str:
        """Validate a query; returns it stripped.

        Raises GuardError on violation.
        """
        if len(query) > self._max_length:
            raise GuardError(
                f"Query too long ({len(query)} chars, max {self._max_length})"
            )
        if _CONTROL.search(query):
            raise GuardError("Query contains control characters")
        if _TRAVERSAL.search(query):
            raise GuardError("Query contains path traversal sequence")

        stripped = query.strip()
        if stripped and stripped != "*":
            probe = 0
            run = 0
            for ch in stripped:
                if ch in PROBE_CHARS:
                    probe += 1
                    run += 1
                    if run >= self._probe_run:
                        raise GuardError("Query looks like pattern probing")
                else:
                    run = 0
            if len(stripped) >= 4 and probe / len(stripped) >= self._probe_ratio:
                raise GuardError("Query looks like pattern probing")
        return stripped
