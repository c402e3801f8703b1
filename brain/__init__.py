"""
Brain: local-first knowledge memory with hybrid search and session state.

Notes live in an upstream markdown note store; Brain keeps a chunked vector
index beside it, answers semantic/keyword queries, persists signed session
documents, and owns the user-facing configuration.
"""

__version__ = "0.4.0"
