# magpie/exceptions.py
"""
Shared exception classes used across the search code.

Validation problems are raised before any index access; storage failures are
wrapped into a single retrieval error so callers can report them distinctly.
"""

from __future__ import annotations


class SearchValidationError(ValueError):
    """
    Raised when caller-supplied search or suggestion input is invalid.

    Attributes:
        code:
            Stable machine-readable error code, e.g. "invalid_query",
            "invalid_limit", "invalid_date". The HTTP layer returns it as the
            "error" field of a 400 response.
        detail:
            Human-readable description of the problem.
    """

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


class RetrievalError(RuntimeError):
    """
    Raised when the record store or full-text index fails to answer a query.

    Examples:
        - sqlite3.OperationalError (locked database, missing table)
        - FTS5 query syntax errors
        - connection failures
    """

    pass


__all__ = [
    "SearchValidationError",
    "RetrievalError",
]
