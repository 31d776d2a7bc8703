"""Error taxonomy for noteindex.

Every error carries enough context (source path or document id, query
fragment and position) to diagnose a failure without re-running it.
"""
from __future__ import annotations


class NoteIndexError(Exception):
    """Base class for all errors raised by noteindex."""


class ParseError(NoteIndexError):
    """A note could not be parsed at all.

    Malformed sub-sections never raise; they are reported as warnings on the
    parse result. This error is reserved for structurally unparseable files.
    """

    def __init__(self, path: str, reason: str, line: int | None = None, column: int | None = None) -> None:
        self.path = str(path)
        self.reason = reason
        self.line = line
        self.column = column
        location = self.path
        if line is not None:
            location += f":{line}"
            if column is not None:
                location += f":{column}"
        super().__init__(f"{location}: {reason}")


class QueryError(NoteIndexError):
    """Base class for errors that reject a query before execution."""

    def __init__(self, message: str, query: str = "", position: int | None = None) -> None:
        self.query = query
        self.position = position
        super().__init__(message)

    @property
    def fragment(self) -> str:
        """The part of the query starting at the offending position."""
        if self.position is None:
            return self.query
        return self.query[self.position:self.position + 24]


class QuerySyntaxError(QueryError):
    def __init__(self, query: str, position: int, reason: str) -> None:
        self.reason = reason
        super().__init__(f"{reason} at position {position}: {query[position:position + 24]!r}", query, position)


class UnknownFieldError(QueryError):
    def __init__(self, field: str, query: str = "", position: int | None = None) -> None:
        self.field = field
        super().__init__(f"Unknown field: {field!r}", query, position)


class RangeTypeError(QueryError):
    """A value does not match the declared type of its field."""

    def __init__(
        self,
        field: str,
        value: str,
        reason: str = "",
        query: str = "",
        position: int | None = None,
    ) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        message = f"Invalid value {value!r} for field {field!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message, query, position)


class EmbeddingError(NoteIndexError):
    """The embedding provider failed.

    `transient` marks failures worth retrying (timeouts, connection resets,
    rate limits). `attempts` is filled in once retries are exhausted.
    """

    def __init__(self, reason: str, doc_id: str | None = None, attempts: int = 0, transient: bool = True) -> None:
        self.reason = reason
        self.doc_id = doc_id
        self.attempts = attempts
        self.transient = transient
        message = reason
        if doc_id:
            message = f"[{doc_id}] {message}"
        if attempts:
            message += f" (after {attempts} attempts)"
        super().__init__(message)


class StorageError(NoteIndexError):
    """Index read or write failure. Fatal to the current operation."""

    def __init__(self, reason: str, doc_id: str | None = None) -> None:
        self.reason = reason
        self.doc_id = doc_id
        super().__init__(f"[{doc_id}] {reason}" if doc_id else reason)
