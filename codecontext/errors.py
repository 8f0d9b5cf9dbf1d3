"""
Errors module for code context selection.

This module contains the exception hierarchy used throughout the package. Every
error carries a stable ``code`` and a ``recoverable`` flag so callers can tell
"nothing indexed yet" apart from configuration mistakes and transient provider
failures.
"""

from typing import List, Optional


class ContextError(Exception):
    """
    Base class for all errors raised by the package.

    Attributes:
        code: Machine-readable error code
        recoverable: Whether retrying (or running another command first) can fix it
        suggestion: Optional hint shown to the user
    """

    code = "CONTEXT_ERROR"
    recoverable = False

    def __init__(self, message: str, code: Optional[str] = None,
                 recoverable: Optional[bool] = None, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable
        self.suggestion = suggestion

    def __str__(self):
        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message


class NotInitializedError(ContextError):
    code = "NOT_INITIALIZED"

    def __init__(self, project_dir: str):
        super().__init__(
            f"No configuration found in {project_dir}",
            suggestion="call init_project() to create .codecontext/config.yaml",
        )


class SourceNotFoundError(ContextError):
    code = "SOURCE_NOT_FOUND"

    def __init__(self, source_id: str):
        super().__init__(f"Source not found: {source_id}")
        self.source_id = source_id


class PathNotFoundError(ContextError):
    code = "PATH_NOT_FOUND"

    def __init__(self, path: str):
        super().__init__(f"Path does not exist: {path}",
                         suggestion="check the source path in config.yaml")
        self.path = path


class IndexEmptyError(ContextError):
    """Raised when a query runs before anything has been indexed."""

    code = "INDEX_EMPTY"
    recoverable = True

    def __init__(self):
        super().__init__("The index is empty", suggestion="run index_sources() first")


class NoSourcesError(ContextError):
    code = "NO_SOURCES"

    def __init__(self):
        super().__init__("No sources configured",
                         suggestion="add at least one entry under 'sources' in config.yaml")


class EmbeddingError(ContextError):
    """Raised when the embedding provider keeps failing after all retries."""

    code = "EMBEDDING_ERROR"
    recoverable = True

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message, suggestion="retry later or check OPENAI_API_KEY")
        self.attempts = attempts


class QueryError(ContextError):
    code = "QUERY_ERROR"


class DatabaseError(ContextError):
    code = "DATABASE_ERROR"


class StorageTransactionError(DatabaseError):
    """Raised when a source's batch could not be committed and was rolled back."""

    code = "STORAGE_TRANSACTION_ERROR"

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id


class ParseError(ContextError):
    """Structural parse failure. Never escapes ParserRegistry.parse()."""

    code = "PARSE_ERROR"
    recoverable = True


class CacheCorruptionError(ContextError):
    code = "CACHE_CORRUPTION"
    recoverable = True


class IndexCancelledError(ContextError):
    code = "INDEX_CANCELLED"
    recoverable = True


class ConfigValidationError(ContextError):
    """
    Raised when the configuration is rejected.

    Attributes:
        errors: Every validation error found (never just the first)
        warnings: Non-fatal findings collected in the same pass
    """

    code = "CONFIG_INVALID"

    def __init__(self, errors: List, warnings: Optional[List] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        summary = "; ".join(f"{e.path}: {e.message}" for e in self.errors)
        super().__init__(f"Invalid configuration ({len(self.errors)} error(s)): {summary}")


def is_recoverable(error: BaseException) -> bool:
    """
    Tell whether an error is worth retrying or fixing by running another step.

    Args:
        error: The exception to inspect

    Returns:
        True for recoverable package errors, False for anything else
    """
    return isinstance(error, ContextError) and error.recoverable
