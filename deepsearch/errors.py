"""Exception taxonomy for the evidence pipeline.

Most of these never escape a run: the orchestrator turns them into entries of its
error list and into synthetic error rows. Only ``EmptyQueryError`` and
``SearchCancelled`` reach the caller of ``DeepSearchPipeline.run``.
"""
from __future__ import annotations


class DeepSearchError(Exception):
    """Base class for pipeline failures."""


class EmptyQueryError(DeepSearchError, ValueError):
    pass


class SearchCancelled(DeepSearchError):
    pass


class ToolInputError(DeepSearchError):
    """A tool call carried arguments the tool cannot act on."""


class ToolBudgetExceeded(DeepSearchError):
    def __init__(self, tool: str, limit: int):
        self.tool = tool
        self.limit = limit
        super().__init__(f"{tool} call budget exceeded ({limit}).")


class RepeatedCallBlocked(DeepSearchError):
    def __init__(self, tool: str, limit: int, key: str):
        self.tool = tool
        self.limit = limit
        self.key = key
        noun = "query" if tool == "search" else "URL"
        super().__init__(f"repeated {tool} {noun} blocked ({limit}x max): {key}")


class SearchProviderError(DeepSearchError):
    """Structured search failure.

    ``kind`` is one of ``config``, ``http``, ``schema`` or ``request``.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        kind: str,
        status_code: int | None = None,
    ):
        self.provider = provider
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)


class FetchFailure(DeepSearchError):
    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class ContentUnavailable(DeepSearchError):
    pass


class ValidationDropped(DeepSearchError):
    def __init__(self, message: str, *, url: str):
        self.url = url
        super().__init__(message)


class FinalizeMissing(DeepSearchError):
    pass


class PersistenceReadFailure(DeepSearchError):
    def __init__(self, message: str, *, path: str):
        self.path = path
        super().__init__(message)
