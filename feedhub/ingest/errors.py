"""Ingestion error types."""

from __future__ import annotations


class FeedError(RuntimeError):
    pass


class FetchError(FeedError):
    def __init__(self, message: str, *, status_code: int | None = None, status_text: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text


class ParseError(FeedError):
    pass


class MappingResolutionError(FeedError):
    pass


class AllocationError(FeedError):
    pass


class UpsertError(FeedError):
    pass


class SupplierConfigError(FeedError):
    pass


class SupplierNotFoundError(FeedError):
    pass
