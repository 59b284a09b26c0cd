"""
Luna - Exception Hierarchy
===========================
Domain errors raised across ingestion, retrieval and conversation turns.

Propagation policy
------------------
- ``IndexUnavailableError`` / ``EmbeddingModelError`` at query time are
  absorbed by ``RetrievalService`` (empty result, warning log).
- ``UpstreamGenerationError`` aborts the current turn only; user and
  context turns already persisted are kept.
- ``IngestionError`` aborts the whole run; completed checkpoints stay on
  disk for a cheap retry.
"""

from __future__ import annotations

from typing import Any


class LunaError(Exception):
    """Base exception for all Luna errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(LunaError):
    """Raised when a required input (prompt, owner key) is missing."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class NotFoundError(LunaError):
    """Raised when a conversation, user or index path does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}", {"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier


class IndexUnavailableError(LunaError):
    """Raised when a vector index is missing, corrupt or failed to build."""


class EmbeddingModelError(LunaError):
    """Raised when the embedding model cannot be loaded or fails to encode."""


class UpstreamGenerationError(LunaError):
    """Raised when the external text generator fails during a turn."""


class IngestionError(LunaError):
    """Raised when extraction, embedding or index persistence fails."""
