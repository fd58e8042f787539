"""Errors raised while migrating the product catalog.

Row-level errors never escape a migration run: the reconciler catches them
at the row boundary and turns them into an ``error`` result.
"""

from __future__ import annotations


class CatalogError(Exception):
    """Base exception for catalog operations."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class FeedError(CatalogError):
    """The spreadsheet cannot be opened or has an unsupported format."""


class ValidationError(CatalogError):
    """A feed row carries invalid data (missing description, price <= 0)."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class CatalogLookupError(CatalogError, LookupError):
    """A category, brand or line could not be found nor created."""

    def __init__(self, kind: str, name: str, message: str | None = None) -> None:
        super().__init__(message or f"Error al obtener/crear {kind} \"{name}\"")
        self.kind = kind
        self.name = name


class WriteError(CatalogError):
    """An insert or update against the store failed."""


class AssociationError(CatalogError):
    """Default plan associations could not be created for a product."""


class BulkAssociationAborted(CatalogError):
    """Mass association stopped after too many failures without a single success."""

    def __init__(self, message: str, *, added: int, skipped: int, errors: int) -> None:
        super().__init__(message)
        self.added = added
        self.skipped = skipped
        self.errors = errors
