"""Database models."""

from backend.models.document import Document

__all__ = [
    "Document",
]
