"""Database schema shipped as package data."""

from .manager import AccessSchemaManager

__all__ = ["AccessSchemaManager"]
