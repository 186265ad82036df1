"""Database layer for crawlfront."""

from .connection import DatabaseManager

__all__ = ["DatabaseManager"]
