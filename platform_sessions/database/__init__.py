"""Database layer for the platform session service."""

from .schema import init_database
from .operations import Database, KVBackend

__all__ = ["init_database", "Database", "KVBackend"]
