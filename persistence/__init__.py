from persistence.store import SQLiteStore

__all__ = ["SQLiteStore"]
