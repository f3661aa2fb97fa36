"""Storage back ends for a GPU pool controller: in-memory and SQLite stores."""

__version__ = "0.1.0"
__all__ = ["types", "models", "composite", "memdb", "sqllog", "sqlstore"]