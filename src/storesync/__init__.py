"""storesync - Bidirectional SQLite/PostgREST sync engine for retail stores."""

__version__ = "0.1.0"
