"""
LexVault — Versioned legal document repository.

Stores binary files under an append-only version chain, enforces exclusive
check-out / check-in locking and organizes documents in a folder tree with
materialized paths. Metadata lives in a relational store (SQLAlchemy);
content lives on the filesystem under sharded, write-once version paths.

Entry point:
    from lexvault.documents import DocumentRepository
"""

__version__ = "0.1.0"
__all__ = ["engine", "db", "documents"]
