"""
LexVault Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Every test that touches the repository gets its own file-backed SQLite
database and storage root under tmp_path.
"""

from __future__ import annotations

from pathlib import Path

import pytest


# ---------------------------------------------------------------------------
# Global singletons
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch):
    """Reset global singletons between tests."""
    import lexvault.engine.config as cfg_mod
    import lexvault.engine.logging as log_mod

    cfg_mod._config = None
    log_mod._global_queue = None
    yield
    if log_mod._global_queue is not None:
        log_mod.shutdown_logging()
        log_mod._global_queue = None
    cfg_mod._config = None


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a clean temp directory."""
    return tmp_path


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'lexvault.db'}"


@pytest.fixture
def session_factory(db_url):
    """Session factory bound to a fresh SQLite database with all tables."""
    from lexvault.db.session import close_all_sessions, init_repository_db

    factory = init_repository_db(db_url, create_tables=True)
    yield factory
    close_all_sessions()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Storage / repository
# ---------------------------------------------------------------------------

@pytest.fixture
def storage_root(tmp_path) -> Path:
    return tmp_path / "storage"


@pytest.fixture
def store(storage_root):
    from lexvault.documents.storage import FileStore, StoragePathDeriver

    # Small chunks so multi-chunk copies are exercised
    return FileStore(StoragePathDeriver(storage_root), chunk_size=16)


@pytest.fixture
def repo(store):
    from lexvault.documents.service import DocumentRepository

    return DocumentRepository(store, max_upload_bytes=1024 * 1024)


@pytest.fixture
def make_document(repo, session):
    """Factory creating a document with the given content."""
    from lexvault.documents.models import NewDocument

    def _make(filename: str = "contract.pdf", content: bytes = b"v1 content", **fields):
        fields.setdefault("owner_id", "owner")
        return repo.create(session, NewDocument(filename=filename, **fields), content)

    return _make


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

@pytest.fixture
def audit_log(tmp_path):
    """Start the async audit queue writing under tmp_path/logs."""
    from lexvault.engine.logging import init_logging

    queue = init_logging(log_dir=str(tmp_path / "logs"), flush_interval_ms=10)
    return queue


@pytest.fixture
def read_audit(tmp_path):
    """Flush the audit queue and return entries for one object type / category."""
    import json

    from lexvault.engine.logging import get_log_queue

    def _read(object_type: str, category: str = "execution"):
        queue = get_log_queue()
        if queue is not None:
            queue.stop()
        entries = []
        for f in sorted((tmp_path / "logs" / object_type / category).glob("*.jsonl")):
            for line in f.read_text().splitlines():
                if line.strip():
                    entries.append(json.loads(line))
        return entries

    return _read
