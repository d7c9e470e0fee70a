"""
LexVault Version Chain — append-only version history per document.

append_version runs as one transaction:
    1. lock the document row, new_version = current_version + 1
    2. derive the storage path for (document_id, new_version)
    3. stream-copy the content there, hashing while copying
    4. insert the DocumentVersion row
    5. compare-and-increment the document's current-version pointer
    6. commit

A failure after step 3 rolls back every relational write; the copied file
stays behind as an orphan for the reconciliation sweep. Version numbers are
only assigned under the row lock, so a file already sitting at the target
path can only be the leftover of an aborted attempt at the same number; it
is replaced, never served.

The document row lock is the serialization point: SELECT ... FOR UPDATE on
PostgreSQL, BEGIN IMMEDIATE on SQLite (see lexvault.db.session).
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from lexvault.db.base import utcnow
from lexvault.db.models import DocumentRow, DocumentVersionRow
from lexvault.db.session import atomic
from lexvault.documents.models import DocumentStatus, DocumentVersion
from lexvault.documents.storage import ContentSource, FileStore, open_source
from lexvault.engine.errors import (
    LexVaultCancelledError,
    LexVaultDatabaseError,
    LexVaultNotFoundError,
    LexVaultValidationError,
)
from lexvault.engine.logging import log, log_storage_event, log_version_appended

logger = logging.getLogger("lexvault.documents.versions")


class VersionChainManager:
    """Owns document_versions rows and the version/storage fields of documents."""

    def __init__(self, store: FileStore, max_upload_bytes: Optional[int] = None):
        self._store = store
        self._max_upload_bytes = max_upload_bytes

    @property
    def store(self) -> FileStore:
        return self._store

    # -------------------------------------------------------------------
    # Row access
    # -------------------------------------------------------------------

    @staticmethod
    def lock_document_row(session: Session, document_id: str) -> DocumentRow:
        """Load a document row for update; raises NotFound."""
        stmt = (
            select(DocumentRow)
            .where(DocumentRow.id == document_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise LexVaultNotFoundError(
                f"Document '{document_id}' not found",
                record_type="document",
                record_id=document_id,
            )
        return row

    @staticmethod
    def _version_row(session: Session, document_id: str, version_number: int) -> DocumentVersionRow:
        row = session.execute(
            select(DocumentVersionRow).where(
                DocumentVersionRow.document_id == document_id,
                DocumentVersionRow.version_number == version_number,
            )
        ).scalar_one_or_none()
        if row is None:
            raise LexVaultNotFoundError(
                f"Version {version_number} of document '{document_id}' not found",
                record_type="document_version",
                record_id=document_id,
                version_number=version_number,
            )
        return row

    @staticmethod
    def _require_document(session: Session, document_id: str) -> DocumentRow:
        row = session.get(DocumentRow, document_id, populate_existing=True)
        if row is None:
            raise LexVaultNotFoundError(
                f"Document '{document_id}' not found",
                record_type="document",
                record_id=document_id,
            )
        return row

    # -------------------------------------------------------------------
    # Append (inside a caller's transaction)
    # -------------------------------------------------------------------

    def append(
        self,
        session: Session,
        row: DocumentRow,
        content: ContentSource,
        change_description: Optional[str],
        author_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> DocumentVersion:
        """
        Append a version to an already-locked document row.

        Does not commit; the caller owns the transaction. ``row`` must have
        been loaded through lock_document_row (or inserted in this transaction).
        """
        if not author_id:
            raise LexVaultValidationError("author_id is required", record_id=row.id)
        if cancel is not None and cancel.is_set():
            raise LexVaultCancelledError(
                f"Upload to document '{row.id}' cancelled before copy",
                record_type="document",
                record_id=row.id,
            )

        started = time.monotonic()
        expected = row.current_version
        new_version = expected + 1
        path = self._store.deriver.path_for(row.id, new_version)
        if self._store.exists(path):
            logger.warning(f"Replacing orphaned file from an aborted append: {path}")
            self._store.delete(path)

        with open_source(content) as source:
            checksum, size = self._store.write_stream(
                source, path, max_bytes=self._max_upload_bytes, cancel=cancel,
            )

        now = utcnow()
        version_row = DocumentVersionRow(
            id=str(uuid.uuid4()),
            document_id=row.id,
            version_number=new_version,
            checksum=checksum,
            file_size=size,
            storage_path=str(path),
            change_description=change_description or f"Version {new_version}",
            created_by=author_id,
            created_at=now,
        )
        session.add(version_row)
        session.flush()

        result = session.execute(
            update(DocumentRow)
            .where(DocumentRow.id == row.id, DocumentRow.current_version == expected)
            .values(
                current_version=new_version,
                storage_path=str(path),
                file_size=size,
                checksum=checksum,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise LexVaultDatabaseError(
                f"Concurrent version bump on document '{row.id}' (expected v{expected})",
                operation="append_version",
                record_id=row.id,
            )
        session.refresh(row)

        logger.info(
            f"Appended v{new_version} to document {row.id} "
            f"({size} bytes, sha256={checksum[:12]}, {(time.monotonic() - started) * 1000:.1f} ms)"
        )
        return DocumentVersion.from_row(version_row)

    def restore(
        self,
        session: Session,
        row: DocumentRow,
        version_number: int,
        author_id: str,
    ) -> DocumentVersion:
        """Append a new version whose content is a copy of ``version_number``."""
        source_row = self._version_row(session, row.id, version_number)
        with self._store.open(source_row.storage_path) as source:
            return self.append(
                session, row, source,
                f"Restored from version {version_number}",
                author_id,
            )

    # -------------------------------------------------------------------
    # Public, self-contained transactions
    # -------------------------------------------------------------------

    def append_version(
        self,
        session: Session,
        document_id: str,
        content: ContentSource,
        change_description: Optional[str],
        author_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> DocumentVersion:
        """Append a version in its own transaction. See module docstring."""
        with atomic(session, "append_version"):
            row = self.lock_document_row(session, document_id)
            if row.status == DocumentStatus.DELETED:
                raise LexVaultValidationError(
                    f"Document '{document_id}' is deleted",
                    record_type="document",
                    record_id=document_id,
                )
            version = self.append(session, row, content, change_description, author_id, cancel)
        audit_version(version)
        return version

    def get_version(self, session: Session, document_id: str, version_number: int) -> DocumentVersion:
        with atomic(session, "get_version", read_only=True):
            self._require_document(session, document_id)
            return DocumentVersion.from_row(self._version_row(session, document_id, version_number))

    def list_versions(self, session: Session, document_id: str) -> List[DocumentVersion]:
        """All versions of a document, newest first."""
        with atomic(session, "list_versions", read_only=True):
            self._require_document(session, document_id)
            rows = session.execute(
                select(DocumentVersionRow)
                .where(DocumentVersionRow.document_id == document_id)
                .order_by(DocumentVersionRow.version_number.desc())
            ).scalars().all()
            return [DocumentVersion.from_row(r) for r in rows]

    def verify_version(self, session: Session, document_id: str, version_number: int) -> bool:
        """Re-hash a stored version and compare with its recorded fingerprint."""
        version = self.get_version(session, document_id, version_number)
        if not self._store.exists(version.storage_path):
            logger.warning(f"Missing file for {document_id} v{version_number}: {version.storage_path}")
            ok = False
        else:
            ok = self._store.fingerprint(version.storage_path) == version.checksum
        if not ok:
            log(log_storage_event(
                "version_verification_failed",
                {"document_id": document_id, "version_number": version_number},
                level="ERROR",
            ))
        return ok

    # -------------------------------------------------------------------
    # Purge (inside a caller's transaction)
    # -------------------------------------------------------------------

    def purge(self, session: Session, document_id: str) -> int:
        """
        Permanently remove a document: every version file, then every
        version row, then the document row. Missing files are skipped so a
        retried purge completes.

        Returns the number of files removed.
        """
        paths = session.execute(
            select(DocumentVersionRow.storage_path)
            .where(DocumentVersionRow.document_id == document_id)
        ).scalars().all()

        removed = 0
        for path in paths:
            if self._store.delete(path):
                removed += 1

        session.execute(delete(DocumentVersionRow).where(DocumentVersionRow.document_id == document_id))
        session.execute(delete(DocumentRow).where(DocumentRow.id == document_id))
        logger.info(f"Purged document {document_id} ({removed} file(s) removed)")
        return removed


def audit_version(version: DocumentVersion) -> None:
    """Emit the structured audit entry for a committed version."""
    log(log_version_appended(
        document_id=version.document_id,
        version_number=version.version_number,
        user_id=version.created_by,
        checksum=version.checksum,
        size_bytes=version.file_size,
        storage_path=version.storage_path,
    ))
