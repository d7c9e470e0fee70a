"""
LexVault Document Repository — facade over folders, versions, locks and storage.

Handles:
- Create (document row + version 1 in one transaction)
- Metadata update, move, copy
- Soft delete (status flag, lock cleared) and permanent purge
- Filtered listing / counting
- Download of the current or any historical version
- Version upload, restore and verification
- Check-out / check-in / force-unlock pass-throughs

Every public method takes an explicit SQLAlchemy ``Session`` as its first
argument and runs as its own transaction on it. Sessions are never shared
between threads.

Physical storage:
    {storage.base_path}/{id[:2]}/{id}/v{n}

Platform config:
    lexvault.yaml → documents.max_upload_size_mb, documents.lock_ttl_minutes
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from lexvault.db.base import utcnow
from lexvault.db.models import DocumentRow, DocumentVersionRow, FolderRow
from lexvault.db.session import atomic
from lexvault.documents.folders import FolderManager
from lexvault.documents.locks import LockManager
from lexvault.documents.mime import mime_type_for
from lexvault.documents.models import (
    AuthorizationDecision,
    Document,
    DocumentFilter,
    DocumentStatus,
    DocumentUpdate,
    DocumentVersion,
    NewDocument,
)
from lexvault.documents.storage import ContentSource, FileStore, StoragePathDeriver
from lexvault.documents.versions import VersionChainManager, audit_version
from lexvault.engine.errors import (
    LexVaultLockedError,
    LexVaultNotFoundError,
    LexVaultValidationError,
)
from lexvault.engine.logging import log, log_document_operation

logger = logging.getLogger("lexvault.documents.service")

M = TypeVar("M", bound=BaseModel)

# Fields update() may change; everything else belongs to the version chain
# or the lock manager.
MUTABLE_FIELDS = (
    "title",
    "description",
    "document_type",
    "status",
    "folder_id",
    "case_id",
    "access_level",
    "tags",
)


def _coerce(model: Type[M], value: Union[M, Dict[str, Any]]) -> M:
    """Accept a model instance or a plain dict; map pydantic errors to LexVault ones."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise LexVaultValidationError(
            f"Invalid {model.__name__}: {e.error_count()} error(s)",
            validation_errors=[
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DocumentRepository:
    """
    Document repository facade.

    One instance can serve any number of threads; all per-call state lives
    in the caller's session.
    """

    def __init__(
        self,
        store: FileStore,
        lock_ttl_minutes: Optional[int] = None,
        max_upload_bytes: Optional[int] = None,
        default_page_size: Optional[int] = None,
    ):
        self._store = store
        self._versions = VersionChainManager(store, max_upload_bytes=max_upload_bytes)
        self._locks = LockManager(self._versions, lock_ttl_minutes=lock_ttl_minutes)
        self._folders = FolderManager(self._versions)
        self._default_page_size = default_page_size

    @classmethod
    def from_config(cls, config: Optional[Any] = None) -> "DocumentRepository":
        """Build a repository from lexvault.yaml (or an already-loaded config)."""
        if config is None:
            from lexvault.engine.config import get_config
            config = get_config()
        store = FileStore(
            StoragePathDeriver(config.storage.base_path),
            chunk_size=config.storage.chunk_size,
        )
        return cls(
            store,
            lock_ttl_minutes=config.documents.lock_ttl_minutes,
            max_upload_bytes=config.documents.max_upload_size_mb * 1024 * 1024,
            default_page_size=config.documents.default_page_size,
        )

    @property
    def store(self) -> FileStore:
        return self._store

    @property
    def folders(self) -> FolderManager:
        return self._folders

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def version_chain(self) -> VersionChainManager:
        return self._versions

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _require_folder(session: Session, folder_id: str) -> None:
        if session.get(FolderRow, folder_id) is None:
            raise LexVaultNotFoundError(
                f"Folder '{folder_id}' not found",
                record_type="folder",
                record_id=folder_id,
            )

    @staticmethod
    def _require_writable(row: DocumentRow) -> None:
        if row.status in (DocumentStatus.ARCHIVED, DocumentStatus.DELETED):
            raise LexVaultValidationError(
                f"Document '{row.id}' is {DocumentStatus(row.status).name.lower()}",
                record_type="document",
                record_id=row.id,
            )

    def _insert_document(
        self,
        session: Session,
        meta: NewDocument,
        content: ContentSource,
        cancel: Optional[threading.Event] = None,
    ) -> DocumentVersion:
        """Insert a document row and its version 1 into the open transaction."""
        doc_id = meta.id or str(uuid.uuid4())
        if session.get(DocumentRow, doc_id) is not None:
            raise LexVaultValidationError(
                f"Document '{doc_id}' already exists",
                record_type="document",
                record_id=doc_id,
            )
        if meta.folder_id is not None:
            self._require_folder(session, meta.folder_id)

        row = DocumentRow(
            id=doc_id,
            filename=meta.filename,
            title=meta.title or meta.filename,
            description=meta.description,
            document_type=int(meta.document_type),
            status=int(DocumentStatus.ACTIVE),
            folder_id=meta.folder_id,
            case_id=meta.case_id,
            mime_type=mime_type_for(meta.filename),
            file_size=0,
            checksum="",
            current_version=0,
            storage_path="",
            access_level=int(meta.access_level),
            owner_id=meta.owner_id,
            tags=list(meta.tags),
        )
        session.add(row)
        session.flush()
        return self._versions.append(
            session, row, content, meta.change_description, meta.owner_id, cancel,
        )

    # -------------------------------------------------------------------
    # Create / Get / Update / Delete
    # -------------------------------------------------------------------

    def create(
        self,
        session: Session,
        metadata: Union[NewDocument, Dict[str, Any]],
        content: ContentSource,
        cancel: Optional[threading.Event] = None,
    ) -> Document:
        """
        Create a document and its version 1 in one transaction.

        The MIME type comes from the filename extension. A document is never
        observable without a version.
        """
        meta = _coerce(NewDocument, metadata)
        started = time.monotonic()
        with atomic(session, "create_document"):
            version = self._insert_document(session, meta, content, cancel)
            doc = Document.from_row(session.get(DocumentRow, version.document_id))

        audit_version(version)
        logger.info(f"Created document {doc.id} '{doc.filename}' ({doc.mime_type}, {doc.file_size} bytes)")
        log(log_document_operation(
            "create", doc.id, user_id=meta.owner_id,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        ))
        return doc

    def get(self, session: Session, document_id: str) -> Document:
        """Fetch by id. Soft-deleted documents are still returned."""
        with atomic(session, "get_document", read_only=True):
            row = session.get(DocumentRow, document_id, populate_existing=True)
            if row is None:
                raise LexVaultNotFoundError(
                    f"Document '{document_id}' not found",
                    record_type="document",
                    record_id=document_id,
                )
            return Document.from_row(row)

    def update(self, session: Session, document: Union[Document, Dict[str, Any]], user_id: Optional[str] = None) -> Document:
        """
        Write the mutable metadata fields of ``document`` back.

        Version, storage and lock fields in ``document`` are ignored. Status
        can not be moved into or out of LOCKED here: a copy read before
        checkout (ACTIVE) or during it (LOCKED) leaves the status as it is.
        """
        if isinstance(document, dict):
            raw = {k: v for k, v in document.items() if k == "id" or k in MUTABLE_FIELDS}
        else:
            raw = {"id": document.id, **{k: getattr(document, k) for k in MUTABLE_FIELDS}}
        patch = _coerce(DocumentUpdate, raw)
        document_id = patch.id
        changes = patch.changes()

        with atomic(session, "update_document"):
            row = self._versions.lock_document_row(session, document_id)

            if "status" in changes:
                wanted = changes["status"]
                current = DocumentStatus(row.status)
                if current == DocumentStatus.LOCKED:
                    if wanted in (DocumentStatus.ARCHIVED, DocumentStatus.DELETED):
                        raise LexVaultLockedError(
                            f"Document '{document_id}' is checked out; check it in first",
                            record_type="document",
                            record_id=document_id,
                            locked_by=row.locked_by,
                        )
                    changes.pop("status")
                elif wanted == DocumentStatus.LOCKED:
                    # Snapshot taken during a checkout that has since ended
                    changes.pop("status")
            if changes.get("folder_id") is not None and changes["folder_id"] != row.folder_id:
                self._require_folder(session, changes["folder_id"])
            if "title" in changes and not (changes["title"] or "").strip():
                raise LexVaultValidationError("title may not be empty", record_id=document_id)

            changed: List[str] = []
            for field, value in changes.items():
                if field in ("document_type", "status", "access_level"):
                    value = int(value)
                elif field == "tags":
                    value = list(value or [])
                if getattr(row, field) != value:
                    setattr(row, field, value)
                    changed.append(field)
            if changed:
                row.updated_at = utcnow()
            session.flush()
            doc = Document.from_row(row)

        if changed:
            logger.info(f"Updated document {document_id}: {', '.join(changed)}")
            log(log_document_operation("update", document_id, user_id=user_id, fields_changed=changed))
        return doc

    def delete(
        self,
        session: Session,
        document_id: str,
        permanent: bool = False,
        user_id: Optional[str] = None,
    ) -> None:
        """
        Soft delete: status DELETED, lock cleared, rows and files kept.
        Permanent: every version file, then version rows, then the document row.
        """
        with atomic(session, "delete_document"):
            row = self._versions.lock_document_row(session, document_id)
            if permanent:
                self._versions.purge(session, document_id)
            else:
                row.status = int(DocumentStatus.DELETED)
                row.locked_by = None
                row.locked_at = None
                row.updated_at = utcnow()

        logger.info(f"Deleted document {document_id} (permanent={permanent})")
        log(log_document_operation("delete", document_id, user_id=user_id, permanent=permanent))

    # -------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------

    @staticmethod
    def _apply_filter(stmt, criteria: DocumentFilter):
        if criteria.folder_id is not None:
            stmt = stmt.where(DocumentRow.folder_id == criteria.folder_id)
        if criteria.case_id is not None:
            stmt = stmt.where(DocumentRow.case_id == criteria.case_id)
        if criteria.document_type is not None:
            stmt = stmt.where(DocumentRow.document_type == int(criteria.document_type))
        if criteria.status is not None:
            stmt = stmt.where(DocumentRow.status == int(criteria.status))
        else:
            stmt = stmt.where(DocumentRow.status != int(DocumentStatus.DELETED))
        if criteria.owner_id is not None:
            stmt = stmt.where(DocumentRow.owner_id == criteria.owner_id)
        if criteria.mime_type is not None:
            stmt = stmt.where(DocumentRow.mime_type == criteria.mime_type)
        if criteria.access_level is not None:
            stmt = stmt.where(DocumentRow.access_level == int(criteria.access_level))
        if criteria.created_after is not None:
            stmt = stmt.where(DocumentRow.created_at >= criteria.created_after)
        if criteria.created_before is not None:
            stmt = stmt.where(DocumentRow.created_at < criteria.created_before)
        if criteria.text:
            pattern = f"%{_escape_like(criteria.text)}%"
            stmt = stmt.where(or_(
                DocumentRow.title.ilike(pattern, escape="\\"),
                DocumentRow.filename.ilike(pattern, escape="\\"),
                DocumentRow.description.ilike(pattern, escape="\\"),
            ))
        return stmt

    def list(
        self,
        session: Session,
        criteria: Optional[Union[DocumentFilter, Dict[str, Any]]] = None,
    ) -> List[Document]:
        """Documents matching every given filter field."""
        criteria = _coerce(DocumentFilter, criteria or {})
        column = getattr(DocumentRow, criteria.order_by)
        stmt = self._apply_filter(select(DocumentRow), criteria).order_by(
            column.desc() if criteria.order_desc else column.asc(),
            DocumentRow.id,
        )
        limit = criteria.limit or self._default_page_size
        if criteria.offset:
            stmt = stmt.offset(criteria.offset)
        if limit:
            stmt = stmt.limit(limit)

        with atomic(session, "list_documents", read_only=True):
            return [Document.from_row(r) for r in session.execute(stmt).scalars()]

    def count(
        self,
        session: Session,
        criteria: Optional[Union[DocumentFilter, Dict[str, Any]]] = None,
    ) -> int:
        """Number of documents matching the filter; offset and limit are ignored."""
        criteria = _coerce(DocumentFilter, criteria or {})
        stmt = self._apply_filter(select(func.count()).select_from(DocumentRow), criteria)
        with atomic(session, "count_documents", read_only=True):
            return session.execute(stmt).scalar_one()

    # -------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------

    def _resolve_path(self, session: Session, document_id: str, version: Optional[int]) -> str:
        with atomic(session, "resolve_version", read_only=True):
            row = session.get(DocumentRow, document_id, populate_existing=True)
            if row is None:
                raise LexVaultNotFoundError(
                    f"Document '{document_id}' not found",
                    record_type="document",
                    record_id=document_id,
                )
            if version is None or version <= 0:
                return row.storage_path
            path = session.execute(
                select(DocumentVersionRow.storage_path).where(
                    DocumentVersionRow.document_id == document_id,
                    DocumentVersionRow.version_number == version,
                )
            ).scalar_one_or_none()
            if path is None:
                raise LexVaultNotFoundError(
                    f"Version {version} of document '{document_id}' not found",
                    record_type="document_version",
                    record_id=document_id,
                    version_number=version,
                )
            return path

    def download(self, session: Session, document_id: str, version: Optional[int] = None) -> bytes:
        """Bytes of ``version``; None or a non-positive number means current."""
        return self._store.read_bytes(self._resolve_path(session, document_id, version))

    def download_to(
        self,
        session: Session,
        document_id: str,
        destination: Union[str, Path],
        version: Optional[int] = None,
    ) -> Path:
        """Stream a version to a local file without loading it into memory."""
        path = self._resolve_path(session, document_id, version)
        self._store.copy_to(path, destination)
        return Path(destination)

    def upload_new_version(
        self,
        session: Session,
        document_id: str,
        content: ContentSource,
        change_description: Optional[str],
        user_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> DocumentVersion:
        """
        Append a version outside an explicit checkout.

        Rejected when another user holds the lock; does not take or release
        the lock itself.
        """
        with atomic(session, "upload_new_version"):
            row = self._versions.lock_document_row(session, document_id)
            self._require_writable(row)
            self._locks.assert_can_upload(row, user_id)
            version = self._versions.append(session, row, content, change_description, user_id, cancel)
        audit_version(version)
        return version

    def restore_version(
        self,
        session: Session,
        document_id: str,
        version_number: int,
        user_id: str,
    ) -> DocumentVersion:
        """Make an earlier version current again by appending a copy of it."""
        with atomic(session, "restore_version"):
            row = self._versions.lock_document_row(session, document_id)
            self._require_writable(row)
            self._locks.assert_can_upload(row, user_id)
            version = self._versions.restore(session, row, version_number, user_id)
        audit_version(version)
        logger.info(f"Restored document {document_id} v{version_number} as v{version.version_number}")
        return version

    def versions(self, session: Session, document_id: str) -> List[DocumentVersion]:
        return self._versions.list_versions(session, document_id)

    def get_version(self, session: Session, document_id: str, version_number: int) -> DocumentVersion:
        return self._versions.get_version(session, document_id, version_number)

    def verify(self, session: Session, document_id: str, version: Optional[int] = None) -> Dict[int, bool]:
        """
        Re-hash one version (or all of them) against the recorded fingerprints.

        A non-positive ``version`` means the current one, as in download().
        """
        if version is None:
            numbers = sorted(v.version_number for v in self.versions(session, document_id))
        elif version <= 0:
            numbers = [self.get(session, document_id).current_version]
        else:
            numbers = [version]
        return {n: self._versions.verify_version(session, document_id, n) for n in numbers}

    # -------------------------------------------------------------------
    # Placement
    # -------------------------------------------------------------------

    def move(
        self,
        session: Session,
        document_id: str,
        folder_id: Optional[str],
        user_id: Optional[str] = None,
    ) -> Document:
        """Re-home a document; ``folder_id=None`` detaches it from any folder."""
        with atomic(session, "move_document"):
            row = self._versions.lock_document_row(session, document_id)
            if folder_id is not None:
                self._require_folder(session, folder_id)
            row.folder_id = folder_id
            row.updated_at = utcnow()
            session.flush()
            doc = Document.from_row(row)
        log(log_document_operation("move", document_id, user_id=user_id, fields_changed=["folder_id"]))
        return doc

    def copy(
        self,
        session: Session,
        document_id: str,
        user_id: str,
        destination_case_id: Optional[str] = None,
        destination_folder_id: Optional[str] = None,
    ) -> Document:
        """
        New document owned by ``user_id`` whose version 1 is the source's
        current content. Placement defaults to the source's case and folder.
        """
        with atomic(session, "copy_document"):
            src = self._versions.lock_document_row(session, document_id)
            meta = _coerce(NewDocument, {
                "filename": src.filename,
                "owner_id": user_id,
                "title": src.title,
                "description": src.description,
                "document_type": src.document_type,
                "folder_id": destination_folder_id or src.folder_id,
                "case_id": destination_case_id or src.case_id,
                "access_level": src.access_level,
                "tags": list(src.tags or []),
                "change_description": f"Copied from {document_id} v{src.current_version}",
            })
            with self._store.open(src.storage_path) as content:
                version = self._insert_document(session, meta, content)
            doc = Document.from_row(session.get(DocumentRow, version.document_id))

        audit_version(version)
        logger.info(f"Copied document {document_id} -> {doc.id}")
        log(log_document_operation("copy", doc.id, user_id=user_id))
        return doc

    # -------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------

    def checkout(self, session: Session, document_id: str, user_id: str) -> Document:
        return self._locks.checkout(session, document_id, user_id)

    def checkin(
        self,
        session: Session,
        document_id: str,
        user_id: str,
        content: Optional[ContentSource] = None,
        change_description: Optional[str] = None,
    ) -> Document:
        return self._locks.checkin(session, document_id, user_id, content, change_description)

    def force_unlock(
        self,
        session: Session,
        document_id: str,
        acting_user_id: str,
        authorization: Optional[AuthorizationDecision],
    ) -> Document:
        return self._locks.force_unlock(session, document_id, acting_user_id, authorization)

    def __repr__(self) -> str:
        return f"<DocumentRepository root='{self._store.base_path}'>"
