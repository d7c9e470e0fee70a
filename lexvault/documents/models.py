"""
LexVault Document & Folder Models — Pydantic definitions for the repository API.

Document: File metadata, current-version pointer and embedded edit lock.
DocumentVersion: Immutable numbered snapshot of a document's content.
Folder: Node of the folder tree with a materialized path.
NewDocument / DocumentFilter: inputs to create and list.
AuthorizationDecision: verdict from an external policy collaborator.

Rows live in lexvault.db.models; ``from_row`` converts them.
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


class DocumentType(IntEnum):
    PLEADING = 0
    MOTION = 1
    BRIEF = 2
    ORDER = 3
    JUDGMENT = 4
    CONTRACT = 5
    AGREEMENT = 6
    CORRESPONDENCE = 7
    MEMO = 8
    EVIDENCE = 9
    EXHIBIT = 10
    TRANSCRIPT = 11
    DISCOVERY = 12
    SUBPOENA = 13
    AFFIDAVIT = 14
    DECLARATION = 15
    NOTICE = 16
    REPORT = 17
    FORM = 18
    TEMPLATE = 19
    OTHER = 20


class DocumentStatus(IntEnum):
    ACTIVE = 0
    LOCKED = 1
    ARCHIVED = 2
    DELETED = 3


class AccessLevel(IntEnum):
    NONE = 0
    READ = 1
    WRITE = 2
    ADMIN = 3


# ---------------------------------------------------------------------------
# Folder
# ---------------------------------------------------------------------------

class Folder(BaseModel):
    """
    Folder record.

    ``path`` is materialized when the folder is created (``/Cases/Smith``).
    Renaming a folder recomputes the path of its whole subtree.
    """

    id: str
    name: str
    parent_id: Optional[str] = None
    path: str
    case_id: Optional[str] = None
    description: str = ""
    access_level: AccessLevel = AccessLevel.READ
    owner_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @classmethod
    def from_row(cls, row: Any) -> "Folder":
        return cls(
            id=row.id,
            name=row.name,
            parent_id=row.parent_id,
            path=row.path,
            case_id=row.case_id,
            description=row.description or "",
            access_level=AccessLevel(row.access_level),
            owner_id=row.owner_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """
    Document metadata.

    ``mime_type``, ``file_size``, ``checksum`` and ``storage_path`` always
    describe the current version. ``current_version`` only ever moves
    forward by one, and only through the version chain.
    """

    id: str
    filename: str
    title: str
    description: str = ""
    document_type: DocumentType = DocumentType.OTHER
    status: DocumentStatus = DocumentStatus.ACTIVE
    folder_id: Optional[str] = None
    case_id: Optional[str] = None
    mime_type: str = "application/octet-stream"
    file_size: int = Field(default=0, ge=0)
    checksum: str = ""
    current_version: int = Field(default=1, ge=1)
    storage_path: str = ""
    access_level: AccessLevel = AccessLevel.READ
    owner_id: str
    tags: List[str] = Field(default_factory=list)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_by is not None

    @classmethod
    def from_row(cls, row: Any) -> "Document":
        return cls(
            id=row.id,
            filename=row.filename,
            title=row.title,
            description=row.description or "",
            document_type=DocumentType(row.document_type),
            status=DocumentStatus(row.status),
            folder_id=row.folder_id,
            case_id=row.case_id,
            mime_type=row.mime_type,
            file_size=row.file_size,
            checksum=row.checksum or "",
            current_version=row.current_version,
            storage_path=row.storage_path,
            access_level=AccessLevel(row.access_level),
            owner_id=row.owner_id,
            tags=list(row.tags or []),
            locked_by=row.locked_by,
            locked_at=row.locked_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DocumentVersion(BaseModel):
    """One immutable entry of a document's version chain."""

    id: str
    document_id: str
    version_number: int = Field(ge=1)
    checksum: str
    file_size: int = Field(ge=0)
    storage_path: str
    change_description: str = ""
    created_by: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "DocumentVersion":
        return cls(
            id=row.id,
            document_id=row.document_id,
            version_number=row.version_number,
            checksum=row.checksum,
            file_size=row.file_size,
            storage_path=row.storage_path,
            change_description=row.change_description or "",
            created_by=row.created_by,
            created_at=row.created_at,
        )


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class NewDocument(BaseModel):
    """Metadata supplied when creating a document."""

    filename: str = Field(min_length=1, max_length=255)
    owner_id: str = Field(min_length=1)
    title: Optional[str] = None
    description: str = ""
    document_type: DocumentType = DocumentType.OTHER
    folder_id: Optional[str] = None
    case_id: Optional[str] = None
    access_level: AccessLevel = AccessLevel.READ
    tags: List[str] = Field(default_factory=list)
    id: Optional[str] = None
    change_description: str = "Initial version"

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or "\\" in v or "\x00" in v:
            raise ValueError("filename must be a bare file name")
        return v

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: Optional[str]) -> Optional[str]:
        # The id becomes a directory name under the storage root
        if v is None:
            return v
        if not 2 <= len(v) <= 36 or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError("id must be 2-36 characters and usable as a directory name")
        return v


class DocumentUpdate(BaseModel):
    """Metadata accepted by update(). Fields left unset are not touched."""

    id: str = Field(min_length=1)
    title: Optional[str] = None
    description: Optional[str] = None
    document_type: Optional[DocumentType] = None
    status: Optional[DocumentStatus] = None
    folder_id: Optional[str] = None
    case_id: Optional[str] = None
    access_level: Optional[AccessLevel] = None
    tags: Optional[List[str]] = None

    def changes(self) -> dict:
        """Explicitly set fields; None only counts for the nullable placement fields."""
        return {
            k: v
            for k, v in self.model_dump(exclude_unset=True, exclude={"id"}).items()
            if v is not None or k in ("folder_id", "case_id")
        }


class DocumentFilter(BaseModel):
    """
    List criteria. All given fields combine with AND.

    ``status=None`` means "everything except DELETED".
    ``text`` is a case-insensitive substring match over title, filename and
    description.
    """

    folder_id: Optional[str] = None
    case_id: Optional[str] = None
    document_type: Optional[DocumentType] = None
    status: Optional[DocumentStatus] = None
    text: Optional[str] = None
    owner_id: Optional[str] = None
    mime_type: Optional[str] = None
    access_level: Optional[AccessLevel] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)
    order_by: str = "created_at"
    order_desc: bool = False

    @field_validator("order_by")
    @classmethod
    def validate_order_by(cls, v: str) -> str:
        allowed = ("created_at", "updated_at", "title", "filename", "file_size")
        if v not in allowed:
            raise ValueError(f"order_by must be one of {allowed}, got '{v}'")
        return v


class AuthorizationDecision(BaseModel):
    """
    Result of an authorization check made outside the repository
    (policy engine, role check). The repository only verifies that the
    decision is positive and was issued for the acting user.
    """

    user_id: str
    allowed: bool
    permission: str = "documents.force_unlock"
    granted_by: Optional[str] = None
    reason: Optional[str] = None
