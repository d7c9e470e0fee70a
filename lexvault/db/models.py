"""
LexVault Repository Tables — SQLAlchemy models for the document repository.

Tables:
1. folders            — Folder tree with materialized path
2. documents          — Document metadata, current-version pointer, embedded lock
3. document_versions  — Append-only version chain

Ordinal columns (type, status, access_level) store the IntEnum values from
lexvault.documents.models.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)

from lexvault.db.base import AuditMixin, Base, utcnow


# ---------------------------------------------------------------------------
# 1. Folders
# ---------------------------------------------------------------------------

class FolderRow(Base, AuditMixin):
    __tablename__ = "folders"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("folders.id"), nullable=True)
    path = Column(Text, nullable=False)
    case_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=False, default="")
    access_level = Column(Integer, nullable=False, default=1)
    owner_id = Column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("parent_id", "name", name="uq_folders_parent_name"),
        # NULL parent_ids never collide in the constraint above
        Index(
            "uq_folders_root_name",
            "name",
            unique=True,
            postgresql_where=text("parent_id IS NULL"),
            sqlite_where=text("parent_id IS NULL"),
        ),
        Index("idx_folders_parent_id", "parent_id"),
        Index("idx_folders_case_id", "case_id"),
    )

    def __repr__(self) -> str:
        return f"<FolderRow(id='{self.id}', path='{self.path}')>"


# ---------------------------------------------------------------------------
# 2. Documents
# ---------------------------------------------------------------------------

class DocumentRow(Base, AuditMixin):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True)
    filename = Column(String(255), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    document_type = Column(Integer, nullable=False)
    status = Column(Integer, nullable=False, default=0, index=True)
    folder_id = Column(String(36), ForeignKey("folders.id"), nullable=True)
    case_id = Column(String(36), nullable=True)
    mime_type = Column(String(128), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    checksum = Column(String(64), nullable=False, default="")
    current_version = Column(Integer, nullable=False, default=0)
    storage_path = Column(Text, nullable=False, default="")
    access_level = Column(Integer, nullable=False, default=1)
    owner_id = Column(String(64), nullable=False)
    tags = Column(JSON, nullable=False, default=list)

    # Embedded lock
    locked_by = Column(String(64), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_documents_case_id", "case_id"),
        Index("idx_documents_folder_id", "folder_id"),
        Index("idx_documents_filename", "filename"),
    )

    def __repr__(self) -> str:
        return f"<DocumentRow(id='{self.id}', filename='{self.filename}', v={self.current_version})>"


# ---------------------------------------------------------------------------
# 3. Document versions
# ---------------------------------------------------------------------------

class DocumentVersionRow(Base):
    __tablename__ = "document_versions"

    id = Column(String(36), primary_key=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False)
    version_number = Column(Integer, nullable=False)
    checksum = Column(String(64), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    storage_path = Column(Text, nullable=False)
    change_description = Column(Text, nullable=False, default="")
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version"),
        Index("idx_doc_versions_doc_id", "document_id"),
    )

    def __repr__(self) -> str:
        return f"<DocumentVersionRow(document_id='{self.document_id}', v={self.version_number})>"
