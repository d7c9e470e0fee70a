"""
LexVault Document & Folder Management.

Repository facade plus the components it orchestrates: folder tree,
version chain, check-out locks and the sharded file store.
Physical storage: {storage.base_path}/{id[:2]}/{id}/v{n}
"""

from lexvault.documents.models import (
    AccessLevel,
    AuthorizationDecision,
    Document,
    DocumentFilter,
    DocumentStatus,
    DocumentType,
    DocumentUpdate,
    DocumentVersion,
    Folder,
    NewDocument,
)
from lexvault.documents.service import DocumentRepository
from lexvault.documents.storage import FileStore, StoragePathDeriver

__all__ = [
    "AccessLevel",
    "AuthorizationDecision",
    "Document",
    "DocumentFilter",
    "DocumentStatus",
    "DocumentType",
    "DocumentUpdate",
    "DocumentVersion",
    "Folder",
    "NewDocument",
    "DocumentRepository",
    "FileStore",
    "StoragePathDeriver",
]
