"""
LexVault Folder Hierarchy — named folder tree with materialized paths.

Paths are materialized on create (``/`` + name for a root folder, otherwise
``parent.path + "/" + name``). A rename rewrites the path of the renamed
folder and every descendant in the same transaction, so stored paths never
go stale. Folders can not be moved between parents.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lexvault.db.base import utcnow
from lexvault.db.models import DocumentRow, FolderRow
from lexvault.db.session import atomic
from lexvault.documents.models import AccessLevel, Folder
from lexvault.documents.versions import VersionChainManager
from lexvault.engine.errors import (
    LexVaultNotEmptyError,
    LexVaultNotFoundError,
    LexVaultValidationError,
)
from lexvault.engine.logging import log, log_folder_operation

logger = logging.getLogger("lexvault.documents.folders")


def _validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise LexVaultValidationError("Folder name is required", record_type="folder")
    if "/" in name:
        raise LexVaultValidationError(
            f"Folder name may not contain '/': '{name}'",
            record_type="folder",
        )
    return name


def _child_path(parent_path: Optional[str], name: str) -> str:
    return f"{parent_path}/{name}" if parent_path else f"/{name}"


class FolderManager:
    """Folder create / get / list / rename / delete."""

    def __init__(self, versions: VersionChainManager):
        self._versions = versions

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _require(session: Session, folder_id: str) -> FolderRow:
        row = session.get(FolderRow, folder_id, populate_existing=True)
        if row is None:
            raise LexVaultNotFoundError(
                f"Folder '{folder_id}' not found",
                record_type="folder",
                record_id=folder_id,
            )
        return row

    @staticmethod
    def _assert_unique_sibling(
        session: Session,
        parent_id: Optional[str],
        name: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        stmt = select(func.count()).select_from(FolderRow).where(FolderRow.name == name)
        if parent_id is None:
            stmt = stmt.where(FolderRow.parent_id.is_(None))
        else:
            stmt = stmt.where(FolderRow.parent_id == parent_id)
        if exclude_id is not None:
            stmt = stmt.where(FolderRow.id != exclude_id)
        if session.execute(stmt).scalar_one():
            raise LexVaultValidationError(
                f"A folder named '{name}' already exists here",
                record_type="folder",
                parent_id=parent_id,
            )

    @staticmethod
    def _flush_sibling(session: Session, parent_id: Optional[str], name: str) -> None:
        # A concurrent writer can pass _assert_unique_sibling too; the
        # unique constraints decide.
        try:
            session.flush()
        except IntegrityError as e:
            raise LexVaultValidationError(
                f"A folder named '{name}' already exists here",
                record_type="folder",
                parent_id=parent_id,
            ) from e

    @staticmethod
    def _children(session: Session, folder_id: str) -> List[FolderRow]:
        return list(session.execute(
            select(FolderRow).where(FolderRow.parent_id == folder_id).order_by(FolderRow.name)
        ).scalars())

    def _subtree(self, session: Session, root: FolderRow) -> List[FolderRow]:
        """The folder and all descendants, pre-order."""
        ordered: List[FolderRow] = []
        stack = [root]
        while stack:
            node = stack.pop()
            ordered.append(node)
            stack.extend(reversed(self._children(session, node.id)))
        return ordered

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    def create(
        self,
        session: Session,
        name: str,
        owner_id: str,
        parent_id: Optional[str] = None,
        case_id: Optional[str] = None,
        access_level: AccessLevel = AccessLevel.READ,
        description: str = "",
    ) -> Folder:
        name = _validate_name(name)
        if not owner_id:
            raise LexVaultValidationError("owner_id is required", record_type="folder")

        with atomic(session, "create_folder"):
            parent_path = None
            if parent_id is not None:
                parent_path = self._require(session, parent_id).path
            self._assert_unique_sibling(session, parent_id, name)

            row = FolderRow(
                id=str(uuid.uuid4()),
                name=name,
                parent_id=parent_id,
                path=_child_path(parent_path, name),
                case_id=case_id,
                description=description or "",
                access_level=int(AccessLevel(access_level)),
                owner_id=owner_id,
            )
            session.add(row)
            self._flush_sibling(session, parent_id, name)
            folder = Folder.from_row(row)

        logger.info(f"Created folder {folder.path} ({folder.id})")
        log(log_folder_operation("create", folder.id, user_id=owner_id, path=folder.path))
        return folder

    def get(self, session: Session, folder_id: str) -> Folder:
        with atomic(session, "get_folder", read_only=True):
            return Folder.from_row(self._require(session, folder_id))

    def list(
        self,
        session: Session,
        parent_id: Optional[str] = None,
        case_id: Optional[str] = None,
    ) -> List[Folder]:
        """Children of ``parent_id``, or root folders when it is None."""
        stmt = select(FolderRow)
        if parent_id is None:
            stmt = stmt.where(FolderRow.parent_id.is_(None))
        else:
            stmt = stmt.where(FolderRow.parent_id == parent_id)
        if case_id is not None:
            stmt = stmt.where(FolderRow.case_id == case_id)
        with atomic(session, "list_folders", read_only=True):
            rows = session.execute(stmt.order_by(FolderRow.name)).scalars().all()
            return [Folder.from_row(r) for r in rows]

    def subtree_ids(self, session: Session, folder_id: str) -> List[str]:
        with atomic(session, "folder_subtree", read_only=True):
            return [r.id for r in self._subtree(session, self._require(session, folder_id))]

    def rename(self, session: Session, folder_id: str, new_name: str) -> Folder:
        """Rename a folder and rewrite the materialized path of its subtree."""
        new_name = _validate_name(new_name)
        with atomic(session, "rename_folder"):
            row = self._require(session, folder_id)
            self._assert_unique_sibling(session, row.parent_id, new_name, exclude_id=row.id)

            old_prefix = row.path
            parent_path = self._require(session, row.parent_id).path if row.parent_id else None
            new_prefix = _child_path(parent_path, new_name)
            now = utcnow()

            subtree = self._subtree(session, row)
            for node in subtree:
                node.path = new_prefix + node.path[len(old_prefix):]
                node.updated_at = now
            row.name = new_name
            self._flush_sibling(session, row.parent_id, new_name)
            folder = Folder.from_row(row)

        logger.info(f"Renamed folder {old_prefix} -> {folder.path} ({len(subtree)} path(s) rewritten)")
        log(log_folder_operation("rename", folder_id, path=folder.path))
        return folder

    def delete(self, session: Session, folder_id: str, recursive: bool = False) -> int:
        """
        Delete a folder.

        Non-recursive: fails with LexVaultNotEmptyError while any document
        row (whatever its status) or subfolder references the folder.

        Recursive: pre-order over the subtree; every document in a folder is
        permanently purged (files, then version rows, then the document row)
        before its children are visited. Folder rows are removed deepest
        first once all documents are gone. Already-missing files are skipped,
        so retrying after a partial failure completes.

        Returns the number of documents purged.
        """
        purged = 0
        with atomic(session, "delete_folder"):
            row = self._require(session, folder_id)

            if not recursive:
                doc_count = session.execute(
                    select(func.count()).select_from(DocumentRow).where(DocumentRow.folder_id == folder_id)
                ).scalar_one()
                sub_count = session.execute(
                    select(func.count()).select_from(FolderRow).where(FolderRow.parent_id == folder_id)
                ).scalar_one()
                if doc_count or sub_count:
                    raise LexVaultNotEmptyError(
                        f"Folder '{row.path}' is not empty",
                        record_type="folder",
                        record_id=folder_id,
                        document_count=doc_count,
                        subfolder_count=sub_count,
                    )
                subtree = [row]
            else:
                subtree = self._subtree(session, row)
                for node in subtree:
                    doc_ids = session.execute(
                        select(DocumentRow.id).where(DocumentRow.folder_id == node.id)
                    ).scalars().all()
                    for doc_id in doc_ids:
                        self._versions.purge(session, doc_id)
                        purged += 1

            path = row.path
            ids = [n.id for n in subtree]
            for fid in reversed(ids):
                session.execute(delete(FolderRow).where(FolderRow.id == fid))

        logger.info(
            f"Deleted folder {path} ({len(ids)} folder(s), {purged} document(s), recursive={recursive})"
        )
        log(log_folder_operation(
            "delete", folder_id, path=path, recursive=recursive, documents_removed=purged,
        ))
        return purged
