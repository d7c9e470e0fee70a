"""
LexVault Check-out / Check-in — pessimistic, exclusive edit locks.

States per document: UNLOCKED, LOCKED(holder). The lock lives in the
document row (``locked_by``, ``locked_at``; status LOCKED while held).

checkout is a single conditional UPDATE guarded by "no current holder";
the affected-row count decides the outcome, so two concurrent checkouts
can never both succeed. Re-entrant checkout is rejected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from lexvault.db.base import utcnow
from lexvault.db.models import DocumentRow
from lexvault.db.session import atomic
from lexvault.documents.models import AuthorizationDecision, Document, DocumentStatus
from lexvault.documents.storage import ContentSource
from lexvault.documents.versions import VersionChainManager, audit_version
from lexvault.engine.errors import (
    LexVaultLockedError,
    LexVaultNotFoundError,
    LexVaultPermissionError,
    LexVaultValidationError,
)
from lexvault.engine.logging import log, log_lock_event, log_security_event

logger = logging.getLogger("lexvault.documents.locks")


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class LockManager:
    """Check-out / check-in protocol over the document row."""

    def __init__(self, versions: VersionChainManager, lock_ttl_minutes: Optional[int] = None):
        self._versions = versions
        self._ttl = timedelta(minutes=lock_ttl_minutes) if lock_ttl_minutes else None

    # -------------------------------------------------------------------
    # Lock state helpers
    # -------------------------------------------------------------------

    def holder(self, row: DocumentRow, now: Optional[datetime] = None) -> Optional[str]:
        """Current lock holder, treating an expired lock as absent."""
        if row.locked_by is None:
            return None
        if self._ttl is not None:
            locked_at = _aware(row.locked_at)
            if locked_at is not None and locked_at < (now or utcnow()) - self._ttl:
                return None
        return row.locked_by

    def assert_can_upload(self, row: DocumentRow, user_id: str) -> None:
        """Uploads are refused while someone else holds the lock."""
        current = self.holder(row)
        if current is not None and current != user_id:
            log(log_security_event(
                "upload_denied", "documents", f"documents.{row.id}", user_id,
                permission_needed="lock_holder", reason=f"locked by {current}",
            ))
            raise LexVaultPermissionError(
                f"Document '{row.id}' is checked out by another user",
                record_type="document",
                record_id=row.id,
                user_id=user_id,
                required_permission="lock_holder",
            )

    @staticmethod
    def _release(row: DocumentRow) -> None:
        row.locked_by = None
        row.locked_at = None
        if row.status == DocumentStatus.LOCKED:
            row.status = DocumentStatus.ACTIVE
        row.updated_at = utcnow()

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    def checkout(self, session: Session, document_id: str, user_id: str) -> Document:
        """
        UNLOCKED -> LOCKED(user_id).

        Raises:
            LexVaultLockedError: somebody (including ``user_id``) holds the lock.
            LexVaultNotFoundError: no such document.
            LexVaultValidationError: document is archived or deleted.
        """
        if not user_id:
            raise LexVaultValidationError("user_id is required for checkout", record_id=document_id)

        now = utcnow()
        free = DocumentRow.locked_by.is_(None)
        if self._ttl is not None:
            free = or_(free, DocumentRow.locked_at < now - self._ttl)

        with atomic(session, "checkout"):
            result = session.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.id == document_id,
                    DocumentRow.status.in_([int(DocumentStatus.ACTIVE), int(DocumentStatus.LOCKED)]),
                    free,
                )
                .values(locked_by=user_id, locked_at=now, status=int(DocumentStatus.LOCKED), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            row = session.get(DocumentRow, document_id, populate_existing=True)
            if result.rowcount != 1:
                if row is None:
                    raise LexVaultNotFoundError(
                        f"Document '{document_id}' not found",
                        record_type="document",
                        record_id=document_id,
                    )
                if row.status in (DocumentStatus.ARCHIVED, DocumentStatus.DELETED):
                    raise LexVaultValidationError(
                        f"Document '{document_id}' is {DocumentStatus(row.status).name.lower()}",
                        record_type="document",
                        record_id=document_id,
                    )
                log(log_lock_event("checkout_refused", document_id, user_id, holder=row.locked_by, success=False))
                raise LexVaultLockedError(
                    f"Document '{document_id}' is already checked out",
                    record_type="document",
                    record_id=document_id,
                    locked_by=row.locked_by,
                    locked_at=_aware(row.locked_at),
                )
            doc = Document.from_row(row)

        logger.info(f"Document {document_id} checked out by {user_id}")
        log(log_lock_event("checkout", document_id, user_id, holder=user_id))
        return doc

    def checkin(
        self,
        session: Session,
        document_id: str,
        user_id: str,
        content: Optional[ContentSource] = None,
        change_description: Optional[str] = None,
    ) -> Document:
        """
        LOCKED(user_id) -> UNLOCKED, optionally appending a new version first.

        If appending fails the whole transaction rolls back, so the lock is
        still held by ``user_id`` and the call can be retried as-is.
        """
        version = None
        with atomic(session, "checkin"):
            row = self._versions.lock_document_row(session, document_id)
            current = self.holder(row)
            if current is None or current != user_id:
                log(log_security_event(
                    "checkin_denied", "locks", f"documents.{document_id}", user_id,
                    permission_needed="lock_holder",
                    reason=f"locked by {current}" if current else "not checked out",
                ))
                raise LexVaultPermissionError(
                    f"User '{user_id}' does not hold the lock on document '{document_id}'",
                    record_type="document",
                    record_id=document_id,
                    user_id=user_id,
                    required_permission="lock_holder",
                    locked_by=current,
                )
            if content is not None:
                version = self._versions.append(session, row, content, change_description, user_id)
            self._release(row)
            session.flush()
            doc = Document.from_row(row)

        if version is not None:
            audit_version(version)
        logger.info(f"Document {document_id} checked in by {user_id} (v{doc.current_version})")
        log(log_lock_event("checkin", document_id, user_id))
        return doc

    def force_unlock(
        self,
        session: Session,
        document_id: str,
        acting_user_id: str,
        authorization: Optional[AuthorizationDecision],
    ) -> Document:
        """
        Administrative override: LOCKED(*) -> UNLOCKED.

        ``authorization`` must come from an external policy check, be
        positive and name ``acting_user_id``; the repository does not decide
        who is an administrator.
        """
        if (
            authorization is None
            or not authorization.allowed
            or authorization.user_id != acting_user_id
        ):
            log(log_security_event(
                "force_unlock_denied", "locks", f"documents.{document_id}", acting_user_id,
                permission_needed="documents.force_unlock",
                reason=authorization.reason if authorization else "no authorization decision",
            ))
            raise LexVaultPermissionError(
                f"User '{acting_user_id}' is not authorized to force-unlock document '{document_id}'",
                record_type="document",
                record_id=document_id,
                user_id=acting_user_id,
                required_permission="documents.force_unlock",
            )

        with atomic(session, "force_unlock"):
            row = self._versions.lock_document_row(session, document_id)
            previous = row.locked_by
            self._release(row)
            session.flush()
            doc = Document.from_row(row)

        logger.warning(f"Document {document_id} force-unlocked by {acting_user_id} (was held by {previous})")
        log(log_security_event(
            "force_unlock", "locks", f"documents.{document_id}", acting_user_id,
            permission_needed="documents.force_unlock",
            reason=f"released lock held by {previous}",
            level="INFO",
        ))
        return doc
