"""
LexVault Storage Reconciliation — reclaims orphaned version files.

An aborted append leaves its already-copied file behind with no version row
pointing at it. The sweep walks ``{base_path}/*/*/v*``, compares every file
with ``document_versions.storage_path`` and removes the unreferenced ones.

Files younger than the grace period are skipped: they may belong to an
upload whose transaction has not committed yet.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lexvault.db.models import DocumentVersionRow
from lexvault.db.session import atomic
from lexvault.documents.storage import FileStore
from lexvault.engine.errors import LexVaultError
from lexvault.engine.logging import log, log_storage_event

logger = logging.getLogger("lexvault.documents.reconcile")


def reconcile_storage(
    session: Session,
    store: FileStore,
    grace_minutes: int = 60,
    dry_run: bool = False,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Delete version files that no version row references.

    Args:
        session: Session used for one read of the referenced paths.
        store: FileStore whose base path is swept.
        grace_minutes: Minimum file age (by mtime) before a file is eligible.
        dry_run: Report orphans without deleting them.
        now: Epoch seconds to measure age against (tests).

    Returns summary:
        {"scanned": N, "referenced": N, "orphaned": N, "deleted": N,
         "skipped_recent": N, "errors": N, "orphans": [paths], "dry_run": bool}
    """
    started = time.monotonic()
    with atomic(session, "reconcile_storage", read_only=True):
        referenced = {
            os.path.abspath(p)
            for p in session.execute(select(DocumentVersionRow.storage_path)).scalars()
        }

    cutoff = (now if now is not None else time.time()) - grace_minutes * 60
    summary: Dict[str, Any] = {
        "scanned": 0,
        "referenced": 0,
        "orphaned": 0,
        "deleted": 0,
        "skipped_recent": 0,
        "errors": 0,
        "dry_run": dry_run,
    }
    orphans: List[str] = []

    for path in store.iter_version_files():
        summary["scanned"] += 1
        if str(path) in referenced:
            summary["referenced"] += 1
            continue
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            continue
        if mtime > cutoff:
            summary["skipped_recent"] += 1
            continue

        summary["orphaned"] += 1
        orphans.append(str(path))
        if dry_run:
            continue
        try:
            if store.delete(path):
                summary["deleted"] += 1
        except LexVaultError as e:
            logger.error(f"Could not delete orphan {path}: {e}")
            summary["errors"] += 1

    summary["orphans"] = orphans
    duration_ms = round((time.monotonic() - started) * 1000, 2)
    logger.info(
        f"Storage sweep: {summary['scanned']} scanned, {summary['orphaned']} orphaned, "
        f"{summary['deleted']} deleted (dry_run={dry_run}, {duration_ms} ms)"
    )
    log(log_storage_event("reconcile", {
        k: v for k, v in summary.items() if k != "orphans"
    } | {"duration_ms": duration_ms}))
    return summary
