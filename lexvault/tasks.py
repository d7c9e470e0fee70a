"""
LexVault Celery Tasks — scheduled storage maintenance.

Celery Tasks:
    - reconcile_storage_task: orphan-file sweep (see lexvault.documents.reconcile)

Beat runs the sweep on ``reconcile.schedule`` (5-field cron, UTC) from
lexvault.yaml. Start a worker with beat:

    celery -A lexvault.tasks worker -B -Q maintenance
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown

from lexvault.engine.config import LexVaultConfig, get_config
from lexvault.engine.logging import get_log_queue, init_logging_from_config, shutdown_logging

logger = logging.getLogger("lexvault.tasks")

RECONCILE_TASK = "lexvault.tasks.reconcile_storage_task"


# ---------------------------------------------------------------------------
# Celery app (configured from lexvault.yaml)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app(get_config())
    return _celery_app


def build_beat_schedule(config: LexVaultConfig) -> Dict[str, Any]:
    """Beat schedule dict for celery_app.conf.beat_schedule."""
    # "minute hour day_of_month month_of_year day_of_week"
    parts = config.reconcile.schedule.split()
    return {
        "lexvault-reconcile-storage": {
            "task": RECONCILE_TASK,
            "schedule": crontab(
                minute=parts[0],
                hour=parts[1],
                day_of_month=parts[2],
                month_of_year=parts[3],
                day_of_week=parts[4],
            ),
            "kwargs": {"grace_minutes": config.reconcile.grace_minutes},
            "options": {"queue": "maintenance"},
        },
    }


def _create_celery_app(config: LexVaultConfig) -> Celery:
    """Create and configure the Celery application."""
    app = Celery("lexvault", broker=config.celery.broker, backend=config.celery.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue="maintenance",
        task_routes={RECONCILE_TASK: {"queue": "maintenance"}},
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule=build_beat_schedule(config),
    )
    return app


def run_reconcile(
    config: LexVaultConfig,
    grace_minutes: Optional[int] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Run one sweep with its own session (shared by the task and the CLI)."""
    from lexvault.db import session as db_session
    from lexvault.documents.reconcile import reconcile_storage
    from lexvault.documents.storage import FileStore, StoragePathDeriver

    if db_session._session_factory is None:
        db = config.database
        db_session.init_repository_db(
            db.url,
            create_tables=db.create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
        )

    store = FileStore(StoragePathDeriver(config.storage.base_path), chunk_size=config.storage.chunk_size)
    grace = config.reconcile.grace_minutes if grace_minutes is None else grace_minutes
    with db_session.session_scope() as session:
        return reconcile_storage(session, store, grace_minutes=grace, dry_run=dry_run)


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------

celery_app = get_celery_app()


@worker_process_shutdown.connect
def _drain_audit_log(**kwargs: Any) -> None:
    shutdown_logging()


@celery_app.task(name=RECONCILE_TASK)
def reconcile_storage_task(grace_minutes: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
    """
    Celery task: sweep orphaned version files.

    Returns the sweep summary without the list of orphan paths.
    """
    config = get_config()
    # Started per worker process; a queue thread does not survive the prefork fork
    if get_log_queue() is None:
        init_logging_from_config(config)
    summary = run_reconcile(config, grace_minutes=grace_minutes, dry_run=dry_run)
    logger.info(f"Scheduled sweep finished: {summary['deleted']} orphan(s) deleted")
    return {k: v for k, v in summary.items() if k != "orphans"}
