"""
LexVault CLI — repository bootstrap and maintenance commands.

Commands:
- lexvault init          — Create tables and the storage root
- lexvault sweep         — Remove orphaned version files
- lexvault verify        — Re-hash a document's versions against their fingerprints
- lexvault logs-cleanup  — Apply log retention (delete / gzip old audit logs)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from lexvault.engine.errors import LexVaultError
from lexvault.engine.logging import init_logging_from_config, shutdown_logging

logger = logging.getLogger("lexvault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="lexvault",
        description="LexVault — versioned legal document repository",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_config(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", help="Path to lexvault.yaml (default: auto-discover)")

    # lexvault init
    init_parser = subparsers.add_parser("init", help="Create repository tables and storage root")
    add_config(init_parser)

    # lexvault sweep
    sweep_parser = subparsers.add_parser("sweep", help="Remove orphaned version files")
    add_config(sweep_parser)
    sweep_parser.add_argument("--dry-run", action="store_true", help="Report orphans without deleting")
    sweep_parser.add_argument(
        "--grace-minutes", type=int, help="Skip files younger than this (default: reconcile.grace_minutes)"
    )
    sweep_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # lexvault verify
    verify_parser = subparsers.add_parser("verify", help="Verify stored content of a document")
    add_config(verify_parser)
    verify_parser.add_argument("document_id", help="Document identifier")
    verify_parser.add_argument("--version", type=int, help="Single version to check (default: all)")

    # lexvault logs-cleanup
    logs_parser = subparsers.add_parser("logs-cleanup", help="Apply audit log retention")
    add_config(logs_parser)

    args = parser.parse_args(argv)

    try:
        if args.command == "init":
            return cmd_init(args)
        elif args.command == "sweep":
            return cmd_sweep(args)
        elif args.command == "verify":
            return cmd_verify(args)
        elif args.command == "logs-cleanup":
            return cmd_logs_cleanup(args)
        else:
            parser.print_help()
            return 0
    finally:
        # Drain audit entries queued by the command
        shutdown_logging()


def _load(args: argparse.Namespace):
    from lexvault.engine.config import load_config

    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_logging_from_config(config)
    return config


def _init_db(config, create_tables: bool = False) -> None:
    from lexvault.db.session import init_repository_db

    db = config.database
    init_repository_db(
        db.url,
        create_tables=create_tables or db.create_tables,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=db.pool_pre_ping,
    )


def _ensure_sqlite_dir(url: str) -> None:
    # sqlite:///relative/path.db or sqlite:////abs/path.db
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap the repository:
    1. Load config from lexvault.yaml
    2. Create tables (SQLAlchemy metadata.create_all)
    3. Create the storage root and log directories
    """
    print("=" * 60)
    print("  LexVault Repository Initialization")
    print("=" * 60)

    try:
        config = _load(args)
        print(f"[OK] Loaded config ({config.environment})")
    except LexVaultError as e:
        print(f"[ERROR] Failed to load config: {e}")
        return 1

    try:
        if config.database.is_sqlite:
            _ensure_sqlite_dir(config.database.url)
        _init_db(config, create_tables=True)
        print("[OK] Database tables created")
    except (LexVaultError, OSError) as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1

    try:
        base = Path(config.storage.base_path)
        base.mkdir(parents=True, exist_ok=True)
        print(f"[OK] Storage root ready: {base.resolve()}")

        from lexvault.engine.logging import FileLogger
        FileLogger(log_dir=config.logging.directory)
        print(f"[OK] Log directory ready: {config.logging.directory}")
    except OSError as e:
        print(f"[ERROR] Failed to create directories: {e}")
        return 1

    from lexvault.db.session import close_all_sessions
    close_all_sessions()
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run the orphan sweep once, outside Celery."""
    from lexvault.tasks import run_reconcile

    try:
        config = _load(args)
        summary = run_reconcile(config, grace_minutes=args.grace_minutes, dry_run=args.dry_run)
    except LexVaultError as e:
        print(f"[ERROR] Sweep failed: {e}")
        return 1

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        verb = "would delete" if args.dry_run else "deleted"
        for path in summary["orphans"]:
            print(f"  orphan: {path}")
        print(
            f"Scanned {summary['scanned']} file(s): {summary['orphaned']} orphaned, "
            f"{verb} {summary['orphaned'] if args.dry_run else summary['deleted']}, "
            f"{summary['skipped_recent']} within grace period"
        )
    return 1 if summary["errors"] else 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Exit 0 when every checked version matches its recorded fingerprint."""
    from lexvault.db.session import session_scope
    from lexvault.documents.service import DocumentRepository

    try:
        config = _load(args)
        _init_db(config)
        repo = DocumentRepository.from_config(config)
        with session_scope() as session:
            results = repo.verify(session, args.document_id, version=args.version)
    except LexVaultError as e:
        print(f"[ERROR] {e}")
        return 1

    failed = 0
    for number, ok in sorted(results.items()):
        print(f"  v{number}: {'OK' if ok else 'MISMATCH'}")
        failed += 0 if ok else 1
    print(f"{len(results)} version(s) checked, {failed} mismatch(es)")
    return 1 if failed else 0


def cmd_logs_cleanup(args: argparse.Namespace) -> int:
    from lexvault.engine.logging import LogRetentionManager

    try:
        config = _load(args)
    except LexVaultError as e:
        print(f"[ERROR] Failed to load config: {e}")
        return 1

    manager = LogRetentionManager(
        log_dir=config.logging.directory,
        retention_days={
            "execution": config.logging.retention.execution_days,
            "security": config.logging.retention.security_days,
        },
        compress_after_days=config.logging.rotation.compress_after_days,
    )
    result = manager.cleanup()
    print(f"Deleted {result['deleted']} file(s), compressed {result['compressed']} file(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
