#!/usr/bin/env python
# topicchat/commands/migrate_encryption.py
"""
Re-encrypt topic messages still stored in a deprecated format.

Messages written as ``ENC_``/``ENC2_`` (legacy XOR) or ``v1:`` (Fernet) are
decrypted and rewritten with the current AES-GCM format. The chat store
upgrades messages lazily as they are read; this command sweeps the rest.

Usage:
    topicchat-migrate-encryption --dry-run
    topicchat-migrate-encryption --batch-size 200 --max-batches 10
"""

import argparse
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import sys
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from topicchat.core.crypto import (
    FERNET_PREFIX,
    LEGACY_PREFIX,
    LEGACY_SALTED_PREFIX,
    encryption_available,
    upgrade_encryption,
)
from topicchat.database import SessionLocal
from topicchat.repositories.chat_message_repository import ChatMessageRepository

logger = logging.getLogger(__name__)

DEPRECATED_PREFIXES = (LEGACY_SALTED_PREFIX, LEGACY_PREFIX, FERNET_PREFIX)


@dataclass
class MigrationProgress:
    processed: int = 0
    upgraded: int = 0
    errors: int = 0
    batches: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()


def migrate_prefix(
    db: Session,
    prefix: str,
    progress: MigrationProgress,
    *,
    batch_size: int,
    max_batches: Optional[int] = None,
    dry_run: bool = False,
) -> None:
    """Upgrade every message whose body starts with ``prefix``, one committed batch at a time."""
    repo = ChatMessageRepository(db)
    after_id = ""

    while max_batches is None or progress.batches < max_batches:
        rows = repo.get_batch_with_prefix(prefix, batch_size, after_id=after_id)
        if not rows:
            break

        for row in rows:
            progress.processed += 1
            upgraded = upgrade_encryption(row.message)
            if upgraded == row.message:
                # Undecryptable with the configured secrets; leave it for manual review.
                progress.errors += 1
                logger.warning(f"[MIGRATE] Could not upgrade message {row.id} ({prefix})")
                continue
            progress.upgraded += 1
            if not dry_run:
                repo.update_body(str(row.id), upgraded)

        after_id = str(rows[-1].id)
        progress.batches += 1

        if dry_run:
            db.rollback()
        else:
            db.commit()
        logger.info(
            f"[MIGRATE] {prefix} batch {progress.batches}: processed={progress.processed} "
            f"upgraded={progress.upgraded} errors={progress.errors}"
        )


def run_migration(
    *,
    batch_size: int = 100,
    max_batches: Optional[int] = None,
    dry_run: bool = False,
    session_factory=SessionLocal,
) -> MigrationProgress:
    if not encryption_available():
        raise RuntimeError("MESSAGE_ENCRYPTION_KEY must be configured to upgrade message encryption")

    progress = MigrationProgress()
    db = session_factory()
    try:
        for prefix in DEPRECATED_PREFIXES:
            migrate_prefix(
                db,
                prefix,
                progress,
                batch_size=batch_size,
                max_batches=max_batches,
                dry_run=dry_run,
            )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    progress.finished_at = datetime.now(timezone.utc)
    return progress


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade deprecated message encryption")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--batch-size", type=int, default=100, help="Messages per committed batch")
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after this many batches")
    args = parser.parse_args(argv)
    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    args = _parse_args(argv)

    mode = "DRY RUN" if args.dry_run else "LIVE"
    logger.info(f"[MIGRATE] Starting encryption upgrade ({mode}, batch_size={args.batch_size})")

    try:
        progress = run_migration(
            batch_size=args.batch_size,
            max_batches=args.max_batches,
            dry_run=args.dry_run,
        )
    except RuntimeError as exc:
        logger.error(f"[MIGRATE] {exc}")
        return 1

    logger.info(
        f"[MIGRATE] Done in {progress.duration_seconds:.1f}s: processed={progress.processed} "
        f"upgraded={progress.upgraded} errors={progress.errors}"
    )
    return 0 if progress.errors == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
