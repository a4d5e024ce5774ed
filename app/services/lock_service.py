"""Distributed locks backed by the `distributed_locks` table.

The primary key on lock_name is what guarantees a single holder. Reclaiming an
expired lock is delete-then-insert inside one transaction; a concurrent
reclaimer that loses the race sees its insert affect no rows.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import DistributedLock

logger = get_logger("lock_service")

T = TypeVar("T")


@dataclass
class LockResult:
    acquired: bool
    lock_name: str
    holder_id: str
    expires_at: Optional[datetime] = None
    already_locked_by: Optional[str] = None


class LockNotAcquiredError(Exception):
    def __init__(self, result: LockResult):
        self.result = result
        super().__init__(f"Lock {result.lock_name} is held by {result.already_locked_by}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _try_insert(db: Session, lock_name: str, holder_id: str, expires_at: datetime, metadata: dict) -> bool:
    stmt = (
        insert(DistributedLock)
        .values(
            lock_name=lock_name,
            acquired_by=holder_id,
            acquired_at=_now(),
            expires_at=expires_at,
            lock_metadata=metadata,
        )
        .on_conflict_do_nothing(index_elements=["lock_name"])
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def _current_holder(db: Session, lock_name: str) -> Optional[str]:
    return db.execute(
        select(DistributedLock.acquired_by).where(DistributedLock.lock_name == lock_name)
    ).scalar_one_or_none()


def _attempt_acquire(
    db: Session,
    lock_name: str,
    holder_id: str,
    ttl_minutes: float,
    metadata: dict,
) -> LockResult:
    expires_at = _now() + timedelta(minutes=ttl_minutes)

    if _try_insert(db, lock_name, holder_id, expires_at, metadata):
        db.commit()
        return LockResult(acquired=True, lock_name=lock_name, holder_id=holder_id, expires_at=expires_at)

    # Held by someone. Reclaim only if their lease has lapsed.
    db.execute(
        delete(DistributedLock).where(
            DistributedLock.lock_name == lock_name,
            DistributedLock.expires_at < _now(),
        )
    )
    if _try_insert(db, lock_name, holder_id, expires_at, metadata):
        db.commit()
        logger.info(f"Reclaimed expired lock {lock_name}", extra={"context": {"holder_id": holder_id}})
        return LockResult(acquired=True, lock_name=lock_name, holder_id=holder_id, expires_at=expires_at)

    holder = _current_holder(db, lock_name)
    db.rollback()
    return LockResult(acquired=False, lock_name=lock_name, holder_id=holder_id, already_locked_by=holder)


def acquire_lock(
    db: Session,
    lock_name: str,
    holder_id: str,
    ttl_minutes: Optional[float] = None,
    wait_seconds: float = 0,
    metadata: Optional[dict[str, Any]] = None,
) -> LockResult:
    """Try to take `lock_name` for `holder_id`.

    Contention is not an error: the result reports who holds the lock. With
    `wait_seconds` > 0 the attempt is retried every `lock_retry_interval_seconds`
    until the window closes.
    """
    ttl = ttl_minutes if ttl_minutes is not None else settings.lock_default_ttl_minutes
    deadline = time.monotonic() + max(wait_seconds, 0)

    while True:
        result = _attempt_acquire(db, lock_name, holder_id, ttl, metadata or {})
        if result.acquired:
            logger.info(
                f"Lock acquired: {lock_name}",
                extra={"context": {"holder_id": holder_id, "expires_at": result.expires_at.isoformat()}},
            )
            return result
        if time.monotonic() >= deadline:
            logger.debug(
                f"Lock busy: {lock_name}",
                extra={"context": {"holder_id": holder_id, "locked_by": result.already_locked_by}},
            )
            return result
        time.sleep(settings.lock_retry_interval_seconds)


def release_lock(db: Session, lock_name: str, holder_id: str) -> bool:
    """Delete the lock row if and only if `holder_id` still owns it."""
    result = db.execute(
        delete(DistributedLock).where(
            DistributedLock.lock_name == lock_name,
            DistributedLock.acquired_by == holder_id,
        )
    )
    db.commit()
    released = result.rowcount > 0
    if released:
        logger.info(f"Lock released: {lock_name}", extra={"context": {"holder_id": holder_id}})
    else:
        logger.warning(
            f"Release ignored, lock not held: {lock_name}",
            extra={"context": {"holder_id": holder_id}},
        )
    return released


def extend_lock(db: Session, lock_name: str, holder_id: str, extra_minutes: float) -> bool:
    """Push expires_at forward. Only the current, unexpired holder may extend."""
    now = _now()
    result = db.execute(
        update(DistributedLock)
        .where(
            DistributedLock.lock_name == lock_name,
            DistributedLock.acquired_by == holder_id,
            DistributedLock.expires_at > now,
        )
        .values(expires_at=DistributedLock.expires_at + timedelta(minutes=extra_minutes))
    )
    db.commit()
    return result.rowcount > 0


@contextmanager
def lock_context(
    db: Session,
    lock_name: str,
    holder_id: str,
    ttl_minutes: Optional[float] = None,
    wait_seconds: float = 0,
) -> Iterator[LockResult]:
    """Yield the LockResult; the lock is released on every exit path when it was acquired.

    Callers must check `result.acquired` before doing guarded work.
    """
    result = acquire_lock(db, lock_name, holder_id, ttl_minutes=ttl_minutes, wait_seconds=wait_seconds)
    try:
        yield result
    except BaseException:
        # The session may be mid-failed-transaction; the release needs a clean one.
        db.rollback()
        raise
    finally:
        if result.acquired:
            release_lock(db, lock_name, holder_id)


def with_lock(
    db: Session,
    lock_name: str,
    holder_id: str,
    fn: Callable[[], T],
    ttl_minutes: Optional[float] = None,
    wait_seconds: float = 0,
) -> T:
    """Run `fn` while holding the lock. Raises LockNotAcquiredError on contention."""
    with lock_context(db, lock_name, holder_id, ttl_minutes=ttl_minutes, wait_seconds=wait_seconds) as result:
        if not result.acquired:
            raise LockNotAcquiredError(result)
        return fn()


def cleanup_expired_locks(db: Session) -> int:
    result = db.execute(delete(DistributedLock).where(DistributedLock.expires_at < _now()))
    db.commit()
    if result.rowcount:
        logger.info(f"Removed {result.rowcount} expired locks")
    return result.rowcount


def get_active_locks(db: Session) -> list[dict[str, Any]]:
    rows = db.execute(
        select(DistributedLock).where(DistributedLock.expires_at >= _now()).order_by(DistributedLock.lock_name)
    ).scalars().all()
    return [
        {
            "lock_name": row.lock_name,
            "acquired_by": row.acquired_by,
            "acquired_at": row.acquired_at.isoformat() if row.acquired_at else None,
            "expires_at": row.expires_at.isoformat() if row.expires_at else None,
        }
        for row in rows
    ]
