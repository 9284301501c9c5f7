"""
Per-tenant exclusive lock backed by the tenant_locks table.

Acquire inserts the tenant's row and commits immediately, so every worker
and process sees it. A second acquire hits the primary key and is rejected
with RecomputeInProgressError; nothing queues. A lock whose expires_at has
passed belonged to a crashed holder and is reclaimed, so long-running
holders renew it and confirm ownership before they write.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from restock.models.replenishment import TenantLock
from restock.services.errors import RecomputeInProgressError
from restock.utils.logger import log


class TenantLockManager:
    def __init__(self, session_factory: sessionmaker, ttl_seconds: int = 900,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def acquire(self, tenant_id: str, holder: str, purpose: str = "recompute") -> None:
        db = self.session_factory()
        try:
            now = self.clock()
            expires_at = now + timedelta(seconds=self.ttl_seconds)
            db.add(TenantLock(
                tenant_id=tenant_id,
                holder=holder,
                purpose=purpose,
                acquired_at=now,
                expires_at=expires_at,
            ))
            try:
                db.commit()
                log.debug(f"Lock acquired for tenant {tenant_id} by {holder} ({purpose})")
                return
            except IntegrityError:
                db.rollback()

            existing = db.get(TenantLock, tenant_id)
            if existing is not None and existing.expires_at <= now:
                reclaimed = (
                    db.query(TenantLock)
                    .filter(
                        TenantLock.tenant_id == tenant_id,
                        TenantLock.holder == existing.holder,
                        TenantLock.expires_at <= now,
                    )
                    .update(
                        {
                            TenantLock.holder: holder,
                            TenantLock.purpose: purpose,
                            TenantLock.acquired_at: now,
                            TenantLock.expires_at: expires_at,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                if reclaimed == 1:
                    log.warning(
                        f"Reclaimed expired lock for tenant {tenant_id} "
                        f"(previous holder {existing.holder}, expired {existing.expires_at})"
                    )
                    return
                existing = db.get(TenantLock, tenant_id)

            details = {"tenant_id": tenant_id}
            if existing is not None:
                details.update({
                    "holder": existing.holder,
                    "purpose": existing.purpose,
                    "acquired_at": existing.acquired_at.isoformat(),
                })
            log.warning(f"Lock contention for tenant {tenant_id}: {details}")
            raise RecomputeInProgressError(
                f"A {details.get('purpose', 'recompute')} is already running for tenant {tenant_id}; retry later",
                details=details,
            )
        finally:
            db.close()

    def release(self, tenant_id: str, holder: str) -> bool:
        """Delete the lock row if ``holder`` still owns it."""
        db = self.session_factory()
        try:
            deleted = (
                db.query(TenantLock)
                .filter(TenantLock.tenant_id == tenant_id, TenantLock.holder == holder)
                .delete(synchronize_session=False)
            )
            db.commit()
            if not deleted:
                log.warning(f"Lock for tenant {tenant_id} was no longer held by {holder}")
            return bool(deleted)
        finally:
            db.close()

    def _extend(self, db, tenant_id: str, holder: str) -> None:
        extended = (
            db.query(TenantLock)
            .filter(TenantLock.tenant_id == tenant_id, TenantLock.holder == holder)
            .update(
                {TenantLock.expires_at: self.clock() + timedelta(seconds=self.ttl_seconds)},
                synchronize_session=False,
            )
        )
        if not extended:
            current = db.get(TenantLock, tenant_id)
            details = {"tenant_id": tenant_id, "holder": current.holder if current else None}
            log.warning(f"Lock for tenant {tenant_id} lost by {holder}: {details}")
            raise RecomputeInProgressError(
                f"Lock for tenant {tenant_id} is no longer held by {holder}",
                details=details,
            )

    def renew(self, tenant_id: str, holder: str) -> None:
        """Push expires_at forward; RecomputeInProgressError if the lock was reclaimed."""
        db = self.session_factory()
        try:
            self._extend(db, tenant_id, holder)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def confirm_held(self, db, tenant_id: str, holder: str) -> None:
        """
        Renew inside the caller's open transaction, so the caller's writes
        commit only while ``holder`` still owns the lock. Not committed here.
        """
        self._extend(db, tenant_id, holder)

    def holder_of(self, tenant_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            lock = db.get(TenantLock, tenant_id)
            return lock.holder if lock else None
        finally:
            db.close()

    @contextmanager
    def hold(self, tenant_id: str, holder: str, purpose: str = "recompute"):
        """Acquire for the duration of the block; released on every exit path."""
        self.acquire(tenant_id, holder, purpose)
        try:
            yield
        finally:
            self.release(tenant_id, holder)
