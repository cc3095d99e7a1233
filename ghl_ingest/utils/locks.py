"""
Install locks - serialize INSTALL/UNINSTALL work per (company_id, location_id).

Locks are rows in install_locks, written in their own short transactions so a
lock is visible to every worker the moment it is taken. Uniqueness comes from
the primary key; expiry is a TTL column, so a crashed holder self-heals once
expires_at passes.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ghl_ingest.models.install_lock import InstallLock
from ghl_ingest.utils.timestamps import utcnow, as_utc

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 300  # 5 minutes


class LockContentionError(Exception):
    """Raised when another worker holds the install lock for the same key."""

    def __init__(self, company_id: Optional[str], location_id: Optional[str], holder: str):
        self.company_id = company_id
        self.location_id = location_id
        self.holder = holder
        super().__init__(
            f"Install lock busy for company={company_id} location={location_id}"
        )


def make_lock_key(company_id: Optional[str], location_id: Optional[str]) -> str:
    """
    Build the lock key. (company, None) and (company, location) are distinct keys,
    so an agency-level install never blocks a sub-account install.
    """
    if not company_id and not location_id:
        raise ValueError("Install lock requires company_id or location_id")
    return f"install:{company_id or '-'}:{location_id or '-'}"


class InstallLockManager:
    """Acquire/release install locks against the install_locks table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = LOCK_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)

    @staticmethod
    def is_expired(lock: InstallLock, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return as_utc(lock.expires_at) <= now

    async def acquire(
        self,
        company_id: Optional[str],
        location_id: Optional[str],
        holder: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Try once to take the lock. Clears an expired row for the key first,
        then inserts; a primary-key conflict means someone else holds it.
        """
        key = make_lock_key(company_id, location_id)
        now = now or utcnow()

        async with self._session_factory() as db:
            await db.execute(
                delete(InstallLock).where(
                    and_(InstallLock.lock_key == key, InstallLock.expires_at <= now)
                )
            )
            db.add(InstallLock(
                lock_key=key,
                company_id=company_id,
                location_id=location_id,
                holder=str(holder),
                acquired_at=now,
                expires_at=now + self.ttl,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Install lock busy: %s (wanted by %s)", key, holder)
                return False

        logger.debug("Install lock acquired: %s by %s", key, holder)
        return True

    async def release(
        self,
        company_id: Optional[str],
        location_id: Optional[str],
        holder: str,
    ) -> bool:
        """Delete the lock only if `holder` still owns it."""
        key = make_lock_key(company_id, location_id)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(InstallLock).where(
                    and_(InstallLock.lock_key == key, InstallLock.holder == str(holder))
                )
            )
            await db.commit()

        released = result.rowcount > 0
        if not released:
            logger.warning("Install lock %s not held by %s at release", key, holder)
        return released

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                delete(InstallLock).where(InstallLock.expires_at <= now)
            )
            await db.commit()
        if result.rowcount:
            logger.info("Cleaned %d expired install locks", result.rowcount)
        return result.rowcount or 0

    @asynccontextmanager
    async def hold(
        self,
        company_id: Optional[str],
        location_id: Optional[str],
        holder: str,
    ):
        """
        Usage:
            async with lock_manager.hold(company_id, location_id, webhook_id):
                # install work
        """
        if not await self.acquire(company_id, location_id, holder):
            raise LockContentionError(company_id, location_id, holder)
        try:
            yield
        finally:
            await self.release(company_id, location_id, holder)
