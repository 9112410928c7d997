"""
Cross-process signer lease.

SignerWorkQueue serializes signer work inside one worker process. Gunicorn
runs several, so each queued job also holds a row in signer_leases for the
signer address while it builds, signs and submits. Acquisition inserts the
row; a unique violation means another holder, whose row may be taken over
once it has expired.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import SignerLease as SignerLeaseRow
from services.settlement_errors import SignerBusy

logger = logging.getLogger(__name__)


class SignerLease:
    """Database lease on a signer address, shared by every worker process"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl_seconds: Optional[float] = None,
        wait_seconds: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds or Config.SIGNER_LEASE_TTL_SECONDS
        self.wait_seconds = wait_seconds if wait_seconds is not None else Config.SIGNER_LEASE_WAIT_SECONDS
        self.poll_interval = poll_interval

    async def _try_acquire(self, signer_address: str, token: str) -> bool:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        async with self.session_factory() as session:
            session.add(SignerLeaseRow(
                signer_address=signer_address,
                holder_token=token,
                acquired_at=now,
                expires_at=expires_at,
            ))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

            # Held elsewhere; take it over only if that lease has lapsed
            result = await session.execute(
                update(SignerLeaseRow)
                .where(
                    SignerLeaseRow.signer_address == signer_address,
                    SignerLeaseRow.expires_at < now,
                )
                .values(holder_token=token, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                logger.warning(f"⚠️ SIGNER_LEASE_TAKEOVER: {signer_address} lease had expired")
                return True
            await session.rollback()
            return False

    async def acquire(self, signer_address: str) -> str:
        """Wait up to wait_seconds for the lease; returns the holder token"""
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            if await self._try_acquire(signer_address, token):
                logger.info(f"🔐 SIGNER_LEASE: {signer_address} acquired ({token[:8]})")
                return token
            if loop.time() >= deadline:
                logger.warning(f"🚦 SIGNER_LEASE: {signer_address} held by another worker for {self.wait_seconds}s")
                raise SignerBusy("Signer is in use by another worker, try again shortly")
            await asyncio.sleep(self.poll_interval)

    async def release(self, signer_address: str, token: str):
        async with self.session_factory() as session:
            await session.execute(
                delete(SignerLeaseRow).where(
                    SignerLeaseRow.signer_address == signer_address,
                    SignerLeaseRow.holder_token == token,
                )
            )
            await session.commit()
        logger.info(f"🔓 SIGNER_LEASE: {signer_address} released ({token[:8]})")

    @asynccontextmanager
    async def hold(self, signer_address: str):
        token = await self.acquire(signer_address)
        try:
            yield token
        finally:
            await self.release(signer_address, token)
