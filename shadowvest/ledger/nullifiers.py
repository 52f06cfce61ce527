"""
Nullifier record store.

The (organization, nullifier) primary key makes record creation the
claim lock: a second insert for the same key fails with
AlreadyClaimedError and nothing else is written.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiosqlite

from shadowvest.core.types import NullifierRecord
from shadowvest.errors import AlreadyClaimedError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS nullifier_records (
    organization BLOB NOT NULL,
    nullifier BLOB NOT NULL,
    position BLOB NOT NULL,
    used_at INTEGER NOT NULL,
    PRIMARY KEY (organization, nullifier)
);
"""


class NullifierStore:
    """aiosqlite-backed set of used nullifiers."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.path)
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.debug(f"Nullifier store opened at {self.path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "NullifierStore":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("NullifierStore is not open")
        return self._db

    @asynccontextmanager
    async def reserve(self, record: NullifierRecord) -> AsyncIterator[NullifierRecord]:
        """
        Insert the record and hold the transaction open for the caller.

        The insert is committed only if the body completes; an exception in
        the body rolls it back.

        Raises:
            AlreadyClaimedError: the nullifier is already recorded for this organization
        """
        async with self._lock:
            try:
                await self.db.execute(
                    "INSERT INTO nullifier_records (organization, nullifier, position, used_at) "
                    "VALUES (?, ?, ?, ?)",
                    (record.organization, record.nullifier, record.position, record.used_at),
                )
            except aiosqlite.IntegrityError as e:
                await self.db.rollback()
                raise AlreadyClaimedError(record.nullifier) from e

            try:
                yield record
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()

    async def record(self, record: NullifierRecord) -> None:
        async with self.reserve(record):
            pass

    async def get(self, organization: bytes, nullifier: bytes) -> Optional[NullifierRecord]:
        async with self.db.execute(
            "SELECT position, used_at FROM nullifier_records WHERE organization = ? AND nullifier = ?",
            (organization, nullifier),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return NullifierRecord(
            organization=organization,
            nullifier=nullifier,
            position=row[0],
            used_at=row[1],
        )

    async def count(self, organization: bytes, nullifier: bytes) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM nullifier_records WHERE organization = ? AND nullifier = ?",
            (organization, nullifier),
        ) as cursor:
            (n,) = await cursor.fetchone()
        return n
