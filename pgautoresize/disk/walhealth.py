"""
WAL archiver and replication slot health.

The three checks are independent: a failing check sets only its own
field to None ("unknown") and is logged at error level. A failed check
is never reported as healthy, because the resize safety gate relies on
these values.
"""

import asyncio
import logging
import os
import re
from datetime import datetime
from typing import List, Optional, Tuple

import asyncpg

from pgautoresize.models.models import SlotInfo, WALHealthInfo, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_STATUS_PATH = "/var/lib/postgresql/data/pgdata/pg_wal/archive_status"

WAL_READY_FILE = re.compile(r"^[0-9A-F]{24}\.ready$")

DATABASE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

ARCHIVER_QUERY = """
    SELECT last_archived_time, last_failed_time
    FROM pg_stat_archiver
"""

# On a standby the current write position is not available, so the
# replay position (or the receive position before replay starts) stands
# in for it. A slot without restart_lsn has never reserved WAL.
PHYSICAL_SLOTS_QUERY = """
    SELECT
        slot_name,
        active,
        restart_lsn::text AS restart_lsn,
        CASE WHEN restart_lsn IS NULL THEN 0
             ELSE pg_wal_lsn_diff(
                 CASE WHEN pg_is_in_recovery()
                      THEN COALESCE(pg_last_wal_replay_lsn(), pg_last_wal_receive_lsn())
                      ELSE pg_current_wal_lsn()
                 END,
                 restart_lsn
             )::bigint
        END AS retained_bytes
    FROM pg_replication_slots
    WHERE slot_type = 'physical'
"""


def archive_is_healthy(last_success: Optional[datetime],
                       last_failure: Optional[datetime]) -> bool:
    """Healthy unless the most recent archiver event is a failure."""
    if last_failure is None:
        return True
    if last_success is None:
        return False
    return last_failure <= last_success


class WALHealthChecker:
    """Produces WALHealthInfo for one running instance."""

    def __init__(self, archive_status_path: str = DEFAULT_ARCHIVE_STATUS_PATH,
                 timeout: float = 10.0):
        self.archive_status_path = archive_status_path
        self.timeout = timeout

    def count_pending_archive(self) -> int:
        """Count WAL segments with a .ready marker.

        A missing archive_status directory means nothing is pending.
        """
        try:
            with os.scandir(self.archive_status_path) as entries:
                return sum(1 for entry in entries if WAL_READY_FILE.match(entry.name))
        except FileNotFoundError:
            return 0

    async def read_archiver_stats(
        self, conn: asyncpg.Connection
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        row = await conn.fetchrow(ARCHIVER_QUERY, timeout=self.timeout)
        if row is None:
            return None, None
        return row["last_archived_time"], row["last_failed_time"]

    async def read_replication_slots(self, conn: asyncpg.Connection) -> List[SlotInfo]:
        rows = await conn.fetch(PHYSICAL_SLOTS_QUERY, timeout=self.timeout)
        return [
            SlotInfo(
                name=row["slot_name"],
                active=row["active"],
                retained_bytes=row["retained_bytes"],
                restart_lsn=row["restart_lsn"],
            )
            for row in rows
        ]

    async def check(self, conn: Optional[asyncpg.Connection]) -> WALHealthInfo:
        """Run all checks; each failure leaves only its own field unknown."""
        health = WALHealthInfo(checked_at=utcnow())

        try:
            health.pending_archive_files = await asyncio.wait_for(
                asyncio.to_thread(self.count_pending_archive), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(
                f"Failed to count pending WAL files in {self.archive_status_path}, "
                f"pending count is unknown: {e!r}"
            )

        if conn is None:
            logger.error("No database connection, archiver and slot health are unknown")
            return health

        try:
            last_success, last_failure = await self.read_archiver_stats(conn)
            health.last_archive_success = last_success
            health.last_archive_failure = last_failure
            health.archive_healthy = archive_is_healthy(last_success, last_failure)
        except DATABASE_ERRORS as e:
            logger.error(f"Failed to read pg_stat_archiver, archive health is unknown: {e!r}")

        try:
            slots = await self.read_replication_slots(conn)
            health.inactive_slots = [slot for slot in slots if not slot.active]
        except DATABASE_ERRORS as e:
            logger.error(f"Failed to read replication slots, slot retention is unknown: {e!r}")

        if health.archive_healthy is False:
            logger.warning(
                f"WAL archiving is failing: last failure {health.last_archive_failure}, "
                f"last success {health.last_archive_success}"
            )
        return health


async def connect(dsn: str, timeout: float = 10.0) -> Optional[asyncpg.Connection]:
    """Open a connection for health checks, or None if the database is unreachable."""
    try:
        return await asyncpg.connect(dsn=dsn, timeout=timeout)
    except DATABASE_ERRORS as e:
        logger.error(f"Failed to connect to the database for WAL health checks: {e!r}")
        return None
