"""SQLite backed persistence used by the campaign dispatcher."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import PersistenceError

ACTIVE_STATUSES = ("pending", "processing")
FAILED_STATUSES = ("error", "dead")


class Persistence:
    """Helper class responsible for reading and writing dispatch state.

    Every mutation relies on SQLite's own atomicity: row-level upserts and a
    claim primitive executed inside a single ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: str = "/data/dispatch.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection in autocommit mode, translating datastore failures."""
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                yield db
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Datastore failure: {exc}") from exc

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL DEFAULT 'email',
                    status TEXT NOT NULL DEFAULT 'draft',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaign_recipients (
                    campaign_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sent_at INTEGER,
                    provider_id TEXT,
                    error TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (campaign_id, recipient_id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_queue (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    email TEXT,
                    payload TEXT NOT NULL,
                    scheduled_for INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    locked_by TEXT,
                    lock_expires_at INTEGER,
                    last_error TEXT,
                    last_error_at INTEGER,
                    provider_message_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (campaign_id, recipient_id)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_email_queue_due ON email_queue(status, scheduled_for)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sms_senders (
                    recipient_id TEXT PRIMARY KEY,
                    from_number TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_threads (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient_id TEXT NOT NULL,
                    phone_number TEXT NOT NULL,
                    campaign_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (recipient_id, phone_number)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id INTEGER NOT NULL,
                    recipient_id TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    from_number TEXT,
                    to_number TEXT,
                    body TEXT,
                    provider_id TEXT,
                    is_bulk INTEGER NOT NULL DEFAULT 0,
                    media_urls TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    # Campaigns ----------------------------------------------------------------
    async def ensure_campaign(self, campaign_id: str, channel: str = "email") -> None:
        """Create the campaign row if it does not exist yet."""
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO campaigns (id, channel) VALUES (?, ?) ON CONFLICT(id) DO NOTHING",
                (campaign_id, channel),
            )

    async def set_campaign_status(self, campaign_id: str, status: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE campaigns SET status=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (status, campaign_id),
            )

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def campaign_counts(self, campaign_id: str) -> Dict[str, int]:
        """Count queue jobs per status, falling back to recipient rows for SMS campaigns."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM email_queue WHERE campaign_id=? GROUP BY status",
                (campaign_id,),
            ) as cur:
                rows = await cur.fetchall()
            if not rows:
                async with db.execute(
                    "SELECT status, COUNT(*) FROM campaign_recipients WHERE campaign_id=? GROUP BY status",
                    (campaign_id,),
                ) as cur:
                    rows = await cur.fetchall()
        return {status: int(count) for status, count in rows}

    async def refresh_campaign_status(self, campaign_id: str) -> Optional[str]:
        """Recompute the campaign status as a projection of its per-item state."""
        counts = await self.campaign_counts(campaign_id)
        if not counts:
            return None
        if any(counts.get(status) for status in ACTIVE_STATUSES):
            status = "processing"
        elif any(counts.get(status) for status in FAILED_STATUSES):
            status = "completed_with_errors"
        else:
            status = "sent"
        await self.set_campaign_status(campaign_id, status)
        return status

    async def update_recipient_status(
        self,
        campaign_id: str,
        recipient_id: str,
        status: str,
        *,
        sent_at: Optional[int] = None,
        provider_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Mirror a recipient-level outcome onto ``campaign_recipients``."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO campaign_recipients (campaign_id, recipient_id, status, sent_at, provider_id, error)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(campaign_id, recipient_id) DO UPDATE SET
                    status = excluded.status,
                    sent_at = COALESCE(excluded.sent_at, campaign_recipients.sent_at),
                    provider_id = COALESCE(excluded.provider_id, campaign_recipients.provider_id),
                    error = excluded.error,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (campaign_id, recipient_id, status, sent_at, provider_id, error),
            )

    async def list_recipients(self, campaign_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM campaign_recipients WHERE campaign_id=? ORDER BY recipient_id",
                (campaign_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # Email queue ----------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        payload = data.get("payload")
        if isinstance(payload, str):
            try:
                data["payload"] = json.loads(payload)
            except json.JSONDecodeError:
                data["payload"] = {"raw_payload": payload}
        return data

    async def insert_queue_jobs(self, entries: Sequence[Dict[str, Any]]) -> int:
        """Persist a batch of queue jobs, ignoring (campaign, recipient) duplicates.

        Returns the number of rows actually inserted.
        """
        if not entries:
            return 0
        inserted = 0
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for entry in entries:
                    cursor = await db.execute(
                        """
                        INSERT INTO email_queue
                            (id, campaign_id, recipient_id, email, payload, scheduled_for, status, max_attempts)
                        VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
                        ON CONFLICT(campaign_id, recipient_id) DO NOTHING
                        """,
                        (
                            entry["id"],
                            entry["campaign_id"],
                            entry["recipient_id"],
                            entry.get("email"),
                            json.dumps(entry["payload"]),
                            int(entry["scheduled_for"]),
                            int(entry["max_attempts"]),
                        ),
                    )
                    if cursor.rowcount:
                        inserted += 1
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return inserted

    async def claim_due_jobs(self, limit: int, worker_id: str, lease_seconds: int, now_ms: int) -> List[Dict[str, Any]]:
        """Atomically claim up to ``limit`` due jobs for ``worker_id``.

        A job is due when it is ``pending`` and ``scheduled_for <= now``, or when
        it is ``processing`` under a lease that expired and still has attempts
        left. Claimed rows move to ``processing`` with a fresh lease and an
        incremented ``attempts`` counter. Selection and update run inside one
        ``BEGIN IMMEDIATE`` transaction so two claimers never share a job.
        """
        if limit <= 0:
            return []
        expires_at = now_ms + int(lease_seconds) * 1000
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT id FROM email_queue
                    WHERE (status = 'pending' AND scheduled_for <= ?)
                       OR (status = 'processing' AND lock_expires_at <= ? AND attempts < max_attempts)
                    ORDER BY scheduled_for ASC, id ASC
                    LIMIT ?
                    """,
                    (now_ms, now_ms, limit),
                ) as cur:
                    ids = [row[0] for row in await cur.fetchall()]
                if not ids:
                    await db.commit()
                    return []
                placeholders = ",".join("?" for _ in ids)
                await db.execute(
                    f"""
                    UPDATE email_queue
                    SET status = 'processing',
                        locked_by = ?,
                        lock_expires_at = ?,
                        attempts = attempts + 1,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id IN ({placeholders})
                    """,
                    (worker_id, expires_at, *ids),
                )
                async with db.execute(
                    f"SELECT * FROM email_queue WHERE id IN ({placeholders}) ORDER BY scheduled_for ASC, id ASC",
                    ids,
                ) as cur:
                    rows = await cur.fetchall()
                    cols = [c[0] for c in cur.description]
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return [self._decode_job_row(row, cols) for row in rows]

    async def _transition(self, job_id: str, worker_id: str, assignments: str, params: Sequence[Any]) -> bool:
        """Apply an update to a job this worker still holds; clears the lease."""
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE email_queue
                SET {assignments},
                    locked_by = NULL,
                    lock_expires_at = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'processing' AND locked_by = ?
                """,
                (*params, job_id, worker_id),
            )
            return cursor.rowcount > 0

    async def mark_job_sent(self, job_id: str, worker_id: str, provider_message_id: Optional[str]) -> bool:
        """Move a claimed job to the terminal ``sent`` state."""
        return await self._transition(
            job_id,
            worker_id,
            "status = 'sent', provider_message_id = ?, last_error = NULL, last_error_at = NULL",
            (provider_message_id,),
        )

    async def requeue_job(self, job_id: str, worker_id: str, scheduled_for: int, error: str, error_at: int) -> bool:
        """Return a claimed job to ``pending`` for a later retry."""
        return await self._transition(
            job_id,
            worker_id,
            "status = 'pending', scheduled_for = ?, last_error = ?, last_error_at = ?",
            (scheduled_for, error, error_at),
        )

    async def mark_job_failed(self, job_id: str, worker_id: str, status: str, error: str, error_at: int) -> bool:
        """Move a claimed job to a terminal failure state (``error`` or ``dead``)."""
        if status not in FAILED_STATUSES:
            raise ValueError(f"Unsupported failure status: {status}")
        return await self._transition(
            job_id,
            worker_id,
            "status = ?, last_error = ?, last_error_at = ?",
            (status, error, error_at),
        )

    async def requeue_stuck_jobs(self, stuck_seconds: int, limit: int, now_ms: int) -> Dict[str, Any]:
        """Release ``processing`` jobs whose lease expired ``stuck_seconds`` ago.

        Jobs with attempts left go back to ``pending``; exhausted ones are dead-lettered.
        """
        threshold = now_ms - int(stuck_seconds) * 1000
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT id, attempts, max_attempts, campaign_id FROM email_queue
                    WHERE status = 'processing' AND lock_expires_at IS NOT NULL AND lock_expires_at <= ?
                    ORDER BY lock_expires_at ASC
                    LIMIT ?
                    """,
                    (threshold, limit),
                ) as cur:
                    rows = await cur.fetchall()
                requeued = dead = 0
                for job_id, attempts, max_attempts, _campaign_id in rows:
                    if attempts >= max_attempts:
                        await db.execute(
                            """
                            UPDATE email_queue
                            SET status = 'dead', locked_by = NULL, lock_expires_at = NULL,
                                last_error = 'Lease expired after final attempt', last_error_at = ?,
                                updated_at = CURRENT_TIMESTAMP
                            WHERE id = ?
                            """,
                            (now_ms, job_id),
                        )
                        dead += 1
                    else:
                        await db.execute(
                            """
                            UPDATE email_queue
                            SET status = 'pending', locked_by = NULL, lock_expires_at = NULL,
                                scheduled_for = ?, updated_at = CURRENT_TIMESTAMP
                            WHERE id = ?
                            """,
                            (now_ms, job_id),
                        )
                        requeued += 1
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return {"requeued": requeued, "dead": dead, "campaigns": sorted({row[3] for row in rows})}

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM email_queue WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols)

    async def list_jobs(self, campaign_id: Optional[str] = None, *, active_only: bool = False) -> List[Dict[str, Any]]:
        """Return queue jobs for inspection purposes."""
        query = "SELECT * FROM email_queue"
        clauses: List[str] = []
        params: List[Any] = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        if active_only:
            clauses.append("status IN ('pending', 'processing')")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY scheduled_for ASC, id ASC"
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def count_active_jobs(self) -> int:
        """Return the number of jobs still awaiting delivery."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM email_queue WHERE status IN ('pending', 'processing')"
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # SMS state ------------------------------------------------------------------
    async def get_sticky_sender(self, recipient_id: str) -> Optional[str]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT from_number FROM sms_senders WHERE recipient_id=?", (recipient_id,)
            ) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def insert_sticky_sender(self, recipient_id: str, from_number: str) -> str:
        """Insert the mapping unless one exists; return the number that is now stored."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO sms_senders (recipient_id, from_number) VALUES (?, ?)
                ON CONFLICT(recipient_id) DO NOTHING
                """,
                (recipient_id, from_number),
            )
            async with db.execute(
                "SELECT from_number FROM sms_senders WHERE recipient_id=?", (recipient_id,)
            ) as cur:
                row = await cur.fetchone()
        return row[0]

    async def upsert_thread(self, recipient_id: str, phone_number: str, campaign_id: Optional[str] = None) -> int:
        """Insert or touch the (recipient, phone number) thread and return its id."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO message_threads (recipient_id, phone_number, campaign_id)
                VALUES (?, ?, ?)
                ON CONFLICT(recipient_id, phone_number) DO UPDATE SET
                    campaign_id = excluded.campaign_id,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (recipient_id, phone_number, campaign_id),
            )
            async with db.execute(
                "SELECT id FROM message_threads WHERE recipient_id=? AND phone_number=?",
                (recipient_id, phone_number),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0])

    async def insert_message(
        self,
        *,
        thread_id: int,
        recipient_id: str,
        direction: str,
        from_number: Optional[str],
        to_number: str,
        body: str,
        provider_id: Optional[str],
        is_bulk: bool,
        media_urls: Optional[Iterable[str]] = None,
    ) -> int:
        media = list(media_urls or [])
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO messages
                    (thread_id, recipient_id, direction, from_number, to_number, body, provider_id, is_bulk, media_urls)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    recipient_id,
                    direction,
                    from_number,
                    to_number,
                    body,
                    provider_id,
                    1 if is_bulk else 0,
                    json.dumps(media) if media else None,
                ),
            )
            return int(cursor.lastrowid)

    async def list_threads(self, recipient_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM message_threads WHERE recipient_id=? ORDER BY id", (recipient_id,)
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def list_thread_messages(self, thread_id: int) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM messages WHERE thread_id=? ORDER BY id", (thread_id,)
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = [dict(zip(cols, row)) for row in rows]
        for item in result:
            item["is_bulk"] = bool(item["is_bulk"])
            item["media_urls"] = json.loads(item["media_urls"]) if item["media_urls"] else None
        return result
