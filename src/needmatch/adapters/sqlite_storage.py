"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database. The only
operation that needs serializable semantics is the gate's
``try_record_notification``; it runs as a single ``BEGIN IMMEDIATE``
transaction around one guarded UPDATE and one INSERT.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from needmatch.core.constraints import parse_constraints
from needmatch.core.errors import ConstraintViolationAttempt
from needmatch.core.models import (
    CapacityStatus,
    DeliveryFailure,
    GateDecision,
    Item,
    Notification,
    Override,
    OverrideAction,
    PipelineStats,
    Recipient,
    VerificationTier,
)
from needmatch.core.vectors import decode_embedding, encode_embedding

LOGGER = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamps so string comparison in SQL is chronological."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _flags(values: Iterable) -> str:
    return json.dumps(sorted(getattr(v, "value", v) for v in values))


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str, busy_timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _connect_manual(self) -> sqlite3.Connection:
        # Autocommit mode so BEGIN/COMMIT are issued explicitly.
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - items / recipients: matchable entities with versioned embeddings
        - notifications: at most one row per (item, recipient), ever
        - overrides: operator force-include / force-exclude per pair
        - kill_switches: persisted so every worker sees the same state
        - audit_log: per-pair stage decisions, including constraint exclusions
        - pipeline_runs: one row per committed evaluation
        - delivery_failures: operator queue for transport failures
        """

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            # items hold the need/opportunity text plus flags the filter reads.
            # Fields:
            # - hard_constraints: JSON list of flags set true on the item
            # - verification / last_verified_at: ranking tier and its age
            # - capacity: accepting | limited | closed | unknown
            # - embedding / model_version / embedded_at: versioned vector
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS items (
                    id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT '',
                    hard_constraints TEXT NOT NULL DEFAULT '[]',
                    verification TEXT NOT NULL DEFAULT 'unverified',
                    last_verified_at TIMESTAMP,
                    capacity TEXT NOT NULL DEFAULT 'unknown',
                    embedding BLOB,
                    model_version TEXT,
                    embedded_at TIMESTAMP,
                    expires_at TIMESTAMP,
                    active INTEGER NOT NULL DEFAULT 1,
                    latitude REAL,
                    longitude REAL
                )
                """
            )
            # recipients carry the window counter the gate updates atomically.
            # Fields:
            # - incompatible_constraints: JSON list of flags the profile cannot satisfy
            # - window_count / window_reset_at: notifications in the current window
            # - delivery_handle: opaque transport address, the only contact data kept
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recipients (
                    id TEXT PRIMARY KEY,
                    profile TEXT NOT NULL,
                    delivery_handle TEXT NOT NULL,
                    incompatible_constraints TEXT NOT NULL DEFAULT '[]',
                    embedding BLOB,
                    model_version TEXT,
                    embedded_at TIMESTAMP,
                    active INTEGER NOT NULL DEFAULT 1,
                    paused_until TIMESTAMP,
                    window_count INTEGER NOT NULL DEFAULT 0,
                    window_reset_at TIMESTAMP,
                    latitude REAL,
                    longitude REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    justification TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    delivered_at TIMESTAMP,
                    clicked INTEGER NOT NULL DEFAULT 0,
                    not_relevant INTEGER NOT NULL DEFAULT 0,
                    not_relevant_reason TEXT,
                    forced INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (item_id, recipient_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS overrides (
                    item_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (item_id, recipient_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kill_switches (
                    component TEXT PRIMARY KEY,
                    engaged INTEGER NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # audit_log is append-only. recipient_id is NULL for item-level events.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL,
                    recipient_id TEXT,
                    stage TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    detail TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_kind TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    candidate_count INTEGER NOT NULL,
                    notified_count INTEGER NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    last_error TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    resolved_at TIMESTAMP
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_created ON notifications (created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log (created_at)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_subject ON pipeline_runs (subject_kind, subject_id)"
            )

    # -- entities ---------------------------------------------------------

    def upsert_item(self, item: Item) -> None:
        """Insert or replace an item as delivered by the ingestion collaborator."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO items (
                    id, description, category, hard_constraints, verification,
                    last_verified_at, capacity, embedding, model_version, embedded_at,
                    expires_at, active, latitude, longitude
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    description = excluded.description,
                    category = excluded.category,
                    hard_constraints = excluded.hard_constraints,
                    verification = excluded.verification,
                    last_verified_at = excluded.last_verified_at,
                    capacity = excluded.capacity,
                    embedding = excluded.embedding,
                    model_version = excluded.model_version,
                    embedded_at = excluded.embedded_at,
                    expires_at = excluded.expires_at,
                    active = excluded.active,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude
                """,
                (
                    item.id,
                    item.description,
                    item.category,
                    _flags(item.hard_constraints),
                    item.verification.value,
                    _ts(item.last_verified_at),
                    item.capacity.value,
                    encode_embedding(item.embedding),
                    item.model_version,
                    _ts(item.embedded_at),
                    _ts(item.expires_at),
                    int(item.active),
                    item.latitude,
                    item.longitude,
                ),
            )

    def upsert_recipient(self, recipient: Recipient) -> None:
        """Insert or update a recipient. Window counters are never reset by an upsert."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO recipients (
                    id, profile, delivery_handle, incompatible_constraints, embedding,
                    model_version, embedded_at, active, paused_until, window_count,
                    window_reset_at, latitude, longitude
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    profile = excluded.profile,
                    delivery_handle = excluded.delivery_handle,
                    incompatible_constraints = excluded.incompatible_constraints,
                    embedding = excluded.embedding,
                    model_version = excluded.model_version,
                    embedded_at = excluded.embedded_at,
                    active = excluded.active,
                    paused_until = excluded.paused_until,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude
                """,
                (
                    recipient.id,
                    recipient.profile,
                    recipient.delivery_handle,
                    _flags(recipient.incompatible_constraints),
                    encode_embedding(recipient.embedding),
                    recipient.model_version,
                    _ts(recipient.embedded_at),
                    int(recipient.active),
                    _ts(recipient.paused_until),
                    recipient.window_count,
                    _ts(recipient.window_reset_at),
                    recipient.latitude,
                    recipient.longitude,
                ),
            )

    def get_item(self, item_id: str) -> Optional[Item]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return self._item_from_row(row) if row else None

    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM recipients WHERE id = ?", (recipient_id,)).fetchone()
        return self._recipient_from_row(row) if row else None

    def list_matchable_recipients(self, model_version: str, now: datetime) -> list[Recipient]:
        """Active, unpaused recipients embedded with ``model_version``."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM recipients
                WHERE active = 1
                  AND (paused_until IS NULL OR paused_until <= ?)
                  AND model_version = ?
                  AND embedding IS NOT NULL
                """,
                (_ts(now), model_version),
            ).fetchall()
        return [self._recipient_from_row(row) for row in rows]

    def list_matchable_items(self, model_version: str, now: datetime) -> list[Item]:
        """Active, unexpired items embedded with ``model_version``."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM items
                WHERE active = 1
                  AND (expires_at IS NULL OR expires_at > ?)
                  AND model_version = ?
                  AND embedding IS NOT NULL
                """,
                (_ts(now), model_version),
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def list_unprocessed_item_ids(self, model_version: str, now: datetime) -> list[str]:
        """Matchable items that never had a committed pipeline run."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT i.id FROM items i
                WHERE i.active = 1
                  AND (i.expires_at IS NULL OR i.expires_at > ?)
                  AND i.model_version = ?
                  AND i.embedding IS NOT NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM pipeline_runs r
                      WHERE r.subject_kind = 'item' AND r.subject_id = i.id
                  )
                ORDER BY i.id
                """,
                (_ts(now), model_version),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_stale_items(self, model_version: str) -> list[Item]:
        """Active items whose embedding is missing or from another model version."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM items
                WHERE active = 1 AND (embedding IS NULL OR model_version IS NULL OR model_version != ?)
                ORDER BY id
                """,
                (model_version,),
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def list_stale_recipients(self, model_version: str) -> list[Recipient]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM recipients
                WHERE active = 1 AND (embedding IS NULL OR model_version IS NULL OR model_version != ?)
                ORDER BY id
                """,
                (model_version,),
            ).fetchall()
        return [self._recipient_from_row(row) for row in rows]

    def set_item_embedding(self, item_id: str, embedding, model_version: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE items SET embedding = ?, model_version = ?, embedded_at = ? WHERE id = ?",
                (encode_embedding(embedding), model_version, _ts(now), item_id),
            )

    def set_recipient_embedding(self, recipient_id: str, embedding, model_version: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE recipients SET embedding = ?, model_version = ?, embedded_at = ? WHERE id = ?",
                (encode_embedding(embedding), model_version, _ts(now), recipient_id),
            )

    def set_recipient_pause(self, recipient_id: str, paused_until: Optional[datetime]) -> bool:
        """Pause until a timestamp, or resume with ``None``."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE recipients SET paused_until = ? WHERE id = ?",
                (_ts(paused_until), recipient_id),
            )
            return cur.rowcount > 0

    def deactivate_recipient(self, recipient_id: str) -> bool:
        """Soft-deactivate; recipients referenced by history are never deleted."""

        with self._connect() as conn:
            cur = conn.execute("UPDATE recipients SET active = 0 WHERE id = ?", (recipient_id,))
            return cur.rowcount > 0

    def set_item_capacity(self, item_id: str, capacity: CapacityStatus) -> bool:
        with self._connect() as conn:
            cur = conn.execute("UPDATE items SET capacity = ? WHERE id = ?", (capacity.value, item_id))
            return cur.rowcount > 0

    def deactivate_expired_items(self, now: datetime) -> int:
        """Deactivate items past their expiry and return how many changed."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE items SET active = 0 WHERE active = 1 AND expires_at IS NOT NULL AND expires_at <= ?",
                (_ts(now),),
            )
            return cur.rowcount

    # -- overrides --------------------------------------------------------

    def list_overrides(
        self, item_id: Optional[str] = None, recipient_id: Optional[str] = None
    ) -> list[Override]:
        clauses = []
        params: list = []
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        if recipient_id is not None:
            clauses.append("recipient_id = ?")
            params.append(recipient_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM overrides {where} ORDER BY created_at, recipient_id", params
            ).fetchall()
        return [
            Override(
                item_id=row["item_id"],
                recipient_id=row["recipient_id"],
                action=OverrideAction(row["action"]),
                note=row["note"],
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    def save_override(
        self, item_id: str, recipient_id: str, action: OverrideAction, note: str, now: datetime
    ) -> None:
        """Upsert the single override for a pair; the latest operator call wins."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO overrides (item_id, recipient_id, action, note, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(item_id, recipient_id) DO UPDATE SET
                    action = excluded.action,
                    note = excluded.note,
                    created_at = excluded.created_at
                """,
                (item_id, recipient_id, action.value, note, _ts(now)),
            )

    def delete_override(self, item_id: str, recipient_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM overrides WHERE item_id = ? AND recipient_id = ?",
                (item_id, recipient_id),
            )
            return cur.rowcount > 0

    # -- gate -------------------------------------------------------------

    def try_record_notification(
        self,
        item_id: str,
        recipient_id: str,
        justification: str,
        forced: bool,
        now: datetime,
        cap: int,
        window: timedelta,
    ) -> GateDecision:
        """Insert the notification and count it against the window, atomically.

        The guarded UPDATE only matches when the pair has no notification yet
        and the recipient is below cap (or its window has rolled over), so two
        concurrent evaluations can never both pass the cap. BEGIN IMMEDIATE
        takes the write lock before the guard is evaluated.

        Hard constraints are checked again against the stored rows under the
        same lock, so a profile or item change made while the candidate was
        being judged raises ConstraintViolationAttempt instead of committing.
        """

        now_ts = _ts(now)
        params = {
            "rid": recipient_id,
            "iid": item_id,
            "now": now_ts,
            "next_reset": _ts(now + window),
            "cap": cap,
        }
        conn = self._connect_manual()
        try:
            conn.execute("BEGIN IMMEDIATE")
            violated = self._stored_violations(conn, item_id, recipient_id)
            if violated:
                raise ConstraintViolationAttempt(item_id, recipient_id, violated, "commit")
            cur = conn.execute(
                """
                UPDATE recipients
                SET window_count = CASE
                        WHEN window_reset_at IS NULL OR window_reset_at <= :now THEN 1
                        ELSE window_count + 1
                    END,
                    window_reset_at = CASE
                        WHEN window_reset_at IS NULL OR window_reset_at <= :now THEN :next_reset
                        ELSE window_reset_at
                    END
                WHERE id = :rid
                  AND :cap > 0
                  AND active = 1
                  AND (paused_until IS NULL OR paused_until <= :now)
                  AND (window_reset_at IS NULL OR window_reset_at <= :now OR window_count < :cap)
                  AND NOT EXISTS (
                      SELECT 1 FROM notifications WHERE item_id = :iid AND recipient_id = :rid
                  )
                """,
                params,
            )
            if cur.rowcount != 1:
                decision = self._classify_rejection(conn, item_id, recipient_id, now_ts)
                conn.execute("ROLLBACK")
                return decision

            conn.execute(
                """
                INSERT INTO notifications (item_id, recipient_id, justification, created_at, forced)
                VALUES (?, ?, ?, ?, ?)
                """,
                (item_id, recipient_id, justification, now_ts, int(forced)),
            )
            conn.execute("COMMIT")
            return GateDecision.ACCEPTED
        except sqlite3.IntegrityError:
            # Unique index backstop for the pair.
            conn.execute("ROLLBACK")
            return GateDecision.ALREADY_NOTIFIED
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _stored_violations(conn: sqlite3.Connection, item_id: str, recipient_id: str) -> list[str]:
        row = conn.execute(
            """
            SELECT i.hard_constraints AS required, r.incompatible_constraints AS incompatible
            FROM items i, recipients r
            WHERE i.id = ? AND r.id = ?
            """,
            (item_id, recipient_id),
        ).fetchone()
        if row is None:
            return []
        required = parse_constraints(json.loads(row["required"] or "[]"))
        incompatible = parse_constraints(json.loads(row["incompatible"] or "[]"))
        return sorted(flag.value for flag in required & incompatible)

    @staticmethod
    def _classify_rejection(
        conn: sqlite3.Connection, item_id: str, recipient_id: str, now_ts: str
    ) -> GateDecision:
        exists = conn.execute(
            "SELECT 1 FROM notifications WHERE item_id = ? AND recipient_id = ?",
            (item_id, recipient_id),
        ).fetchone()
        if exists:
            return GateDecision.ALREADY_NOTIFIED
        row = conn.execute(
            "SELECT active, paused_until FROM recipients WHERE id = ?",
            (recipient_id,),
        ).fetchone()
        if row is None or not row["active"] or (row["paused_until"] and row["paused_until"] > now_ts):
            return GateDecision.RECIPIENT_UNAVAILABLE
        return GateDecision.THROTTLED

    # -- notifications ----------------------------------------------------

    def get_notification(self, item_id: str, recipient_id: str) -> Optional[Notification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE item_id = ? AND recipient_id = ?",
                (item_id, recipient_id),
            ).fetchone()
        return self._notification_from_row(row) if row else None

    def list_notifications(self, item_id: Optional[str] = None) -> list[Notification]:
        with self._connect() as conn:
            if item_id is None:
                rows = conn.execute("SELECT * FROM notifications ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM notifications WHERE item_id = ? ORDER BY id", (item_id,)
                ).fetchall()
        return [self._notification_from_row(row) for row in rows]

    def list_undelivered(self, limit: int = 100) -> list[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE delivered = 0 ORDER BY created_at, id LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._notification_from_row(row) for row in rows]

    def mark_delivered(self, item_id: str, recipient_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE notifications SET delivered = 1, delivered_at = ?
                WHERE item_id = ? AND recipient_id = ?
                """,
                (_ts(now), item_id, recipient_id),
            )
            conn.execute(
                """
                UPDATE delivery_failures SET resolved_at = ?
                WHERE item_id = ? AND recipient_id = ? AND resolved_at IS NULL
                """,
                (_ts(now), item_id, recipient_id),
            )

    def mark_clicked(self, item_id: str, recipient_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE notifications SET clicked = 1 WHERE item_id = ? AND recipient_id = ?",
                (item_id, recipient_id),
            )
            return cur.rowcount > 0

    def mark_not_relevant(self, item_id: str, recipient_id: str, reason: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE notifications SET not_relevant = 1, not_relevant_reason = ?
                WHERE item_id = ? AND recipient_id = ?
                """,
                (reason, item_id, recipient_id),
            )
            return cur.rowcount > 0

    # -- operator queue ---------------------------------------------------

    def record_delivery_failure(
        self, item_id: str, recipient_id: str, attempts: int, error: str, now: datetime
    ) -> None:
        """Open or update the operator-queue entry for a pair."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE delivery_failures
                SET attempts = attempts + ?, last_error = ?
                WHERE item_id = ? AND recipient_id = ? AND resolved_at IS NULL
                """,
                (attempts, error, item_id, recipient_id),
            )
            if cur.rowcount == 0:
                conn.execute(
                    """
                    INSERT INTO delivery_failures (item_id, recipient_id, attempts, last_error, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (item_id, recipient_id, attempts, error, _ts(now)),
                )

    def list_delivery_failures(self, include_resolved: bool = False) -> list[DeliveryFailure]:
        query = "SELECT * FROM delivery_failures"
        if not include_resolved:
            query += " WHERE resolved_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at, id").fetchall()
        return [
            DeliveryFailure(
                id=row["id"],
                item_id=row["item_id"],
                recipient_id=row["recipient_id"],
                attempts=row["attempts"],
                last_error=row["last_error"],
                created_at=_dt(row["created_at"]),
                resolved_at=_dt(row["resolved_at"]),
            )
            for row in rows
        ]

    def resolve_delivery_failure(self, failure_id: int, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE delivery_failures SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                (_ts(now), failure_id),
            )
            return cur.rowcount > 0

    # -- audit, runs, kill switches ---------------------------------------

    def record_audit(
        self,
        item_id: str,
        recipient_id: Optional[str],
        stage: str,
        decision: str,
        detail: str,
        now: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (item_id, recipient_id, stage, decision, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (item_id, recipient_id, stage, decision, detail, _ts(now)),
            )

    def list_audit(self, item_id: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE item_id = ? ORDER BY id", (item_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def record_run(
        self,
        subject_kind: str,
        subject_id: str,
        status: str,
        candidate_count: int,
        notified_count: int,
        now: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_runs (
                    subject_kind, subject_id, status, candidate_count, notified_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (subject_kind, subject_id, status, candidate_count, notified_count, _ts(now)),
            )

    def is_kill_switch_engaged(self, component: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT engaged FROM kill_switches WHERE component = ?", (component,)
            ).fetchone()
        return bool(row["engaged"]) if row else False

    def set_kill_switch(self, component: str, engaged: bool, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kill_switches (component, engaged, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(component) DO UPDATE SET
                    engaged = excluded.engaged,
                    updated_at = excluded.updated_at
                """,
                (component, int(engaged), _ts(now)),
            )

    def list_kill_switches(self) -> dict[str, bool]:
        with self._connect() as conn:
            rows = conn.execute("SELECT component, engaged FROM kill_switches").fetchall()
        return {row["component"]: bool(row["engaged"]) for row in rows}

    def collect_stats(self, since: datetime, until: datetime) -> PipelineStats:
        window = (_ts(since), _ts(until))
        with self._connect() as conn:
            run_rows = conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM pipeline_runs
                WHERE created_at >= ? AND created_at < ?
                GROUP BY status
                """,
                window,
            ).fetchall()
            totals = conn.execute(
                """
                SELECT COUNT(*) AS created,
                       COALESCE(SUM(delivered), 0) AS delivered,
                       COALESCE(SUM(clicked), 0) AS clicked,
                       COALESCE(SUM(not_relevant), 0) AS not_relevant
                FROM notifications
                WHERE created_at >= ? AND created_at < ?
                """,
                window,
            ).fetchone()
            decision_rows = conn.execute(
                """
                SELECT decision, COUNT(*) AS n FROM audit_log
                WHERE created_at >= ? AND created_at < ?
                GROUP BY decision
                """,
                window,
            ).fetchall()
            open_failures = conn.execute(
                "SELECT COUNT(*) AS n FROM delivery_failures WHERE resolved_at IS NULL"
            ).fetchone()
        runs_by_status = {row["status"]: row["n"] for row in run_rows}
        return PipelineStats(
            window_start=since,
            window_end=until,
            runs=sum(runs_by_status.values()),
            runs_by_status=runs_by_status,
            notifications_created=totals["created"],
            notifications_delivered=totals["delivered"],
            notifications_clicked=totals["clicked"],
            marked_not_relevant=totals["not_relevant"],
            decisions={row["decision"]: row["n"] for row in decision_rows},
            open_delivery_failures=open_failures["n"],
        )

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _item_from_row(row: sqlite3.Row) -> Item:
        return Item(
            id=row["id"],
            description=row["description"],
            category=row["category"],
            hard_constraints=parse_constraints(json.loads(row["hard_constraints"] or "[]")),
            verification=VerificationTier(row["verification"]),
            last_verified_at=_dt(row["last_verified_at"]),
            capacity=CapacityStatus(row["capacity"]),
            embedding=decode_embedding(row["embedding"]),
            model_version=row["model_version"],
            embedded_at=_dt(row["embedded_at"]),
            expires_at=_dt(row["expires_at"]),
            active=bool(row["active"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
        )

    @staticmethod
    def _recipient_from_row(row: sqlite3.Row) -> Recipient:
        return Recipient(
            id=row["id"],
            profile=row["profile"],
            delivery_handle=row["delivery_handle"],
            incompatible_constraints=parse_constraints(json.loads(row["incompatible_constraints"] or "[]")),
            embedding=decode_embedding(row["embedding"]),
            model_version=row["model_version"],
            embedded_at=_dt(row["embedded_at"]),
            active=bool(row["active"]),
            paused_until=_dt(row["paused_until"]),
            window_count=row["window_count"],
            window_reset_at=_dt(row["window_reset_at"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
        )

    @staticmethod
    def _notification_from_row(row: sqlite3.Row) -> Notification:
        return Notification(
            item_id=row["item_id"],
            recipient_id=row["recipient_id"],
            justification=row["justification"],
            created_at=_dt(row["created_at"]),
            delivered=bool(row["delivered"]),
            delivered_at=_dt(row["delivered_at"]),
            clicked=bool(row["clicked"]),
            not_relevant=bool(row["not_relevant"]),
            not_relevant_reason=row["not_relevant_reason"],
            forced=bool(row["forced"]),
        )
