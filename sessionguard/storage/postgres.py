from __future__ import annotations

from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    dump_device_info,
    ensure_utc,
    normalize_ip,
    parse_device_info,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    RefreshToken,
    RevocationReason,
    Session,
    TokenType,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_info JSONB,
        ip_address TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_active_idx ON sessions (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS sessions_expires_at_idx ON sessions (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        device_info JSONB,
        ip_address TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_active_idx ON refresh_tokens (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS refresh_tokens_session_idx ON refresh_tokens (session_id)",
    "CREATE INDEX IF NOT EXISTS refresh_tokens_expires_at_idx ON refresh_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_hash TEXT PRIMARY KEY,
        token_type TEXT NOT NULL CHECK (token_type IN ('access', 'refresh')),
        reason TEXT NOT NULL,
        user_id TEXT NOT NULL,
        session_id TEXT,
        device_info JSONB,
        ip_address TEXT,
        blacklisted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        token_expiry TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expiry_idx ON token_blacklist (token_expiry)",
    "CREATE INDEX IF NOT EXISTS token_blacklist_user_idx ON token_blacklist (user_id)",
    "CREATE INDEX IF NOT EXISTS token_blacklist_session_idx ON token_blacklist (session_id)",
)


class PostgresStore:
    """Postgres-backed durable store for sessions, refresh tokens and the blacklist."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Any]:
        """Yield a pooled connection; commit on exit and map driver failures."""
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{operation}: duplicate key", {"operation": operation}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                f"{operation}: referenced row missing", {"operation": operation}
            ) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    def _ensure_schema(self) -> None:
        """Create the lifecycle tables and their indexes if they are missing."""

        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # sessions
    def create_session_capped(
        self, session: Session, max_sessions: int, *, now: datetime
    ) -> List[Session]:
        """Insert ``session`` after deactivating the user's oldest overflow sessions.

        A per-user advisory lock serializes concurrent logins for the same user
        so two racing inserts cannot both see room under the cap.
        """
        with self._transaction("create_session") as conn:
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                (session.user_id,),
            )
            active = conn.execute(
                """
                SELECT id FROM sessions
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY created_at ASC
                """,
                (session.user_id, now),
            ).fetchall()
            overflow = len(active) - max_sessions + 1
            evicted: List[Session] = []
            if overflow > 0:
                victim_ids = [row["id"] for row in active[:overflow]]
                rows = conn.execute(
                    """
                    UPDATE sessions SET is_active = FALSE
                    WHERE id = ANY(%s) AND is_active
                    RETURNING *
                    """,
                    (victim_ids,),
                ).fetchall()
                evicted = sorted(
                    (self._row_to_session(row) for row in rows),
                    key=lambda s: s.created_at,
                )
            conn.execute(
                """
                INSERT INTO sessions (id, user_id, device_info, ip_address, is_active, last_activity, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    dump_device_info(session.device_info),
                    normalize_ip(session.ip_address),
                    session.is_active,
                    session.last_activity,
                    session.created_at,
                    session.expires_at,
                ),
            )
        return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[Session]:
        query = "SELECT * FROM sessions WHERE user_id = %s"
        params: List[Any] = [user_id]
        if active_only:
            query += " AND is_active AND expires_at > %s"
            params.append(now or datetime.now(timezone.utc))
        query += " ORDER BY created_at ASC"
        with self._transaction("list_user_sessions") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._transaction("touch_session") as conn:
            cur = conn.execute(
                "UPDATE sessions SET last_activity = %s WHERE id = %s AND is_active",
                (at, session_id),
            )
            return cur.rowcount == 1

    def update_session_device(self, session_id: str, device_info: DeviceInfo) -> bool:
        with self._transaction("update_session_device") as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET device_info = %s, ip_address = COALESCE(%s, ip_address)
                WHERE id = %s AND is_active
                """,
                (dump_device_info(device_info), normalize_ip(device_info.ip), session_id),
            )
            return cur.rowcount == 1

    def deactivate_session(self, session_id: str) -> bool:
        with self._transaction("deactivate_session") as conn:
            cur = conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return cur.rowcount == 1

    def deactivate_user_sessions(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> List[str]:
        with self._transaction("deactivate_user_sessions") as conn:
            rows = conn.execute(
                """
                UPDATE sessions SET is_active = FALSE
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (user_id, exclude_session_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._transaction("delete_expired_sessions") as conn:
            cur = conn.execute("DELETE FROM sessions WHERE expires_at < %s", (cutoff,))
            return cur.rowcount

    def delete_inactive_sessions(self, cutoff: datetime) -> int:
        with self._transaction("delete_inactive_sessions") as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE NOT is_active AND last_activity < %s",
                (cutoff,),
            )
            return cur.rowcount

    def session_stats(self, user_id: str, now: datetime) -> Dict[str, int]:
        with self._transaction("session_stats") as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total,
                       count(*) FILTER (WHERE is_active AND expires_at > %(now)s) AS active,
                       count(*) FILTER (WHERE expires_at <= %(now)s) AS expired,
                       count(*) FILTER (WHERE NOT is_active) AS inactive
                FROM sessions WHERE user_id = %(user_id)s
                """,
                {"now": now, "user_id": user_id},
            ).fetchone()
        return {key: int(row[key]) for key in ("total", "active", "expired", "inactive")}

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._transaction("create_refresh_token") as conn:
            conn.execute(
                """
                INSERT INTO refresh_tokens (id, user_id, token_hash, session_id, device_info, ip_address, is_active, last_used_at, expires_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.token_hash,
                    token.session_id,
                    dump_device_info(token.device_info),
                    normalize_ip(token.ip_address),
                    token.is_active,
                    token.last_used_at,
                    token.expires_at,
                    token.created_at,
                    token.updated_at,
                ),
            )
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._transaction("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def deactivate_refresh_token(self, token_hash: str, *, at: datetime) -> bool:
        """Conditional flip from active to inactive; exactly one winner per token."""
        with self._transaction("deactivate_refresh_token") as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_active = FALSE, updated_at = %s
                WHERE token_hash = %s AND is_active
                """,
                (at, token_hash),
            )
            return cur.rowcount == 1

    def deactivate_session_tokens(self, session_id: str, *, at: datetime) -> List[RefreshToken]:
        with self._transaction("deactivate_session_tokens") as conn:
            rows = conn.execute(
                """
                UPDATE refresh_tokens SET is_active = FALSE, updated_at = %s
                WHERE session_id = %s AND is_active
                RETURNING *
                """,
                (at, session_id),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def deactivate_user_tokens(self, user_id: str, *, at: datetime) -> List[RefreshToken]:
        with self._transaction("deactivate_user_tokens") as conn:
            rows = conn.execute(
                """
                UPDATE refresh_tokens SET is_active = FALSE, updated_at = %s
                WHERE user_id = %s AND is_active
                RETURNING *
                """,
                (at, user_id),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def mark_refresh_token_used(self, token_id: str, at: datetime) -> None:
        with self._transaction("mark_refresh_token_used") as conn:
            conn.execute(
                "UPDATE refresh_tokens SET last_used_at = %s, updated_at = %s WHERE id = %s",
                (at, at, token_id),
            )

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._transaction("delete_refresh_token") as conn:
            cur = conn.execute("DELETE FROM refresh_tokens WHERE id = %s", (token_id,))
            return cur.rowcount == 1

    def delete_expired_tokens(self, cutoff: datetime) -> int:
        with self._transaction("delete_expired_tokens") as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (cutoff,)
            )
            return cur.rowcount

    def delete_inactive_tokens(self, cutoff: datetime) -> int:
        with self._transaction("delete_inactive_tokens") as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE NOT is_active AND updated_at < %s",
                (cutoff,),
            )
            return cur.rowcount

    def count_active_session_tokens(self, session_id: str, now: datetime) -> int:
        with self._transaction("count_active_session_tokens") as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM refresh_tokens
                WHERE session_id = %s AND is_active AND expires_at > %s
                """,
                (session_id, now),
            ).fetchone()
        return int(row["n"])

    def token_stats(self, user_id: str, now: datetime) -> Dict[str, int]:
        with self._transaction("token_stats") as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total,
                       count(*) FILTER (WHERE is_active AND expires_at > %(now)s) AS active,
                       count(*) FILTER (WHERE expires_at <= %(now)s) AS expired,
                       count(*) FILTER (WHERE NOT is_active) AS inactive
                FROM refresh_tokens WHERE user_id = %(user_id)s
                """,
                {"now": now, "user_id": user_id},
            ).fetchone()
        return {key: int(row[key]) for key in ("total", "active", "expired", "inactive")}

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        query = "SELECT * FROM refresh_tokens WHERE user_id = %s"
        params: List[Any] = [user_id]
        if active_only:
            query += " AND is_active AND expires_at > %s"
            params.append(now or datetime.now(timezone.utc))
        query += " ORDER BY COALESCE(last_used_at, created_at) DESC"
        with self._transaction("list_user_refresh_tokens") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_token(row) for row in rows]

    # blacklist
    def add_blacklist_entries(self, entries: Sequence[BlacklistEntry]) -> int:
        """Record entries; re-revoking an already listed hash keeps the first record."""
        if not entries:
            return 0
        added = 0
        with self._transaction("add_blacklist_entries") as conn:
            for entry in entries:
                cur = conn.execute(
                    """
                    INSERT INTO token_blacklist (token_hash, token_type, reason, user_id, session_id, device_info, ip_address, blacklisted_at, token_expiry)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (token_hash) DO NOTHING
                    """,
                    (
                        entry.token_hash,
                        entry.token_type.value,
                        entry.reason.value,
                        entry.user_id,
                        entry.session_id,
                        dump_device_info(entry.device_info),
                        normalize_ip(entry.ip_address),
                        entry.blacklisted_at,
                        entry.token_expiry,
                    ),
                )
                added += cur.rowcount
        return added

    def is_blacklisted(self, token_hash: str, now: datetime) -> bool:
        with self._transaction("is_blacklisted") as conn:
            row = conn.execute(
                "SELECT 1 FROM token_blacklist WHERE token_hash = %s AND token_expiry > %s",
                (token_hash, now),
            ).fetchone()
        return row is not None

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._transaction("get_blacklist_entry") as conn:
            row = conn.execute(
                "SELECT * FROM token_blacklist WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def delete_expired_blacklist(self, now: datetime) -> int:
        with self._transaction("delete_expired_blacklist") as conn:
            cur = conn.execute(
                "DELETE FROM token_blacklist WHERE token_expiry < %s", (now,)
            )
            return cur.rowcount

    def list_blacklist(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[BlacklistEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if session_id is not None:
            clauses.append("session_id = %s")
            params.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._transaction("list_blacklist") as conn:
            rows = conn.execute(
                f"SELECT * FROM token_blacklist {where} ORDER BY blacklisted_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def blacklist_stats(self, now: datetime) -> Dict[str, object]:
        with self._transaction("blacklist_stats") as conn:
            rows = conn.execute(
                """
                SELECT token_type, reason, count(*) AS n FROM token_blacklist
                WHERE token_expiry > %s GROUP BY token_type, reason
                """,
                (now,),
            ).fetchall()
        by_type: Counter = Counter()
        by_reason: Counter = Counter()
        for row in rows:
            by_type[row["token_type"]] += int(row["n"])
            by_reason[row["reason"]] += int(row["n"])
        return {
            "total": sum(by_type.values()),
            "by_type": dict(by_type),
            "by_reason": dict(by_reason),
        }

    def pending_cleanup_counts(
        self, *, expired_before: datetime, inactive_before: datetime, now: datetime
    ) -> Dict[str, int]:
        with self._transaction("pending_cleanup_counts") as conn:
            row = conn.execute(
                """
                SELECT
                  (SELECT count(*) FROM refresh_tokens WHERE expires_at < %(expired)s) AS expired_tokens,
                  (SELECT count(*) FROM sessions WHERE expires_at < %(expired)s) AS expired_sessions,
                  (SELECT count(*) FROM token_blacklist WHERE token_expiry < %(now)s) AS expired_blacklist,
                  (SELECT count(*) FROM refresh_tokens WHERE NOT is_active AND updated_at < %(inactive)s) AS inactive_tokens,
                  (SELECT count(*) FROM sessions WHERE NOT is_active AND last_activity < %(inactive)s) AS inactive_sessions
                """,
                {"expired": expired_before, "inactive": inactive_before, "now": now},
            ).fetchone()
        return {key: int(value) for key, value in row.items()}

    # row mapping
    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        created_at = ensure_utc(row["created_at"])
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=created_at,
            expires_at=ensure_utc(row["expires_at"]),
            last_activity=ensure_utc(row.get("last_activity") or created_at),
            device_info=parse_device_info(row.get("device_info")),
            ip_address=row.get("ip_address"),
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> RefreshToken:
        created_at = ensure_utc(row["created_at"])
        last_used = row.get("last_used_at")
        updated = row.get("updated_at")
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            session_id=str(row["session_id"]),
            expires_at=ensure_utc(row["expires_at"]),
            device_info=parse_device_info(row.get("device_info")),
            ip_address=row.get("ip_address"),
            is_active=bool(row.get("is_active", True)),
            last_used_at=ensure_utc(last_used) if last_used else None,
            created_at=created_at,
            updated_at=ensure_utc(updated) if updated else created_at,
        )

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> BlacklistEntry:
        return BlacklistEntry(
            token_hash=row["token_hash"],
            token_type=TokenType(row["token_type"]),
            reason=RevocationReason(row["reason"]),
            user_id=str(row["user_id"]),
            token_expiry=ensure_utc(row["token_expiry"]),
            session_id=row.get("session_id"),
            device_info=parse_device_info(row.get("device_info")),
            ip_address=row.get("ip_address"),
            blacklisted_at=ensure_utc(row["blacklisted_at"]),
        )
