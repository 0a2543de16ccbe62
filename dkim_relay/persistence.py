"""SQLite backed persistence shared by the API and the retry scheduler."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

DOMAIN_COLUMNS = (
    "id, name, selector, public_key, encrypted_private_key, is_active, is_verified, created_at, updated_at"
)
CREDENTIAL_COLUMNS = (
    "id, domain_id, name, key_hash, key_prefix, is_active, expires_at, last_used_at, created_at, updated_at"
)
ATTEMPT_COLUMNS = (
    "a.id, a.domain_id, a.from_email, a.to_email, a.subject, a.payload, a.status, a.retry_count, "
    "a.next_retry_at, a.error, a.error_code, a.message_id, a.created_at, a.updated_at"
)


class Persistence:
    """Helper class responsible for reading and writing relay state."""

    def __init__(self, db_path: str = "/data/dkim_relay.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path)

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS domains (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    selector TEXT NOT NULL,
                    public_key TEXT NOT NULL,
                    encrypted_private_key TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    id TEXT PRIMARY KEY,
                    domain_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    key_hash TEXT NOT NULL,
                    key_prefix TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    expires_at INTEGER,
                    last_used_at INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_attempts (
                    id TEXT PRIMARY KEY,
                    domain_id TEXT NOT NULL,
                    from_email TEXT NOT NULL,
                    to_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at INTEGER,
                    error TEXT,
                    error_code TEXT,
                    message_id TEXT,
                    claim_token TEXT,
                    claimed_until INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_credentials_prefix ON credentials(key_prefix)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_credentials_domain ON credentials(domain_id)")
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_attempts_due ON send_attempts(status, next_retry_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_attempts_domain ON send_attempts(domain_id, created_at)"
            )
            await db.commit()

    @staticmethod
    def _rows(cur: aiosqlite.Cursor, rows: Sequence[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
        cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # Domains ------------------------------------------------------------------
    @staticmethod
    def _decode_domain(data: Dict[str, Any]) -> Dict[str, Any]:
        data["is_active"] = bool(data["is_active"])
        data["is_verified"] = bool(data["is_verified"])
        return data

    async def insert_domain(self, domain: Dict[str, Any]) -> None:
        """Insert a domain together with its key material.

        Raises ``aiosqlite.IntegrityError`` when the name is already taken.
        """
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO domains
                (id, name, selector, public_key, encrypted_private_key, is_active, is_verified, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    domain["id"],
                    domain["name"],
                    domain["selector"],
                    domain["public_key"],
                    domain["encrypted_private_key"],
                    1 if domain.get("is_active", True) else 0,
                    1 if domain.get("is_verified", False) else 0,
                    domain["created_at"],
                    domain["updated_at"],
                ),
            )
            await db.commit()

    async def get_domain(self, domain_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single domain or ``None``."""
        async with self._connect() as db:
            async with db.execute(f"SELECT {DOMAIN_COLUMNS} FROM domains WHERE id=?", (domain_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._decode_domain(self._rows(cur, [row])[0])

    async def get_domain_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(f"SELECT {DOMAIN_COLUMNS} FROM domains WHERE name=?", (name,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._decode_domain(self._rows(cur, [row])[0])

    async def list_domains(self, *, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        """Return domains, newest first, with active key and attempt counts."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {DOMAIN_COLUMNS},
                       (SELECT COUNT(*) FROM credentials c
                        WHERE c.domain_id = domains.id AND c.is_active = 1) AS api_key_count,
                       (SELECT COUNT(*) FROM send_attempts s
                        WHERE s.domain_id = domains.id) AS attempt_count
                FROM domains
                ORDER BY created_at DESC, name ASC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(cur, rows)
        return [self._decode_domain(item) for item in result]

    async def count_domains(self) -> int:
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM domains") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def update_domain_flags(
        self,
        domain_id: str,
        *,
        updated_at: int,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> bool:
        """Update the activity and verification flags that are not ``None``."""
        assignments = ["updated_at=?"]
        params: List[Any] = [updated_at]
        if is_active is not None:
            assignments.append("is_active=?")
            params.append(1 if is_active else 0)
        if is_verified is not None:
            assignments.append("is_verified=?")
            params.append(1 if is_verified else 0)
        params.append(domain_id)
        async with self._connect() as db:
            cursor = await db.execute(f"UPDATE domains SET {', '.join(assignments)} WHERE id=?", params)
            await db.commit()
            return cursor.rowcount > 0

    async def delete_domain(self, domain_id: str) -> bool:
        """Remove a domain and every credential and attempt bound to it."""
        async with self._connect() as db:
            await db.execute("DELETE FROM credentials WHERE domain_id=?", (domain_id,))
            await db.execute("DELETE FROM send_attempts WHERE domain_id=?", (domain_id,))
            cursor = await db.execute("DELETE FROM domains WHERE id=?", (domain_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Credentials --------------------------------------------------------------
    @staticmethod
    def _decode_credential(data: Dict[str, Any]) -> Dict[str, Any]:
        data["is_active"] = bool(data["is_active"])
        if "domain_is_active" in data:
            data["domain_is_active"] = bool(data["domain_is_active"])
        return data

    async def insert_credential(self, credential: Dict[str, Any]) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO credentials
                (id, domain_id, name, key_hash, key_prefix, is_active, expires_at, last_used_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    credential["id"],
                    credential["domain_id"],
                    credential["name"],
                    credential["key_hash"],
                    credential["key_prefix"],
                    1 if credential.get("is_active", True) else 0,
                    credential.get("expires_at"),
                    credential["created_at"],
                    credential["updated_at"],
                ),
            )
            await db.commit()

    async def get_credential(self, credential_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {CREDENTIAL_COLUMNS} FROM credentials WHERE id=?", (credential_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._decode_credential(self._rows(cur, [row])[0])

    async def list_credentials(self, domain_id: str) -> List[Dict[str, Any]]:
        """Return the credentials of a domain, newest first."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {CREDENTIAL_COLUMNS} FROM credentials
                WHERE domain_id=?
                ORDER BY created_at DESC, id ASC
                """,
                (domain_id,),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(cur, rows)
        return [self._decode_credential(item) for item in result]

    async def find_active_credentials_by_prefix(self, key_prefix: str) -> List[Dict[str, Any]]:
        """Return every active credential sharing ``key_prefix`` with its domain state.

        The prefix narrows the candidates only; several rows may match.
        """
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT c.id, c.domain_id, c.name, c.key_hash, c.key_prefix, c.is_active,
                       c.expires_at, c.last_used_at, c.created_at, c.updated_at,
                       d.name AS domain_name, d.is_active AS domain_is_active
                FROM credentials c
                JOIN domains d ON d.id = c.domain_id
                WHERE c.key_prefix=? AND c.is_active=1
                ORDER BY c.created_at ASC, c.id ASC
                """,
                (key_prefix,),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(cur, rows)
        return [self._decode_credential(item) for item in result]

    async def touch_credential(self, credential_id: str, used_at: int) -> None:
        """Record the last successful authentication time."""
        async with self._connect() as db:
            await db.execute("UPDATE credentials SET last_used_at=? WHERE id=?", (used_at, credential_id))
            await db.commit()

    async def set_credential_active(self, credential_id: str, is_active: bool, updated_at: int) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE credentials SET is_active=?, updated_at=? WHERE id=?",
                (1 if is_active else 0, updated_at, credential_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def replace_credential_secret(
        self,
        credential_id: str,
        *,
        key_hash: str,
        key_prefix: str,
        expires_at: Optional[int],
        updated_at: int,
    ) -> bool:
        """Swap the hash and prefix of a credential in a single statement."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE credentials
                SET key_hash=?, key_prefix=?, expires_at=?, last_used_at=NULL, updated_at=?
                WHERE id=?
                """,
                (key_hash, key_prefix, expires_at, updated_at, credential_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_credential(self, credential_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM credentials WHERE id=?", (credential_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Send attempts ------------------------------------------------------------
    @staticmethod
    def _decode_attempt(data: Dict[str, Any]) -> Dict[str, Any]:
        payload = data.pop("payload", None)
        try:
            data["message"] = json.loads(payload) if payload else {}
        except json.JSONDecodeError:
            data["message"] = {"raw_payload": payload}
        return data

    async def insert_attempt(self, attempt: Dict[str, Any]) -> None:
        """Store the outcome of a first delivery attempt."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO send_attempts
                (id, domain_id, from_email, to_email, subject, payload, status, retry_count,
                 next_retry_at, error, error_code, message_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt["id"],
                    attempt["domain_id"],
                    attempt["from_email"],
                    attempt["to_email"],
                    attempt["subject"],
                    json.dumps(attempt.get("message") or {}),
                    attempt["status"],
                    int(attempt.get("retry_count", 0)),
                    attempt.get("next_retry_at"),
                    attempt.get("error"),
                    attempt.get("error_code"),
                    attempt.get("message_id"),
                    attempt["created_at"],
                    attempt["updated_at"],
                ),
            )
            await db.commit()

    async def get_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {ATTEMPT_COLUMNS}, a.claim_token, a.claimed_until, d.name AS domain_name
                FROM send_attempts a LEFT JOIN domains d ON d.id = a.domain_id
                WHERE a.id=?
                """,
                (attempt_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._decode_attempt(self._rows(cur, [row])[0])

    async def update_attempt(
        self,
        attempt_id: str,
        *,
        status: str,
        retry_count: int,
        next_retry_at: Optional[int],
        error: Optional[str],
        error_code: Optional[str],
        message_id: Optional[str],
        updated_at: int,
        claim_token: Optional[str] = None,
    ) -> bool:
        """Rewrite the state of an attempt in place and release its claim.

        When ``claim_token`` is given the write only applies if the caller still
        holds the claim; the return value tells whether the row was written.
        """
        query = """
            UPDATE send_attempts
            SET status=?, retry_count=?, next_retry_at=?, error=?, error_code=?, message_id=?,
                claim_token=NULL, claimed_until=NULL, updated_at=?
            WHERE id=?
        """
        params: List[Any] = [status, retry_count, next_retry_at, error, error_code, message_id, updated_at, attempt_id]
        if claim_token is not None:
            query += " AND claim_token=?"
            params.append(claim_token)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount > 0

    async def fetch_due_attempts(self, *, now_ts: int, limit: int) -> List[Dict[str, Any]]:
        """Return pending retries whose time has come and that nobody holds."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {ATTEMPT_COLUMNS}
                FROM send_attempts a
                WHERE a.status='pending_retry'
                  AND a.next_retry_at IS NOT NULL
                  AND a.next_retry_at <= ?
                  AND (a.claimed_until IS NULL OR a.claimed_until < ?)
                ORDER BY a.next_retry_at ASC, a.created_at ASC, a.id ASC
                LIMIT ?
                """,
                (now_ts, now_ts, limit),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(cur, rows)
        return [self._decode_attempt(item) for item in result]

    async def claim_attempt(self, attempt_id: str, *, claim_token: str, now_ts: int, lease_until: int) -> bool:
        """Take exclusive ownership of a due pending attempt until ``lease_until``.

        The conditional update is atomic in SQLite, so of several concurrent
        callers exactly one sees ``True``.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE send_attempts
                SET claim_token=?, claimed_until=?
                WHERE id=?
                  AND status='pending_retry'
                  AND next_retry_at <= ?
                  AND (claimed_until IS NULL OR claimed_until < ?)
                """,
                (claim_token, lease_until, attempt_id, now_ts, now_ts),
            )
            await db.commit()
            return cursor.rowcount == 1

    @staticmethod
    def _attempt_filters(
        domain_id: Optional[str], status: Optional[str], since_ts: Optional[int] = None
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if domain_id:
            clauses.append("a.domain_id=?")
            params.append(domain_id)
        if status:
            clauses.append("a.status=?")
            params.append(status)
        if since_ts is not None:
            clauses.append("a.created_at >= ?")
            params.append(since_ts)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_attempts(
        self,
        *,
        limit: int,
        offset: int = 0,
        domain_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return attempts for inspection, newest first."""
        where, params = self._attempt_filters(domain_id, status)
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {ATTEMPT_COLUMNS}, d.name AS domain_name
                FROM send_attempts a LEFT JOIN domains d ON d.id = a.domain_id
                {where}
                ORDER BY a.created_at DESC, a.id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ) as cur:
                rows = await cur.fetchall()
                result = self._rows(cur, rows)
        return [self._decode_attempt(item) for item in result]

    async def count_attempts(
        self,
        *,
        domain_id: Optional[str] = None,
        status: Optional[str] = None,
        since_ts: Optional[int] = None,
    ) -> int:
        where, params = self._attempt_filters(domain_id, status, since_ts)
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM send_attempts a {where}", params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def count_attempts_by_status(self, *, since_ts: Optional[int] = None) -> Dict[str, int]:
        """Return ``{status: count}`` for attempts created at or after ``since_ts``."""
        where, params = self._attempt_filters(None, None, since_ts)
        async with self._connect() as db:
            async with db.execute(
                f"SELECT a.status, COUNT(*) FROM send_attempts a {where} GROUP BY a.status", params
            ) as cur:
                rows = await cur.fetchall()
        return {status: int(count) for status, count in rows}
