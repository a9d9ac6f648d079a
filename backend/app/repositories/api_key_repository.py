from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class ApiKeyRecord:
    key_id: str
    user_id: str
    label: str
    created_at: str
    revoked_at: str | None
    last_used_at: str | None


class ApiKeyRepository:
    """Per-user bearer keys. Tokens look like ``<key_id>.<secret>``; only the hash is stored."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_key(self, user_id: str, label: str) -> tuple[ApiKeyRecord, str]:
        normalized_user_id = user_id.strip()
        normalized_label = label.strip()
        if not normalized_user_id:
            raise ValueError("user_id must not be empty")
        if not normalized_label:
            raise ValueError("label must not be empty")

        key_id = f"skey_{secrets.token_urlsafe(9)}"
        secret = secrets.token_urlsafe(24)
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (id, created_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (normalized_user_id, now_iso, now_iso),
            )
            conn.execute(
                """
                INSERT INTO api_keys (
                    key_id, user_id, label, secret_hash, created_at, revoked_at, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, NULL, NULL)
                """,
                (key_id, normalized_user_id, normalized_label, _hash_secret(secret), now_iso),
            )
        return (
            ApiKeyRecord(
                key_id=key_id,
                user_id=normalized_user_id,
                label=normalized_label,
                created_at=now_iso,
                revoked_at=None,
                last_used_at=None,
            ),
            f"{key_id}.{secret}",
        )

    def resolve_user_id(self, token: str) -> str | None:
        key_id, separator, secret = token.strip().partition(".")
        if not separator or not key_id or not secret:
            return None

        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, secret_hash
                FROM api_keys
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (key_id,),
            ).fetchone()
            if row is None:
                return None
            if not secrets.compare_digest(str(row["secret_hash"]), _hash_secret(secret)):
                return None
            conn.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE key_id = ?",
                (utc_now_iso(), key_id),
            )
        return str(row["user_id"])

    def revoke_key(self, key_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE api_keys
                SET revoked_at = ?
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (utc_now_iso(), key_id.strip()),
            )
        return cursor.rowcount > 0

    def list_keys(self, *, user_id: str | None = None, include_revoked: bool) -> list[ApiKeyRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if not include_revoked:
            clauses.append("revoked_at IS NULL")

        query = "SELECT key_id, user_id, label, created_at, revoked_at, last_used_at FROM api_keys"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        return [
            ApiKeyRecord(
                key_id=str(row["key_id"]),
                user_id=str(row["user_id"]),
                label=str(row["label"]),
                created_at=str(row["created_at"]),
                revoked_at=(str(row["revoked_at"]) if row["revoked_at"] is not None else None),
                last_used_at=(
                    str(row["last_used_at"]) if row["last_used_at"] is not None else None
                ),
            )
            for row in rows
        ]


def _hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
