from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionauth.storage.models import (
    OAuthIdentity,
    RefreshTokenRecord,
    User,
    utcnow,
)

_USER_COLUMNS = (
    "id, email, hashed_password, full_name, avatar_url, is_active, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store and refresh-token ledger."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError() from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["users", "user_oauth_identities", "refresh_tokens"]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            password_hash=row.get("hashed_password"),
            avatar_url=row.get("avatar_url"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, hashed_password, full_name, avatar_url, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (email, password_hash, full_name, avatar_url, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        # identities and refresh tokens go with the user via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # oauth identities
    def get_oauth_identity(
        self, provider_name: str, provider_user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT provider_name, provider_user_id, user_id, created_at
                FROM user_oauth_identities
                WHERE provider_name = %s AND provider_user_id = %s
                """,
                (provider_name, provider_user_id),
            ).fetchone()
        if not row:
            return None
        return OAuthIdentity(
            provider_name=row["provider_name"],
            provider_user_id=row["provider_user_id"],
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_oauth_identity(
        self, provider_name: str, provider_user_id: str, user_id: str
    ) -> OAuthIdentity:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_oauth_identities (user_id, provider_name, provider_user_id)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, provider_name, provider_user_id),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation):
            raise ConstraintViolation(
                "oauth identity already linked", {"field": "provider_user_id"}
            )
        return OAuthIdentity(
            provider_name=provider_name,
            provider_user_id=provider_user_id,
            user_id=user_id,
        )

    def resolve_oauth_identity(
        self,
        provider_name: str,
        provider_user_id: str,
        email: str,
        full_name: str,
        avatar_url: Optional[str] = None,
    ) -> Tuple[Optional[User], str]:
        """Existing link, email match or new account, in one transaction.

        A concurrent resolver that wins the race surfaces here as a
        ConstraintViolation after the transaction has been rolled back.
        """
        try:
            with self._connect() as conn, conn.transaction():
                link = conn.execute(
                    """
                    SELECT user_id FROM user_oauth_identities
                    WHERE provider_name = %s AND provider_user_id = %s
                    """,
                    (provider_name, provider_user_id),
                ).fetchone()
                if link:
                    row = conn.execute(
                        f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
                        (link["user_id"],),
                    ).fetchone()
                    if not row:
                        return None, "dangling"
                    return self._user_from_row(row), "existing"

                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s FOR UPDATE",
                    (email,),
                ).fetchone()
                outcome = "linked"
                if not row:
                    row = conn.execute(
                        f"""
                        INSERT INTO users (email, full_name, avatar_url, is_active)
                        VALUES (%s, %s, %s, TRUE)
                        RETURNING {_USER_COLUMNS}
                        """,
                        (email, full_name, avatar_url),
                    ).fetchone()
                    outcome = "created"
                conn.execute(
                    """
                    INSERT INTO user_oauth_identities (user_id, provider_name, provider_user_id)
                    VALUES (%s, %s, %s)
                    """,
                    (row["id"], provider_name, provider_user_id),
                )
                return self._user_from_row(row), outcome
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "concurrent identity resolution", {"constraint": _constraint_name(exc)}
            )

    # refresh tokens
    def insert_refresh_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO refresh_tokens (user_id, token_hash, expires_at) VALUES (%s, %s, %s)",
                    (user_id, token_hash, expires_at),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation(
                "refresh token rejected", {"constraint": _constraint_name(exc)}
            )
        return RefreshTokenRecord(
            token_hash=token_hash, user_id=user_id, expires_at=expires_at
        )

    def get_refresh_token(
        self, token_hash: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT token_hash, user_id, expires_at, created_at FROM refresh_tokens
                WHERE token_hash = %s AND user_id = %s AND expires_at > %s
                """,
                (token_hash, user_id, now or utcnow()),
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount


def _constraint_name(exc: Exception) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None)
