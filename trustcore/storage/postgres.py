from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from trustcore.logging import get_logger, sanitize_error_message
from trustcore.storage.common import SecretCipher
from trustcore.storage.errors import ConstraintViolation, StoreUnavailable
from trustcore.storage.models import (
    PendingTicket,
    RecoveryCode,
    SecurityToken,
    Session,
    TokenPurpose,
    TwoFactorCredential,
    User,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = [
    "app_user",
    "two_factor_credential",
    "recovery_code",
    "pending_ticket",
    "auth_session",
    "security_token",
]


class PostgresStore:
    """Postgres-backed authoritative store.

    Multi-row invariants are enforced inside single transactions backed by
    partial unique indexes (see ``schema.sql``); single-use consumption is a
    conditional ``UPDATE ... RETURNING`` so the database picks one winner.
    """

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        pool_timeout: float = 5.0,
        mfa_encryption_key: str | None = None,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool_timeout = pool_timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = SecretCipher(mfa_encryption_key, fs_root=fs_root)
        if verify_schema:
            self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.pool_timeout) as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error=sanitize_error_message(str(exc))
            )
            raise StoreUnavailable("authoritative store unavailable") from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing)), SCHEMA_PATH.name
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            email_verified_at=row.get("email_verified_at"),
            deletion_scheduled_at=row.get("deletion_scheduled_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_addr"),
            is_current_session=bool(row.get("is_current_session")),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> SecurityToken:
        payload = row.get("payload")
        if isinstance(payload, str):
            payload = json.loads(payload)
        return SecurityToken(
            id=str(row["id"]),
            purpose=TokenPurpose(row["purpose"]),
            identifier=row["identifier"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
            payload=payload,
            created_at=row["created_at"],
        )

    @staticmethod
    def _ticket_from_row(row: dict) -> PendingTicket:
        return PendingTicket(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            ticket_hash=row["ticket_hash"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, email_verified_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, email_verified_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def mark_email_verified(self, user_id: str, verified_at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, %s)
                WHERE id = %s
                RETURNING *
                """,
                (verified_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_email(
        self, user_id: str, new_email: str, *, verified_at: datetime
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE app_user SET email = %s, email_verified_at = %s WHERE id = %s RETURNING *",
                    (new_email, verified_at, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def schedule_deletion(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET deletion_scheduled_at = %s WHERE id = %s RETURNING *",
                (at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM app_user WHERE id = %s RETURNING id, email", (user_id,)
                ).fetchone()
                if not row:
                    return False
                # tokens carry no foreign key; they are keyed by user id or email
                conn.execute(
                    "DELETE FROM security_token WHERE identifier = %s OR identifier = %s",
                    (user_id, str(row["email"]).lower()),
                )
        return True

    # two-factor
    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorCredential:
        encrypted = self._mfa_cipher.encrypt(secret)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO two_factor_credential (user_id, secret, enabled, updated_at)
                    VALUES (%s, %s, FALSE, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, updated_at = now()
                    WHERE NOT two_factor_credential.enabled
                    RETURNING *
                    """,
                    (user_id, encrypted),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        if not row:
            raise ConstraintViolation("two-factor already enabled", {"user_id": user_id})
        return TwoFactorCredential(
            user_id=str(row["user_id"]),
            secret=secret,
            enabled=False,
            backup_codes_generated=bool(row.get("backup_codes_generated")),
            updated_at=row["updated_at"],
        )

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorCredential(
            user_id=str(row["user_id"]),
            secret=self._mfa_cipher.decrypt(row["secret"]),
            enabled=bool(row["enabled"]),
            backup_codes_generated=bool(row.get("backup_codes_generated")),
            updated_at=row["updated_at"],
        )

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE two_factor_credential
                    SET enabled = TRUE, backup_codes_generated = TRUE, updated_at = %s
                    WHERE user_id = %s AND NOT enabled
                    RETURNING user_id
                    """,
                    (now, user_id),
                ).fetchone()
                if not row:
                    return False
                conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                with conn.cursor() as cur:
                    cur.executemany(
                        "INSERT INTO recovery_code (id, user_id, code_hash, created_at) VALUES (%s, %s, %s, %s)",
                        [
                            (str(uuid.uuid4()), user_id, code_hash, now)
                            for code_hash in code_hashes
                        ],
                    )
        return True

    def delete_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT enabled FROM two_factor_credential WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row or not row["enabled"]:
                    return False
                conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                conn.execute(
                    "DELETE FROM two_factor_credential WHERE user_id = %s", (user_id,)
                )
        return True

    def redeem_recovery_code(
        self, ticket_hash: str, code_hash: str, now: datetime
    ) -> Optional[PendingTicket]:
        """Consume the ticket and one matching code together, or neither."""
        with self._connect() as conn:
            with conn.transaction():
                # the row lock makes a second redemption on this ticket wait, then miss
                ticket = conn.execute(
                    """
                    SELECT * FROM pending_ticket
                    WHERE ticket_hash = %s AND consumed_at IS NULL AND expires_at > %s
                    FOR UPDATE
                    """,
                    (ticket_hash, now),
                ).fetchone()
                if not ticket:
                    return None
                code = conn.execute(
                    """
                    UPDATE recovery_code SET consumed_at = %s
                    WHERE user_id = %s AND code_hash = %s AND consumed_at IS NULL
                    RETURNING id
                    """,
                    (now, ticket["user_id"], code_hash),
                ).fetchone()
                if not code:
                    return None
                row = conn.execute(
                    "UPDATE pending_ticket SET consumed_at = %s WHERE id = %s RETURNING *",
                    (now, ticket["id"]),
                ).fetchone()
        return self._ticket_from_row(row)

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM recovery_code WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            RecoveryCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                consumed_at=row.get("consumed_at"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM recovery_code WHERE user_id = %s AND consumed_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def create_pending_ticket(
        self, user_id: str, ticket_hash: str, expires_at: datetime
    ) -> PendingTicket:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO pending_ticket (id, user_id, ticket_hash, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, ticket_hash, expires_at),
            ).fetchone()
        return self._ticket_from_row(row)

    def get_pending_ticket(self, ticket_hash: str) -> Optional[PendingTicket]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_ticket WHERE ticket_hash = %s", (ticket_hash,)
            ).fetchone()
        return self._ticket_from_row(row) if row else None

    def consume_pending_ticket(
        self, ticket_hash: str, now: datetime
    ) -> Optional[PendingTicket]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_ticket SET consumed_at = %s
                WHERE ticket_hash = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, ticket_hash, now),
            ).fetchone()
        return self._ticket_from_row(row) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # serialize concurrent logins for the same user
                    owner = conn.execute(
                        "SELECT id FROM app_user WHERE id = %s FOR UPDATE",
                        (session.user_id,),
                    ).fetchone()
                    if not owner:
                        raise ConstraintViolation(
                            "user does not exist", {"user_id": session.user_id}
                        )
                    conn.execute(
                        "UPDATE auth_session SET is_current_session = FALSE WHERE user_id = %s AND is_current_session",
                        (session.user_id,),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO auth_session (id, user_id, token_hash, created_at, last_active_at,
                                                  expires_at, user_agent, ip_addr, is_current_session)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                        RETURNING *
                        """,
                        (
                            session.id,
                            session.user_id,
                            session.token_hash,
                            session.created_at,
                            session.last_active_at,
                            session.expires_at,
                            session.user_agent,
                            session.ip_address,
                        ),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY last_active_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET last_active_at = %s
                WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, token_hash, now),
            ).fetchone()
        return row is not None

    def revoke_session(
        self, session_id: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s, is_current_session = FALSE
                WHERE id = %s AND user_id = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (now, session_id, user_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_user_sessions(
        self, user_id: str, now: datetime, except_session_id: Optional[str] = None
    ) -> List[Session]:
        query = """
            UPDATE auth_session SET revoked_at = %s, is_current_session = FALSE
            WHERE user_id = %s AND revoked_at IS NULL
        """
        params: list[Any] = [now, user_id]
        if except_session_id:
            query += " AND id <> %s"
            params.append(except_session_id)
        query += " RETURNING *"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._session_from_row(row) for row in rows]

    # security tokens
    def issue_token(self, token: SecurityToken) -> SecurityToken:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{token.purpose.value}:{token.identifier}",),
                )
                conn.execute(
                    "DELETE FROM security_token WHERE purpose = %s AND identifier = %s AND consumed_at IS NULL",
                    (token.purpose.value, token.identifier),
                )
                row = conn.execute(
                    """
                    INSERT INTO security_token (id, purpose, identifier, token_hash, expires_at, payload, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.purpose.value,
                        token.identifier,
                        token.token_hash,
                        token.expires_at,
                        json.dumps(token.payload) if token.payload is not None else None,
                        token.created_at,
                    ),
                ).fetchone()
        return self._token_from_row(row)

    def redeem_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[SecurityToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE security_token SET consumed_at = %s
                WHERE purpose = %s AND token_hash = %s
                  AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, purpose.value, token_hash, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[SecurityToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM security_token WHERE purpose = %s AND token_hash = %s",
                (purpose.value, token_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_live_token(
        self, purpose: TokenPurpose, identifier: str, now: datetime
    ) -> Optional[SecurityToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM security_token
                WHERE purpose = %s AND identifier = %s AND consumed_at IS NULL AND expires_at > %s
                """,
                (purpose.value, identifier, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM security_token WHERE id = %s", (token_id,))
