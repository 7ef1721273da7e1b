from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from trustcore.logging import get_logger
from trustcore.storage.common import SecretCipher
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    PendingTicket,
    RecoveryCode,
    SecurityToken,
    Session,
    TokenPurpose,
    TwoFactorCredential,
    User,
    as_utc,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    All state lives behind one re-entrant lock, which is what makes the
    conditional operations (current-session flip, token supersession,
    single-use consumption) atomic. When ``fs_root`` is given, each mutation
    is snapshotted to ``<fs_root>/state/memory_store.json``.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, SecurityToken] = {}
        self.pending_tickets: Dict[str, PendingTicket] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = SecretCipher(mfa_encryption_key, fs_root=fs_root)
        if self.fs_root:
            self._load_state()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            self._persist_state()

    def mark_email_verified(self, user_id: str, verified_at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = verified_at
                self._persist_state()
            return replace(user)

    def update_email(
        self, user_id: str, new_email: str, *, verified_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if any(
                u.email == new_email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = new_email
            user.email_verified_at = verified_at
            self._persist_state()
            return replace(user)

    def schedule_deletion(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.deletion_scheduled_at = at
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            user = self.users.pop(user_id)
            owned = {user_id, user.email}
            for token_id, token in list(self.tokens.items()):
                if token.identifier in owned:
                    self.tokens.pop(token_id, None)
            self.recovery_codes.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for ticket_hash, ticket in list(self.pending_tickets.items()):
                if ticket.user_id == user_id:
                    self.pending_tickets.pop(ticket_hash, None)
            self._persist_state()
            return True

    # two-factor
    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorCredential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            existing = self.two_factor.get(user_id)
            if existing and existing.enabled:
                raise ConstraintViolation(
                    "two-factor already enabled", {"user_id": user_id}
                )
            record = TwoFactorCredential(
                user_id=user_id, secret=self._mfa_cipher.encrypt(secret), enabled=False
            )
            self.two_factor[user_id] = record
            self._persist_state()
            return replace(record, secret=secret)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return replace(cfg, secret=self._mfa_cipher.decrypt(cfg.secret))

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or cfg.enabled:
                return False
            cfg.enabled = True
            cfg.backup_codes_generated = True
            cfg.updated_at = now
            self.recovery_codes[user_id] = [
                RecoveryCode(
                    id=str(uuid.uuid4()), user_id=user_id, code_hash=code_hash, created_at=now
                )
                for code_hash in code_hashes
            ]
            self._persist_state()
            return True

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or not cfg.enabled:
                return False
            # codes go first so they never outlive the credential
            self.recovery_codes.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            self._persist_state()
            return True

    def redeem_recovery_code(
        self, ticket_hash: str, code_hash: str, now: datetime
    ) -> Optional[PendingTicket]:
        """Consume the ticket and one matching code together, or neither."""
        with self._data_lock:
            ticket = self.pending_tickets.get(ticket_hash)
            if not ticket or ticket.consumed_at is not None:
                return None
            if as_utc(ticket.expires_at) <= now:
                return None
            for code in self.recovery_codes.get(ticket.user_id, []):
                if code.code_hash == code_hash and code.consumed_at is None:
                    code.consumed_at = now
                    ticket.consumed_at = now
                    self._persist_state()
                    return replace(ticket)
            return None

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return [replace(code) for code in self.recovery_codes.get(user_id, [])]

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for code in self.recovery_codes.get(user_id, []) if code.consumed_at is None
            )

    def create_pending_ticket(
        self, user_id: str, ticket_hash: str, expires_at: datetime
    ) -> PendingTicket:
        with self._data_lock:
            ticket = PendingTicket(
                id=str(uuid.uuid4()),
                user_id=user_id,
                ticket_hash=ticket_hash,
                expires_at=expires_at,
            )
            self.pending_tickets[ticket_hash] = ticket
            self._persist_state()
            return replace(ticket)

    def get_pending_ticket(self, ticket_hash: str) -> Optional[PendingTicket]:
        with self._data_lock:
            ticket = self.pending_tickets.get(ticket_hash)
            return replace(ticket) if ticket else None

    def consume_pending_ticket(
        self, ticket_hash: str, now: datetime
    ) -> Optional[PendingTicket]:
        with self._data_lock:
            ticket = self.pending_tickets.get(ticket_hash)
            if not ticket or ticket.consumed_at is not None:
                return None
            if as_utc(ticket.expires_at) <= now:
                return None
            ticket.consumed_at = now
            self._persist_state()
            return replace(ticket)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            for sibling in self.sessions.values():
                if sibling.user_id == session.user_id:
                    sibling.is_current_session = False
            stored = replace(session, is_current_session=True)
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.token_hash == token_hash), None
            )
            return replace(sess) if sess else None

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            live = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_live(now)
            ]
        return sorted(live, key=lambda s: as_utc(s.last_active_at), reverse=True)

    def touch_session(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and sess.is_live(now):
                    sess.last_active_at = now
                    self._persist_state()
                    return True
            return False

    def revoke_session(
        self, session_id: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or sess.revoked_at is not None:
                return None
            sess.revoked_at = now
            sess.is_current_session = False
            self._persist_state()
            return replace(sess)

    def revoke_user_sessions(
        self, user_id: str, now: datetime, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            revoked: List[Session] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked_at is not None:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked_at = now
                sess.is_current_session = False
                revoked.append(replace(sess))
            if revoked:
                self._persist_state()
            return revoked

    # security tokens
    def issue_token(self, token: SecurityToken) -> SecurityToken:
        with self._data_lock:
            for token_id, existing in list(self.tokens.items()):
                if (
                    existing.purpose == token.purpose
                    and existing.identifier == token.identifier
                    and existing.consumed_at is None
                ):
                    self.tokens.pop(token_id, None)
            self.tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def redeem_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[SecurityToken]:
        with self._data_lock:
            token = self._find_token(purpose, token_hash)
            if not token or token.consumed_at is not None:
                return None
            if as_utc(token.expires_at) <= now:
                return None
            token.consumed_at = now
            self._persist_state()
            return replace(token)

    def get_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[SecurityToken]:
        with self._data_lock:
            token = self._find_token(purpose, token_hash)
            return replace(token) if token else None

    def get_live_token(
        self, purpose: TokenPurpose, identifier: str, now: datetime
    ) -> Optional[SecurityToken]:
        with self._data_lock:
            for token in self.tokens.values():
                if (
                    token.purpose == purpose
                    and token.identifier == identifier
                    and token.consumed_at is None
                    and as_utc(token.expires_at) > now
                ):
                    return replace(token)
            return None

    def delete_token(self, token_id: str) -> None:
        with self._data_lock:
            if self.tokens.pop(token_id, None) is not None:
                self._persist_state()

    def _find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[SecurityToken]:
        return next(
            (
                t
                for t in self.tokens.values()
                if t.purpose == purpose and t.token_hash == token_hash
            ),
            None,
        )

    # snapshot persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, TokenPurpose):
            return value.value
        return value

    def _serialize(self, record: Any) -> dict:
        return {key: self._encode(val) for key, val in asdict(record).items()}

    @staticmethod
    def _decode_dates(data: dict, *keys: str) -> dict:
        for key in keys:
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return data

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "two_factor": [self._serialize(c) for c in self.two_factor.values()],
            "recovery_codes": [
                self._serialize(code)
                for codes in self.recovery_codes.values()
                for code in codes
            ],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "tokens": [self._serialize(t) for t in self.tokens.values()],
            "pending_tickets": [
                self._serialize(t) for t in self.pending_tickets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        for raw in state.get("users", []):
            user = User(
                **self._decode_dates(
                    raw, "email_verified_at", "deletion_scheduled_at", "created_at"
                )
            )
            self.users[user.id] = user
        for raw in state.get("two_factor", []):
            cfg = TwoFactorCredential(**self._decode_dates(raw, "updated_at"))
            self.two_factor[cfg.user_id] = cfg
        for raw in state.get("recovery_codes", []):
            code = RecoveryCode(**self._decode_dates(raw, "consumed_at", "created_at"))
            self.recovery_codes.setdefault(code.user_id, []).append(code)
        for raw in state.get("sessions", []):
            sess = Session(
                **self._decode_dates(
                    raw, "created_at", "last_active_at", "expires_at", "revoked_at"
                )
            )
            self.sessions[sess.id] = sess
        for raw in state.get("tokens", []):
            raw["purpose"] = TokenPurpose(raw["purpose"])
            token = SecurityToken(
                **self._decode_dates(raw, "expires_at", "consumed_at", "created_at")
            )
            self.tokens[token.id] = token
        for raw in state.get("pending_tickets", []):
            ticket = PendingTicket(
                **self._decode_dates(raw, "expires_at", "consumed_at", "created_at")
            )
            self.pending_tickets[ticket.ticket_hash] = ticket
        return True
