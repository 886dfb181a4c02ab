from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import (
    OAuthIdentity,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store with a JSON snapshot under ``fs_root``.

    Used for tests and single-node development. Every mutation happens under
    ``_data_lock`` and is followed by a snapshot write, so the lock doubles as
    the transaction boundary for multi-step operations such as
    :meth:`resolve_oauth_identity`.
    """

    def __init__(self, fs_root: str = "/tmp/sessionauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[Tuple[str, str], OAuthIdentity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # users
    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            user = self._insert_user(
                email,
                full_name,
                password_hash=password_hash,
                avatar_url=avatar_url,
                is_active=is_active,
            )
            self._persist_state()
            return user

    def _insert_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str],
        avatar_url: Optional[str],
        is_active: bool,
    ) -> User:
        if self._find_user_by_email(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            password_hash=password_hash,
            avatar_url=avatar_url,
            is_active=is_active,
        )
        self.users[user.id] = user
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user_by_email(email)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.identities = {
                key: ident
                for key, ident in self.identities.items()
                if ident.user_id != user_id
            }
            self.refresh_tokens = {
                token_hash: record
                for token_hash, record in self.refresh_tokens.items()
                if record.user_id != user_id
            }
            self._persist_state()
            return True

    # oauth identities
    def get_oauth_identity(
        self, provider_name: str, provider_user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._data_lock:
            return self.identities.get((provider_name, provider_user_id))

    def create_oauth_identity(
        self, provider_name: str, provider_user_id: str, user_id: str
    ) -> OAuthIdentity:
        with self._data_lock:
            identity = self._insert_identity(provider_name, provider_user_id, user_id)
            self._persist_state()
            return identity

    def _insert_identity(
        self, provider_name: str, provider_user_id: str, user_id: str
    ) -> OAuthIdentity:
        key = (provider_name, provider_user_id)
        if key in self.identities:
            raise ConstraintViolation(
                "oauth identity already linked", {"field": "provider_user_id"}
            )
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        identity = OAuthIdentity(
            provider_name=provider_name,
            provider_user_id=provider_user_id,
            user_id=user_id,
        )
        self.identities[key] = identity
        return identity

    def resolve_oauth_identity(
        self,
        provider_name: str,
        provider_user_id: str,
        email: str,
        full_name: str,
        avatar_url: Optional[str] = None,
    ) -> Tuple[Optional[User], str]:
        """Map a provider identity to a user inside one locked section.

        Returns ``(user, outcome)`` where outcome is ``existing``, ``linked``
        or ``created``; ``(None, "dangling")`` means the identity row points at
        a user that no longer exists.
        """
        with self._data_lock:
            identity = self.identities.get((provider_name, provider_user_id))
            if identity:
                user = self.users.get(identity.user_id)
                return (user, "existing") if user else (None, "dangling")

            user = self._find_user_by_email(email)
            if user:
                self._insert_identity(provider_name, provider_user_id, user.id)
                self._persist_state()
                return user, "linked"

            user = self._insert_user(
                email,
                full_name,
                password_hash=None,
                avatar_url=avatar_url,
                is_active=True,
            )
            try:
                self._insert_identity(provider_name, provider_user_id, user.id)
            except ConstraintViolation:
                self.users.pop(user.id, None)
                raise
            self._persist_state()
            return user, "created"

    # refresh tokens
    def insert_refresh_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already stored", {"field": "token_hash"}
                )
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshTokenRecord(
                token_hash=token_hash, user_id=user_id, expires_at=expires_at
            )
            self.refresh_tokens[token_hash] = record
            self._persist_state()
            return record

    def get_refresh_token(
        self, token_hash: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.user_id != user_id or record.is_expired(now):
                return None
            return record

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token_hash, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.user_id == user_id
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.is_expired(now)
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "identities": [
                self._serialize_identity(i) for i in self.identities.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        identities: List[OAuthIdentity] = [
            self._deserialize_identity(i) for i in data.get("identities", [])
        ]
        self.identities = {
            (i.provider_name, i.provider_user_id): i for i in identities
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            identities=len(self.identities),
            refresh_records=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "password_hash": user.password_hash,
            "avatar_url": user.avatar_url,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name") or "",
            password_hash=data.get("password_hash"),
            avatar_url=data.get("avatar_url"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_identity(self, identity: OAuthIdentity) -> dict:
        return {
            "provider_name": identity.provider_name,
            "provider_user_id": identity.provider_user_id,
            "user_id": identity.user_id,
            "created_at": self._serialize_datetime(identity.created_at),
        }

    def _deserialize_identity(self, data: dict) -> OAuthIdentity:
        return OAuthIdentity(
            provider_name=data["provider_name"],
            provider_user_id=data["provider_user_id"],
            user_id=str(data["user_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "token_hash": record.token_hash,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=data["token_hash"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
