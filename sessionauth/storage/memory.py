from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import RefreshSession, User, utcnow


class MemoryStore:
    """In-process credential and session store.

    Optionally mirrors its state to ``<fs_root>/state/auth_store.json`` so a
    development server keeps its users and sessions across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # refresh sessions keyed by their opaque token
        self.sessions: Dict[str, RefreshSession] = {}
        # RLock so persistence can run inside an already-locked mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users

    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, name=name)
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh sessions

    def insert(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.token in self.sessions:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.sessions[session.token] = session
            self._persist_state()
            return session

    def find_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self.sessions.get(token)

    def take_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = self.sessions.pop(token, None)
            if session is not None:
                self._persist_state()
            return session

    def delete_by_token(self, token: str) -> int:
        return 1 if self.take_by_token(token) is not None else 0

    def delete_all_for_user(self, user_id: str, excluding: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.sessions.items()
                if sess.user_id == user_id and token != excluding
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token for token, sess in self.sessions.items() if sess.is_expired(now)
            ]
            for token in expired:
                self.sessions.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def count_expired(self, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for sess in self.sessions.values() if sess.is_expired(now))

    # persistence

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _serialize_session(self, sess: RefreshSession) -> Dict[str, Any]:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "token": sess.token,
            "expires_at": self._serialize_datetime(sess.expires_at),
            "user_agent": sess.user_agent,
            "ip_address": sess.ip_address,
            "created_at": self._serialize_datetime(sess.created_at),
            "last_used_at": self._serialize_datetime(sess.last_used_at),
        }

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        with self._data_lock:
            for raw in data.get("users", []):
                user = User(
                    id=raw["id"],
                    email=raw["email"],
                    name=raw.get("name", ""),
                    created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
                )
                self.users[user.id] = user
            for raw in data.get("credentials", []):
                self.credentials[raw["user_id"]] = (
                    raw["password_hash"],
                    raw["password_algo"],
                )
            for raw in data.get("sessions", []):
                sess = RefreshSession(
                    id=raw["id"],
                    user_id=raw["user_id"],
                    token=raw["token"],
                    expires_at=self._deserialize_datetime(raw["expires_at"]),
                    user_agent=raw.get("user_agent", "unknown"),
                    ip_address=raw.get("ip_address", "unknown"),
                    created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
                    last_used_at=self._deserialize_datetime(raw.get("last_used_at")),
                )
                self.sessions[sess.token] = sess
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
