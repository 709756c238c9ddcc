from __future__ import annotations

import hashlib
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authsession.logging import get_logger
from authsession.storage.errors import ConstraintViolation
from authsession.storage.models import (
    AttemptCounter,
    BlacklistEntry,
    Session,
    UserRecord,
    UserRevocation,
)

logger = get_logger(__name__)


def _refresh_key(refresh_token: str) -> str:
    return hashlib.sha256(refresh_token.encode()).hexdigest()


class MemoryRevocationStore:
    """In-process blacklist keyed by token hash, plus per-user revocation marks."""

    def __init__(self) -> None:
        self.entries: Dict[str, BlacklistEntry] = {}
        self.user_marks: Dict[str, UserRevocation] = {}
        self._data_lock = threading.RLock()

    async def get_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.entries.get(token_hash)

    async def put_entry(self, entry: BlacklistEntry) -> None:
        with self._data_lock:
            self.entries[entry.token_hash] = entry

    async def list_entries(self) -> List[BlacklistEntry]:
        with self._data_lock:
            return list(self.entries.values())

    async def get_user_mark(self, user_id: str) -> Optional[UserRevocation]:
        with self._data_lock:
            return self.user_marks.get(user_id)

    async def put_user_mark(self, mark: UserRevocation) -> None:
        with self._data_lock:
            self.user_marks[mark.user_id] = mark

    async def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired = [key for key, entry in self.entries.items() if entry.expires_at <= now]
            for key in expired:
                self.entries.pop(key, None)
            expired_marks = [
                user_id for user_id, mark in self.user_marks.items() if mark.expires_at <= now
            ]
            for user_id in expired_marks:
                self.user_marks.pop(user_id, None)
            return len(expired) + len(expired_marks)

    async def clear(self) -> None:
        with self._data_lock:
            self.entries.clear()
            self.user_marks.clear()


class MemorySessionStore:
    """Sessions indexed by id, owning user and refresh token hash."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._by_refresh: Dict[str, str] = {}
        self._refresh_of: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def _index_refresh(self, session: Session) -> None:
        previous = self._refresh_of.get(session.session_id)
        current = _refresh_key(session.refresh_token)
        if previous == current:
            return
        if previous is not None:
            self._by_refresh.pop(previous, None)
        self._by_refresh[current] = session.session_id
        self._refresh_of[session.session_id] = current

    async def add(self, session: Session) -> None:
        with self._data_lock:
            if session.session_id in self.sessions:
                raise ConstraintViolation(
                    "session already exists", {"session_id": session.session_id}
                )
            self.sessions[session.session_id] = session
            self._by_user.setdefault(session.user_id, []).append(session.session_id)
            self._index_refresh(session)

    async def save(self, session: Session) -> None:
        with self._data_lock:
            if session.session_id not in self.sessions:
                raise KeyError(session.session_id)
            self.sessions[session.session_id] = session
            self._index_refresh(session)

    async def get(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._by_refresh.get(_refresh_key(refresh_token))
            return self.sessions.get(session_id) if session_id else None

    async def list_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            ids = self._by_user.get(user_id, [])
            return [self.sessions[sid] for sid in ids if sid in self.sessions]

    async def list_all(self) -> List[Session]:
        with self._data_lock:
            return list(self.sessions.values())

    async def delete(self, session_id: str) -> None:
        with self._data_lock:
            session = self.sessions.pop(session_id, None)
            if session is None:
                return
            owned = self._by_user.get(session.user_id, [])
            if session_id in owned:
                owned.remove(session_id)
            if not owned:
                self._by_user.pop(session.user_id, None)
            refresh = self._refresh_of.pop(session_id, None)
            if refresh is not None:
                self._by_refresh.pop(refresh, None)


class MemoryThrottleStore:
    def __init__(self) -> None:
        self.counters: Dict[str, AttemptCounter] = {}
        self._data_lock = threading.RLock()

    async def get(self, subject_key: str) -> Optional[AttemptCounter]:
        with self._data_lock:
            return self.counters.get(subject_key)

    async def put(self, counter: AttemptCounter) -> None:
        with self._data_lock:
            self.counters[counter.subject_key] = counter

    async def delete(self, subject_key: str) -> None:
        with self._data_lock:
            self.counters.pop(subject_key, None)

    async def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                key for key, counter in self.counters.items() if counter.window_reset_at <= now
            ]
            for key in expired:
                self.counters.pop(key, None)
            return len(expired)


class MemoryCredentialStore:
    """Development credential store with argon2id password hashes."""

    def __init__(self, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.users: Dict[str, UserRecord] = {}
        self._by_email: Dict[str, str] = {}
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._data_lock = threading.RLock()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    async def create_user(self, email: str, password: str, *, role: str = "user") -> UserRecord:
        normalized = email.strip().lower()
        password_hash = self.hash_password(password)
        with self._data_lock:
            if normalized in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserRecord(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
            )
            self.users[user.id] = user
            self._by_email[normalized] = user.id
            return user

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        with self._data_lock:
            user_id = self._by_email.get(email.strip().lower())
            return self.users.get(user_id) if user_id else None

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self.users.get(user_id)

    async def verify_password(self, candidate: str, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, candidate)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed")
            return False
