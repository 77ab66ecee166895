from __future__ import annotations

import dataclasses
import json
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from gatekeeper.logging import get_logger
from gatekeeper.service.crypto import FieldCipher, is_encrypted
from gatekeeper.service.errors import DecryptionError, EncryptionError
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    ENCRYPTED_USER_FIELDS,
    AuditEvent,
    DeviceInfo,
    LoginAttempt,
    Session,
    User,
    utcnow,
)

_USER_FIELDS = frozenset(f.name for f in dataclasses.fields(User))
_SESSION_FIELDS = frozenset(f.name for f in dataclasses.fields(Session))
# Fields whose writes go through dedicated atomic methods
_GUARDED_USER_FIELDS = frozenset({"id", "email", "created_at"})


def _check_user_fields(fields: Dict[str, Any]) -> None:
    rejected = (set(fields) - _USER_FIELDS) | (_GUARDED_USER_FIELDS & set(fields))
    if rejected:
        raise ValueError(f"unsupported user fields: {sorted(rejected)}")


class MemoryStore:
    """In-process credential, session, and audit store.

    All state is guarded by a single re-entrant lock so read-modify-write
    helpers (refresh-hash compare-and-swap, TOTP step claims, backup code
    consumption) are atomic. PII fields listed in ``ENCRYPTED_USER_FIELDS``
    cross an explicit encryption boundary: they are sealed with the injected
    ``FieldCipher`` on write and opened on read. Rows record which fields are
    sealed so legacy plaintext rows can be migrated without sniffing.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, cipher: Optional[FieldCipher] = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher or FieldCipher(None)
        self.users: Dict[str, User] = {}
        self.sealed_fields: Dict[str, set[str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditEvent] = []
        self.login_attempts: List[LoginAttempt] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # encryption boundary
    # ------------------------------------------------------------------
    def _seal_value(self, field_name: str, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not self.cipher.configured:
            raise EncryptionError(f"cannot store {field_name}: field encryption key is not configured")
        return self.cipher.encrypt(value)

    def _open_row(self, row: User) -> User:
        opened = dataclasses.replace(
            row,
            totp_backup_codes=list(row.totp_backup_codes),
            password_history=list(row.password_history),
        )
        sealed = self.sealed_fields.get(row.id, set())
        for name in ENCRYPTED_USER_FIELDS:
            raw = getattr(row, name)
            if raw is None or name not in sealed:
                continue
            try:
                setattr(opened, name, self.cipher.decrypt(raw))
            except DecryptionError as exc:
                # unreadable PII degrades to null rather than failing the read
                self.logger.warning(
                    "field_decrypt_failed", user_id=row.id, field=name, error=str(exc)
                )
                setattr(opened, name, None)
        return opened

    # ------------------------------------------------------------------
    # credential records
    # ------------------------------------------------------------------
    def create_user(self, email: str, **fields: Any) -> User:
        _check_user_fields(fields)
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            plain = {name: fields.pop(name, None) for name in ENCRYPTED_USER_FIELDS}
            now = utcnow()
            row = User(id=str(uuid.uuid4()), email=normalized, created_at=now, updated_at=now, **fields)
            for name, value in plain.items():
                setattr(row, name, self._seal_value(name, value))
            self.users[row.id] = row
            self.sealed_fields[row.id] = set(ENCRYPTED_USER_FIELDS)
            self._persist_state()
            return self._open_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            row = self.users.get(user_id)
            return self._open_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            row = next((u for u in self.users.values() if u.email == normalized), None)
            return self._open_row(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            row = next((u for u in self.users.values() if u.google_id == google_id), None)
            return self._open_row(row) if row else None

    def get_user_by_reset_token_hash(self, digest: str) -> Optional[User]:
        if not digest:
            return None
        with self._data_lock:
            row = next(
                (u for u in self.users.values() if u.password_reset_token_hash == digest), None
            )
            return self._open_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            rows = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [self._open_row(row) for row in rows[:limit]]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        """Apply a partial update; untouched fields keep their stored values."""
        _check_user_fields(changes)
        with self._data_lock:
            row = self.users.get(user_id)
            if not row:
                return None
            for name, value in changes.items():
                if name in ENCRYPTED_USER_FIELDS:
                    value = self._seal_value(name, value)
                    self.sealed_fields.setdefault(user_id, set()).add(name)
                elif isinstance(value, list):
                    value = list(value)
                setattr(row, name, value)
            row.updated_at = utcnow()
            self._persist_state()
            return self._open_row(row)

    def compare_and_swap_refresh_hash(
        self,
        user_id: str,
        expected: Optional[str],
        new_hash: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        """Replace the stored refresh hash only if it still equals ``expected``."""
        with self._data_lock:
            row = self.users.get(user_id)
            if not row or row.refresh_token_hash != expected:
                return False
            row.refresh_token_hash = new_hash
            row.refresh_token_expires = expires_at
            row.updated_at = utcnow()
            self._persist_state()
            return True

    def claim_totp_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as used; False if it (or a later step) was already accepted."""
        with self._data_lock:
            row = self.users.get(user_id)
            if not row:
                return False
            if row.totp_last_step is not None and step <= row.totp_last_step:
                return False
            row.totp_last_step = step
            self._persist_state()
            return True

    def remove_backup_code(self, user_id: str, digest: str) -> bool:
        with self._data_lock:
            row = self.users.get(user_id)
            if not row or digest not in row.totp_backup_codes:
                return False
            row.totp_backup_codes.remove(digest)
            row.updated_at = utcnow()
            self._persist_state()
            return True

    def anonymize_user(self, user_id: str) -> bool:
        """Erase PII in place; the record id survives for audit references."""
        with self._data_lock:
            row = self.users.get(user_id)
            if not row:
                return False
            row.email = f"deleted-{row.id}@anonymized.invalid"
            row.first_name = ""
            row.last_name = ""
            row.phone = None
            row.profile_image = None
            row.google_id = None
            row.password_hash = None
            row.password_history = []
            row.totp_enabled = False
            row.totp_verified = False
            row.totp_secret = None
            row.totp_backup_codes = []
            row.refresh_token_hash = None
            row.refresh_token_expires = None
            row.is_active = False
            row.updated_at = utcnow()
            self.revoke_user_sessions(user_id, reason="anonymized")
            self._persist_state()
            return True

    def migrate_plaintext_fields(self) -> int:
        """Seal PII left in plaintext by rows that predate field encryption."""
        migrated = 0
        with self._data_lock:
            for row in self.users.values():
                sealed = self.sealed_fields.setdefault(row.id, set())
                for name in ENCRYPTED_USER_FIELDS:
                    raw = getattr(row, name)
                    if name in sealed:
                        continue
                    if raw is not None and not is_encrypted(raw):
                        setattr(row, name, self.cipher.encrypt(raw))
                        migrated += 1
                    sealed.add(name)
            if migrated:
                self._persist_state()
        return migrated

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(
        self,
        user_id: str,
        session_token: str,
        *,
        expires_at: datetime,
        refresh_token_hash: Optional[str] = None,
        user_agent: str = "",
        device_info: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if session_token in self.sessions:
                raise ConstraintViolation("session token already exists", field="session_token")
            created = now or utcnow()
            sess = Session(
                id=str(uuid.uuid4()),
                user_id=user_id,
                session_token=session_token,
                expires_at=expires_at,
                refresh_token_hash=refresh_token_hash,
                user_agent=user_agent or "",
                device_info=device_info or DeviceInfo(),
                ip=ip,
                last_activity=created,
                created_at=created,
            )
            self.sessions[session_token] = sess
            self._persist_state()
            return dataclasses.replace(sess)

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            return dataclasses.replace(sess) if sess else None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.id == session_id), None)
            return dataclasses.replace(sess) if sess else None

    def touch_session(self, session_token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return None
            # last_activity only moves forward
            if now > sess.last_activity:
                sess.last_activity = now
            self._persist_state()
            return dataclasses.replace(sess)

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        unknown = set(changes) - _SESSION_FIELDS
        if unknown or {"id", "session_token", "user_id"} & set(changes):
            raise ValueError(f"unsupported session fields: {sorted(changes)}")
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.id == session_id), None)
            if not sess:
                return None
            for name, value in changes.items():
                setattr(sess, name, value)
            self._persist_state()
            return dataclasses.replace(sess)

    def rotate_session_refresh_hash(
        self, session_token: str, expected: Optional[str], new_hash: Optional[str]
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active or sess.refresh_token_hash != expected:
                return False
            sess.refresh_token_hash = new_hash
            self._persist_state()
            return True

    def deactivate_session(
        self, session_token: str, *, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """Soft-delete a session; returns False when it was already inactive."""
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.revoked_at = now or utcnow()
            sess.revoke_reason = reason
            self._persist_state()
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_token: Optional[str] = None,
        reason: str = "revoked",
        now: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            stamp = now or utcnow()
            revoked = 0
            for token, sess in self.sessions.items():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_token and token == except_token:
                    continue
                sess.is_active = False
                sess.revoked_at = stamp
                sess.revoke_reason = reason
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            rows = [s for s in self.sessions.values() if s.user_id == user_id]
            rows.sort(key=lambda s: s.last_activity, reverse=True)
            return [dataclasses.replace(s) for s in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [token for token, s in self.sessions.items() if s.expires_at <= now]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_inactive_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, s in self.sessions.items()
                if not s.is_active and (s.revoked_at or s.last_activity) < before
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # audit events and login attempts
    # ------------------------------------------------------------------
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        category: Optional[str] = None,
        actions: Optional[Sequence[str]] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Newest-first events matching every supplied predicate."""
        with self._data_lock:
            rows: Iterable[AuditEvent] = list(self.audit_events)
        if user_id is not None:
            rows = [e for e in rows if e.user_id == user_id]
        if category is not None:
            rows = [e for e in rows if e.category == category]
        if actions is not None:
            wanted = set(actions)
            rows = [e for e in rows if e.action in wanted]
        if success is not None:
            rows = [e for e in rows if e.success is success]
        if since is not None:
            rows = [e for e in rows if e.created_at >= since]
        if until is not None:
            rows = [e for e in rows if e.created_at <= until]
        return sorted(rows, key=lambda e: e.created_at, reverse=True)

    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
            return attempt

    def list_login_attempts(
        self,
        *,
        email: Optional[str] = None,
        ip: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginAttempt]:
        with self._data_lock:
            rows = list(self.login_attempts)
        if email is not None:
            rows = [a for a in rows if a.email == email.strip().lower()]
        if ip is not None:
            rows = [a for a in rows if a.ip == ip]
        if success is not None:
            rows = [a for a in rows if a.success is success]
        if since is not None:
            rows = [a for a in rows if a.created_at >= since]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def prune_login_attempts(self, before: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.created_at >= before]
            pruned = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            if pruned:
                self._persist_state()
            return pruned

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if dataclasses.is_dataclass(value):
            return {
                f.name: MemoryStore._encode(getattr(value, f.name))
                for f in dataclasses.fields(value)
            }
        if isinstance(value, list):
            return [MemoryStore._encode(v) for v in value]
        return value

    @staticmethod
    def _decode(cls, data: Dict[str, Any]):
        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            raw = data[f.name]
            if raw is not None and "datetime" in str(f.type):
                parsed = datetime.fromisoformat(raw)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                raw = parsed
            elif raw is not None and "DeviceInfo" in str(f.type):
                raw = DeviceInfo(**raw)
            kwargs[f.name] = raw
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [
                {**self._encode(u), "encrypted_fields": sorted(self.sealed_fields.get(u.id, ()))}
                for u in self.users.values()
            ],
            "sessions": [self._encode(s) for s in self.sessions.values()],
            "audit_events": [self._encode(e) for e in self.audit_events],
            "login_attempts": [self._encode(a) for a in self.login_attempts],
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".auth_store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("users", []):
            flags = set(raw.pop("encrypted_fields", []))
            user = self._decode(User, raw)
            self.users[user.id] = user
            self.sealed_fields[user.id] = flags
        for raw in data.get("sessions", []):
            sess = self._decode(Session, raw)
            self.sessions[sess.session_token] = sess
        self.audit_events = [self._decode(AuditEvent, raw) for raw in data.get("audit_events", [])]
        self.login_attempts = [
            self._decode(LoginAttempt, raw) for raw in data.get("login_attempts", [])
        ]
        self.logger.info(
            "auth_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
