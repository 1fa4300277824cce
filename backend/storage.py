"""
Persistence layer for sessions, conversations, messages, audio cache entries,
rate-limit windows and webhook audit logs.

Supports:
- Postgres (default; pooled psycopg2 helpers from db_postgres, run off the event loop)
- In-memory (development and tests)

Selected with STORAGE_BACKEND. Everything above this module talks to the
`Storage` interface only.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import STORAGE_BACKEND
from models import (
    AudioCacheEntry,
    Conversation,
    Message,
    RateLimitWindow,
    Resource,
    Session,
    User,
    WebhookLog,
)
from utils.timestamp import utcnow

logger = logging.getLogger("au_gold")

# Columns a caller may change through update_session(); id/created_at are fixed.
SESSION_MUTABLE_FIELDS = {
    "fingerprint",
    "wallet_address",
    "token_balance",
    "tier",
    "user_id",
    "memory_bank",
    "cookie_token",
    "cookie_expiry",
}

_RESOURCE_COLUMNS = {
    Resource.MESSAGES: "messages_used",
    Resource.VOICE_MINUTES: "voice_minutes_used",
}


class StorageError(RuntimeError):
    """Raised when a write references a row that does not exist."""


class Storage(ABC):
    """Async persistence contract used by every service."""

    # --- users ---
    @abstractmethod
    async def create_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    # --- sessions ---
    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def get_session_by_cookie_token(self, cookie_token: str) -> Optional[Session]: ...

    @abstractmethod
    async def get_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]:
        """Most recently seen session with this fingerprint."""

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> Session:
        """Apply `fields` and bump last_seen. Returns the updated session."""

    # --- conversations / messages ---
    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    async def list_conversations(self, session_id: str) -> List[Conversation]:
        """Conversations owned by the session, most recently updated first."""

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        """Append a message and bump its conversation's updated_at."""

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Messages in creation order."""

    # --- audio cache ---
    @abstractmethod
    async def add_audio_entry(self, entry: AudioCacheEntry) -> AudioCacheEntry: ...

    @abstractmethod
    async def get_audio_entry_by_token(self, secure_token: str) -> Optional[AudioCacheEntry]: ...

    @abstractmethod
    async def list_audio_entries(
        self,
        *,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AudioCacheEntry]:
        """Newest first, optionally filtered by owner."""

    # --- rate-limit windows ---
    @abstractmethod
    async def get_active_window(self, session_id: str, now: datetime) -> Optional[RateLimitWindow]: ...

    @abstractmethod
    async def create_window(self, window: RateLimitWindow) -> RateLimitWindow: ...

    @abstractmethod
    async def increment_window(self, window_id: str, resource: Resource, amount: int) -> RateLimitWindow:
        """Atomically add `amount` to the resource counter and return the window."""

    # --- webhook audit ---
    @abstractmethod
    async def add_webhook_log(self, log: WebhookLog) -> WebhookLog: ...

    @abstractmethod
    async def list_webhook_logs(self, limit: int = 50) -> List[WebhookLog]: ...


def _check_session_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - SESSION_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update session fields: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryStorage(Storage):
    """
    Process-local storage. All access happens on the event loop, so plain
    dicts are enough. Models are copied on the way in and on the way out,
    so callers never alias stored state.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.audio_entries: List[AudioCacheEntry] = []
        self.windows: Dict[str, RateLimitWindow] = {}
        self.webhook_logs: List[WebhookLog] = []

    async def create_user(self, user: User) -> User:
        if await self.get_user_by_username(user.username):
            raise StorageError(f"username already exists: {user.username}")
        self.users[user.id] = user.model_copy()
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self.users.values():
            if user.username == username:
                return user.model_copy()
        return None

    async def create_session(self, session: Session) -> Session:
        self.sessions[session.id] = session.model_copy()
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return session.model_copy() if session else None

    async def get_session_by_cookie_token(self, cookie_token: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.cookie_token == cookie_token:
                return session.model_copy()
        return None

    async def get_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]:
        matches = [s for s in self.sessions.values() if s.fingerprint == fingerprint]
        if not matches:
            return None
        return max(matches, key=lambda s: s.last_seen).model_copy()

    async def update_session(self, session_id: str, **fields: Any) -> Session:
        _check_session_fields(fields)
        current = self.sessions.get(session_id)
        if current is None:
            raise StorageError(f"session not found: {session_id}")
        updated = current.model_copy(update={**fields, "last_seen": utcnow()})
        self.sessions[session_id] = updated
        return updated.model_copy()

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation.model_copy()
        self.messages.setdefault(conversation.id, [])
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def list_conversations(self, session_id: str) -> List[Conversation]:
        owned = [c for c in self.conversations.values() if c.session_id == session_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in owned]

    async def add_message(self, message: Message) -> Message:
        conversation = self.conversations.get(message.conversation_id)
        if conversation is None:
            raise StorageError(f"conversation not found: {message.conversation_id}")
        self.messages.setdefault(message.conversation_id, []).append(message.model_copy())
        self.conversations[conversation.id] = conversation.model_copy(update={"updated_at": utcnow()})
        return message

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return [m.model_copy() for m in self.messages.get(conversation_id, [])]

    async def add_audio_entry(self, entry: AudioCacheEntry) -> AudioCacheEntry:
        self.audio_entries.append(entry.model_copy())
        return entry

    async def get_audio_entry_by_token(self, secure_token: str) -> Optional[AudioCacheEntry]:
        for entry in self.audio_entries:
            if entry.secure_token == secure_token:
                return entry.model_copy()
        return None

    async def list_audio_entries(
        self,
        *,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AudioCacheEntry]:
        entries = [
            e.model_copy() for e in reversed(self.audio_entries)
            if (session_id is None or e.session_id == session_id)
            and (conversation_id is None or e.conversation_id == conversation_id)
        ]
        return entries[:limit]

    async def get_active_window(self, session_id: str, now: datetime) -> Optional[RateLimitWindow]:
        active = [w for w in self.windows.values() if w.session_id == session_id and w.is_active(now)]
        if not active:
            return None
        return max(active, key=lambda w: w.period_end).model_copy()

    async def create_window(self, window: RateLimitWindow) -> RateLimitWindow:
        self.windows[window.id] = window.model_copy()
        return window

    async def increment_window(self, window_id: str, resource: Resource, amount: int) -> RateLimitWindow:
        window = self.windows.get(window_id)
        if window is None:
            raise StorageError(f"rate limit window not found: {window_id}")
        column = _RESOURCE_COLUMNS[resource]
        updated = window.model_copy(update={column: getattr(window, column) + amount})
        self.windows[window_id] = updated
        return updated.model_copy()

    async def add_webhook_log(self, log: WebhookLog) -> WebhookLog:
        self.webhook_logs.append(log.model_copy())
        return log

    async def list_webhook_logs(self, limit: int = 50) -> List[WebhookLog]:
        return [log.model_copy() for log in reversed(self.webhook_logs)][:limit]


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

def _jsonb(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStorage(Storage):
    """
    Postgres-backed storage. The psycopg2 helpers are blocking, so every call
    is pushed to a worker thread with asyncio.to_thread.
    """

    async def _query(self, query: str, params: Optional[tuple] = None) -> List[dict]:
        from db_postgres import execute_query
        return await asyncio.to_thread(execute_query, query, params) or []

    async def _one(self, query: str, params: Optional[tuple] = None) -> Optional[dict]:
        rows = await self._query(query, params)
        return rows[0] if rows else None

    async def _returning(self, query: str, params: Optional[tuple] = None) -> Optional[dict]:
        from db_postgres import execute_returning
        return await asyncio.to_thread(execute_returning, query, params)

    # --- users ---
    async def create_user(self, user: User) -> User:
        await self._returning(
            """
            INSERT INTO users (id, username, password_hash, is_admin, created_at)
            VALUES (%s, %s, %s, %s, %s) RETURNING id
            """,
            (user.id, user.username, user.password_hash, user.is_admin, user.created_at),
        )
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._one("SELECT * FROM users WHERE id = %s", (user_id,))
        return User(**row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._one("SELECT * FROM users WHERE username = %s", (username,))
        return User(**row) if row else None

    # --- sessions ---
    async def create_session(self, session: Session) -> Session:
        await self._returning(
            """
            INSERT INTO sessions (id, fingerprint, wallet_address, token_balance, tier, user_id,
                                  memory_bank, cookie_token, cookie_expiry, last_seen, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                session.id, session.fingerprint, session.wallet_address, session.token_balance,
                session.tier.value, session.user_id, session.memory_bank, session.cookie_token,
                session.cookie_expiry, session.last_seen, session.created_at,
            ),
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._one("SELECT * FROM sessions WHERE id = %s", (session_id,))
        return Session(**row) if row else None

    async def get_session_by_cookie_token(self, cookie_token: str) -> Optional[Session]:
        row = await self._one("SELECT * FROM sessions WHERE cookie_token = %s", (cookie_token,))
        return Session(**row) if row else None

    async def get_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]:
        row = await self._one(
            "SELECT * FROM sessions WHERE fingerprint = %s ORDER BY last_seen DESC LIMIT 1",
            (fingerprint,),
        )
        return Session(**row) if row else None

    async def update_session(self, session_id: str, **fields: Any) -> Session:
        _check_session_fields(fields)
        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = %s")
            params.append(value.value if hasattr(value, "value") else value)
        assignments.append("last_seen = %s")
        params.append(utcnow())
        params.append(session_id)
        row = await self._returning(
            f"UPDATE sessions SET {', '.join(assignments)} WHERE id = %s RETURNING *",
            tuple(params),
        )
        if row is None:
            raise StorageError(f"session not found: {session_id}")
        return Session(**row)

    # --- conversations / messages ---
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        await self._returning(
            """
            INSERT INTO conversations (id, session_id, title, summary, last_summary_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                conversation.id, conversation.session_id, conversation.title, conversation.summary,
                conversation.last_summary_at, conversation.created_at, conversation.updated_at,
            ),
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await self._one("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
        return Conversation(**row) if row else None

    async def list_conversations(self, session_id: str) -> List[Conversation]:
        rows = await self._query(
            "SELECT * FROM conversations WHERE session_id = %s ORDER BY updated_at DESC",
            (session_id,),
        )
        return [Conversation(**r) for r in rows]

    async def add_message(self, message: Message) -> Message:
        await self._returning(
            """
            INSERT INTO messages (id, conversation_id, role, content, is_image, image_url,
                                  audio_url, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                message.id, message.conversation_id, message.role, message.content, message.is_image,
                message.image_url, message.audio_url, _jsonb(message.metadata), message.created_at,
            ),
        )
        from db_postgres import execute_update
        await asyncio.to_thread(
            execute_update,
            "UPDATE conversations SET updated_at = %s WHERE id = %s",
            (utcnow(), message.conversation_id),
        )
        return message

    async def list_messages(self, conversation_id: str) -> List[Message]:
        rows = await self._query(
            "SELECT * FROM messages WHERE conversation_id = %s ORDER BY created_at ASC, id ASC",
            (conversation_id,),
        )
        return [Message(**r) for r in rows]

    # --- audio cache ---
    async def add_audio_entry(self, entry: AudioCacheEntry) -> AudioCacheEntry:
        await self._returning(
            """
            INSERT INTO audio_cache (id, session_id, conversation_id, message_id, audio_url,
                                     secure_token, text, duration, voice_settings, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                entry.id, entry.session_id, entry.conversation_id, entry.message_id, entry.audio_url,
                entry.secure_token, entry.text, entry.duration, _jsonb(entry.voice_settings),
                entry.created_at,
            ),
        )
        return entry

    async def get_audio_entry_by_token(self, secure_token: str) -> Optional[AudioCacheEntry]:
        row = await self._one("SELECT * FROM audio_cache WHERE secure_token = %s", (secure_token,))
        return AudioCacheEntry(**row) if row else None

    async def list_audio_entries(
        self,
        *,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[AudioCacheEntry]:
        clauses = []
        params: List[Any] = []
        if session_id is not None:
            clauses.append("session_id = %s")
            params.append(session_id)
        if conversation_id is not None:
            clauses.append("conversation_id = %s")
            params.append(conversation_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self._query(
            f"SELECT * FROM audio_cache {where} ORDER BY created_at DESC LIMIT %s",
            tuple(params),
        )
        return [AudioCacheEntry(**r) for r in rows]

    # --- rate-limit windows ---
    async def get_active_window(self, session_id: str, now: datetime) -> Optional[RateLimitWindow]:
        row = await self._one(
            """
            SELECT * FROM rate_limits
            WHERE session_id = %s AND period_end > %s
            ORDER BY period_end DESC LIMIT 1
            """,
            (session_id, now),
        )
        return RateLimitWindow(**row) if row else None

    async def create_window(self, window: RateLimitWindow) -> RateLimitWindow:
        await self._returning(
            """
            INSERT INTO rate_limits (id, session_id, period_start, period_end, messages_used, voice_minutes_used)
            VALUES (%s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                window.id, window.session_id, window.period_start, window.period_end,
                window.messages_used, window.voice_minutes_used,
            ),
        )
        return window

    async def increment_window(self, window_id: str, resource: Resource, amount: int) -> RateLimitWindow:
        column = _RESOURCE_COLUMNS[resource]
        row = await self._returning(
            f"UPDATE rate_limits SET {column} = {column} + %s WHERE id = %s RETURNING *",
            (amount, window_id),
        )
        if row is None:
            raise StorageError(f"rate limit window not found: {window_id}")
        return RateLimitWindow(**row)

    # --- webhook audit ---
    async def add_webhook_log(self, log: WebhookLog) -> WebhookLog:
        await self._returning(
            """
            INSERT INTO webhook_logs (id, session_id, conversation_id, request_data, response_data, status, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING id
            """,
            (
                log.id, log.session_id, log.conversation_id, _jsonb(log.request_data),
                _jsonb(log.response_data), log.status, log.created_at,
            ),
        )
        return log

    async def list_webhook_logs(self, limit: int = 50) -> List[WebhookLog]:
        rows = await self._query(
            "SELECT * FROM webhook_logs ORDER BY created_at DESC LIMIT %s",
            (limit,),
        )
        return [WebhookLog(**r) for r in rows]


def create_storage(backend: Optional[str] = None) -> Storage:
    backend = (backend or STORAGE_BACKEND).lower()
    if backend == "memory":
        logger.info("[storage] Using in-memory storage")
        return InMemoryStorage()
    if backend == "postgres":
        logger.info("[storage] Using Postgres storage")
        return PostgresStorage()
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r} (expected 'postgres' or 'memory')")
