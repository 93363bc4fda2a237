from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Protocol

import redis

from ..config import Settings
from .batch import Batch, MergePolicy

logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    WEEKLY = "weekly"
    PURCHASE = "purchase"
    BASE_EDIT = "base_edit"

    @property
    def merge_policy(self) -> MergePolicy:
        if self is SessionMode.BASE_EDIT:
            return MergePolicy.REPLACE
        return MergePolicy.ADDITIVE


@dataclass
class ChatSession:
    chat_id: int
    mode: SessionMode
    batch: Batch = field(default_factory=Batch)
    single_shot: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {
                "chat_id": self.chat_id,
                "mode": self.mode.value,
                "batch": self.batch.to_dict(),
                "single_shot": self.single_shot,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "ChatSession":
        data = json.loads(raw)
        return cls(
            chat_id=int(data["chat_id"]),
            mode=SessionMode(data["mode"]),
            batch=Batch.from_dict(data.get("batch")),
            single_shot=bool(data.get("single_shot")),
        )


class SessionStore(Protocol):
    """Where per-chat sessions live between messages. No session means idle."""

    def get(self, chat_id: int) -> Optional[ChatSession]: ...

    def save(self, session: ChatSession) -> None: ...

    def delete(self, chat_id: int) -> None: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[int, str] = {}

    def get(self, chat_id: int) -> Optional[ChatSession]:
        raw = self._sessions.get(chat_id)
        return ChatSession.from_json(raw) if raw else None

    def save(self, session: ChatSession) -> None:
        # Stored serialized so callers never share a mutable batch with the store.
        self._sessions[session.chat_id] = session.to_json()

    def delete(self, chat_id: int) -> None:
        self._sessions.pop(chat_id, None)


class RedisSessionStore:
    def __init__(self, client: redis.Redis, *, ttl_seconds: int | None = None, prefix: str = "chat-session") -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._prefix = prefix

    def _key(self, chat_id: int) -> str:
        return f"{self._prefix}:{chat_id}"

    def get(self, chat_id: int) -> Optional[ChatSession]:
        raw = self._client.get(self._key(chat_id))
        if not raw:
            return None
        try:
            return ChatSession.from_json(raw)
        except (ValueError, KeyError):
            logger.warning("Discarding unreadable session for chat %s", chat_id)
            self._client.delete(self._key(chat_id))
            return None

    def save(self, session: ChatSession) -> None:
        if self._ttl:
            self._client.setex(self._key(session.chat_id), self._ttl, session.to_json())
        else:
            self._client.set(self._key(session.chat_id), session.to_json())

    def delete(self, chat_id: int) -> None:
        self._client.delete(self._key(chat_id))


def build_session_store(settings: Settings) -> SessionStore:
    """Redis when REDIS_URL is set, otherwise a process-local dict."""
    if not settings.redis_url:
        logger.warning("REDIS_URL not set; open batches are kept in memory and lost on restart")
        return InMemorySessionStore()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    return RedisSessionStore(client, ttl_seconds=settings.session_ttl_seconds)
