import logging
from typing import Any, Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import SessionState
from ..settings import get_settings
from .redis import RedisStore, get_redis_store

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


def session_to_dict(state: SessionState) -> Dict[str, Any]:
    return {
        "session_id": state.session_id,
        "messages": state.messages,
        "last_summary": state.last_summary,
        "analyses_count": state.analyses_count,
    }


def session_from_dict(data: Dict[str, Any]) -> SessionState:
    messages = [
        {"role": str(m["role"]), "content": str(m["content"])}
        for m in data.get("messages", [])
        if isinstance(m, dict) and "role" in m and "content" in m
    ]
    return SessionState(
        session_id=str(data["session_id"]),
        messages=messages,
        last_summary=str(data.get("last_summary", "")),
        analyses_count=int(data.get("analyses_count", 0)),
    )


class ContextService:
    """Persists session conversation history in Redis with a TTL."""

    def __init__(self, store: RedisStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl = ttl_seconds

    @staticmethod
    def _name(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def load(self, session_id: str) -> SessionState | None:
        """Stored session, or None if missing, expired or unreadable."""
        data = await self._store.get_json(self._name(session_id))
        if data is None:
            return None
        try:
            return session_from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def save(self, state: SessionState) -> bool:
        return await self._store.set_json(self._name(state.session_id), session_to_dict(state), ttl_seconds=self._ttl)

    async def delete(self, session_id: str) -> bool:
        return await self._store.delete(self._name(session_id))

    async def close(self) -> None:
        await self._store.close()


async def connect_context_service() -> ContextService | None:
    """Connect a ContextService when Redis is configured and reachable; otherwise None."""
    store = get_redis_store()
    if store is None:
        return None
    try:
        await store.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Session persistence unavailable (Redis): %s", e)
        return None
    return ContextService(store, ttl_seconds=get_settings().context_ttl_seconds)
