from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import redis.asyncio as aioredis

from campusauth.logging import get_logger
from campusauth.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class RedisSessionStore:
    """Session records kept in Redis with per-token and per-owner indexes.

    Keys:
      ``auth:session:{id}``                   hash with the record fields
      ``auth:access:{token}``                 session id
      ``auth:refresh:{token}``                session id
      ``auth:user_sessions:{user}``           set of session ids
      ``auth:device_sessions:{user}:{device}`` set of session ids

    Every key expires with the record's refresh expiry, so Redis does the
    physical cleanup that :meth:`purge_expired` does for the memory store.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Any] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    @staticmethod
    def _device_key(user_id: str, device_id: str) -> str:
        return f"auth:device_sessions:{user_id}:{device_id}"

    @staticmethod
    def _serialize(record: SessionRecord) -> dict[str, str]:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "device_id": record.device_id or "",
            "expires_at": record.expires_at.isoformat(),
            "refresh_expires_at": record.refresh_expires_at.isoformat(),
            "created_at": record.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize(raw: dict[str, str]) -> SessionRecord:
        return SessionRecord(
            id=raw["id"],
            user_id=raw["user_id"],
            access_token=raw["access_token"],
            refresh_token=raw["refresh_token"],
            device_id=raw.get("device_id") or None,
            expires_at=datetime.fromisoformat(raw["expires_at"]),
            refresh_expires_at=datetime.fromisoformat(raw["refresh_expires_at"]),
            created_at=datetime.fromisoformat(raw["created_at"]),
        )

    async def verify_connection(self) -> None:
        await self.client.ping()

    async def _load(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.client.hgetall(self._session_key(session_id))
        if not raw:
            return None
        try:
            return self._deserialize(raw)
        except (KeyError, ValueError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def _drop(self, session_id: str) -> Optional[SessionRecord]:
        record = await self._load(session_id)
        if record is None:
            await self.client.delete(self._session_key(session_id))
            return None
        pipe = self.client.pipeline()
        pipe.delete(self._session_key(session_id))
        pipe.delete(f"auth:access:{record.access_token}")
        pipe.delete(f"auth:refresh:{record.refresh_token}")
        pipe.srem(self._user_key(record.user_id), session_id)
        if record.device_id:
            pipe.srem(self._device_key(record.user_id, record.device_id), session_id)
        results = await pipe.execute()
        # Another caller may have dropped the hash between load and delete
        return record if results[0] else None

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        ttl = self._ttl_seconds(record.refresh_expires_at)
        pipe = self.client.pipeline()
        pipe.hset(self._session_key(record.id), mapping=self._serialize(record))
        pipe.expire(self._session_key(record.id), ttl)
        pipe.set(f"auth:access:{record.access_token}", record.id, ex=ttl)
        pipe.set(f"auth:refresh:{record.refresh_token}", record.id, ex=ttl)
        pipe.sadd(self._user_key(record.user_id), record.id)
        pipe.expire(self._user_key(record.user_id), ttl)
        if record.device_id:
            device_key = self._device_key(record.user_id, record.device_id)
            pipe.sadd(device_key, record.id)
            pipe.expire(device_key, ttl)
        await pipe.execute()
        return record

    async def find_by_access_token(self, access_token: str) -> Optional[SessionRecord]:
        session_id = await self.client.get(f"auth:access:{access_token}")
        if not session_id:
            return None
        return await self._load(session_id)

    async def delete_by_access_token(self, access_token: str) -> bool:
        session_id = await self.client.getdel(f"auth:access:{access_token}")
        if not session_id:
            return False
        return await self._drop(session_id) is not None

    async def take_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        # GETDEL hands the session id to exactly one caller
        session_id = await self.client.getdel(f"auth:refresh:{refresh_token}")
        if not session_id:
            return None
        return await self._drop(session_id)

    async def _drop_all(self, index_key: str) -> int:
        session_ids = await self.client.smembers(index_key)
        removed = 0
        for session_id in session_ids:
            if await self._drop(session_id) is not None:
                removed += 1
        await self.client.delete(index_key)
        return removed

    async def delete_for_user(self, user_id: str) -> int:
        return await self._drop_all(self._user_key(user_id))

    async def delete_for_device(self, user_id: str, device_id: str) -> int:
        return await self._drop_all(self._device_key(user_id, device_id))

    async def list_for_user(self, user_id: str) -> List[SessionRecord]:
        user_key = self._user_key(user_id)
        records: List[SessionRecord] = []
        for session_id in await self.client.smembers(user_key):
            record = await self._load(session_id)
            if record is None:
                await self.client.srem(user_key, session_id)
                continue
            records.append(record)
        return sorted(records, key=lambda rec: rec.created_at)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        removed = 0
        async for user_key in self.client.scan_iter(match="auth:user_sessions:*"):
            for session_id in await self.client.smembers(user_key):
                record = await self._load(session_id)
                if record is None:
                    await self.client.srem(user_key, session_id)
                elif not record.is_refreshable(cutoff):
                    if await self._drop(session_id) is not None:
                        removed += 1
        if removed:
            logger.info("sessions_purged", count=removed)
        return removed

    async def close(self) -> None:
        await self.client.aclose()
