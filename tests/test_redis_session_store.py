"""Unit tests for RedisSessionStore using fakeredis.

Covers token lookups, compare-and-delete on refresh, and user/device bulk
revocation, all against an in-memory FakeAsyncRedis.
"""

from datetime import timedelta

import fakeredis
import pytest

from campusauth.storage.models import SessionRecord, utcnow
from campusauth.storage.redis_sessions import RedisSessionStore


def _store():
    # Built inside each test so the client binds to that test's event loop
    return RedisSessionStore(client=fakeredis.FakeAsyncRedis(decode_responses=True))


def _record(user_id, tag, device_id=None, *, now=None):
    now = now or utcnow()
    return SessionRecord.new(
        user_id,
        f"access-{tag}",
        f"refresh-{tag}",
        expires_at=now + timedelta(minutes=15),
        refresh_expires_at=now + timedelta(days=1),
        device_id=device_id,
        created_at=now,
    )


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisSessionStore()


async def test_create_and_find_round_trip():
    store = _store()
    record = await store.create_session(_record("u-1", "a", "phoneA"))

    found = await store.find_by_access_token("access-a")

    assert found == record
    assert found.device_id == "phoneA"
    assert await store.find_by_access_token("access-missing") is None


async def test_keys_expire_with_refresh_expiry():
    store = _store()
    record = await store.create_session(_record("u-1", "a"))

    ttl = await store.client.ttl(f"auth:session:{record.id}")

    assert timedelta(hours=23) < timedelta(seconds=ttl) <= timedelta(days=1)


async def test_take_by_refresh_token_once():
    store = _store()
    record = await store.create_session(_record("u-1", "a"))

    assert await store.take_by_refresh_token("refresh-a") == record
    assert await store.take_by_refresh_token("refresh-a") is None
    assert await store.find_by_access_token("access-a") is None
    assert await store.list_for_user("u-1") == []


async def test_delete_by_access_token():
    store = _store()
    await store.create_session(_record("u-1", "a"))

    assert await store.delete_by_access_token("access-a") is True
    assert await store.delete_by_access_token("access-a") is False
    assert await store.take_by_refresh_token("refresh-a") is None


async def test_device_revocation_is_scoped():
    store = _store()
    await store.create_session(_record("u-1", "a", "phoneA"))
    await store.create_session(_record("u-1", "b", "laptop"))
    await store.create_session(_record("u-2", "c", "phoneA"))

    assert await store.delete_for_device("u-1", "phoneA") == 1

    assert [r.access_token for r in await store.list_for_user("u-1")] == ["access-b"]
    assert await store.find_by_access_token("access-c") is not None


async def test_user_revocation():
    store = _store()
    await store.create_session(_record("u-1", "a"))
    await store.create_session(_record("u-1", "b", "phoneA"))

    assert await store.delete_for_user("u-1") == 2
    assert await store.find_by_access_token("access-a") is None
    assert await store.find_by_access_token("access-b") is None
    assert await store.delete_for_user("u-1") == 0


async def test_purge_expired_drops_stale_records():
    store = _store()
    await store.create_session(_record("u-1", "old"))
    await store.create_session(_record("u-1", "new", now=utcnow() + timedelta(days=1)))

    removed = await store.purge_expired(utcnow() + timedelta(days=1, hours=1))

    assert removed == 1
    assert [r.access_token for r in await store.list_for_user("u-1")] == ["access-new"]
