# backend/tests/unit/test_talk_lock.py
import pytest
from unittest.mock import AsyncMock, MagicMock
from pydantic import ValidationError
from redis.exceptions import LockError

from talkflow.config.settings import Settings
from talkflow.services.audit_service import purge_expired
from talkflow.utils.dependencies import build_container
from talkflow.utils.talk_lock import LocalTalkLock, RedisTalkLock, TalkLockTimeout
from talkflow.workers.scheduler import build_scheduler


def redis_with_lock(acquired=True, release_error=None):
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock(side_effect=release_error)
    client = MagicMock()
    client.lock.return_value = lock
    return client, lock


@pytest.mark.asyncio
async def test_redis_lock_is_keyed_by_talk_and_released():
    client, lock = redis_with_lock()
    talk_lock = RedisTalkLock(client, timeout=60, blocking_timeout=5)

    async with talk_lock.hold("t-1"):
        lock.release.assert_not_awaited()

    client.lock.assert_called_once_with("talkflow:talk-lock:t-1", timeout=60, blocking_timeout=5)
    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_timeout():
    client, lock = redis_with_lock(acquired=False)

    with pytest.raises(TalkLockTimeout):
        async with RedisTalkLock(client).hold("t-1"):
            pytest.fail("body must not run without the lock")

    lock.release.assert_not_awaited()


@pytest.mark.asyncio
async def test_expired_redis_lock_does_not_fail_the_command():
    client, _ = redis_with_lock(release_error=LockError("expired"))

    async with RedisTalkLock(client).hold("t-1"):
        pass


@pytest.mark.asyncio
async def test_local_lock_forgets_idle_talks():
    talk_lock = LocalTalkLock()

    async with talk_lock.hold("t-1"):
        assert "t-1" in talk_lock._locks

    assert talk_lock._locks == {}


def test_scheduler_registers_nightly_audit_purge():
    database = MagicMock()

    job = build_scheduler(database).get_job("audit_retention_job")

    assert job.func is purge_expired
    assert job.args == (database,)
    assert str(job.trigger.fields[job.trigger.FIELD_NAMES.index("hour")]) == "3"


def test_redis_container_builds_talk_lock_from_settings(mocker):
    mocker.patch("talkflow.utils.dependencies.DatabaseService")
    config = Settings(_env_file=None, storage_backend="mongo", talk_lock_timeout_seconds=90, talk_lock_wait_seconds=7.5)

    talk_lock = build_container(config, ai_service=MagicMock()).bus.talk_lock

    assert isinstance(talk_lock, RedisTalkLock)
    assert talk_lock.timeout == 90
    assert talk_lock.blocking_timeout == 7.5


def test_lock_expiry_shorter_than_claim_idle_is_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, talk_lock_timeout_seconds=30, command_claim_idle_ms=60000)
