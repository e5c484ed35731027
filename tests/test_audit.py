from unittest.mock import AsyncMock

import pytest

from gatekey.modules.audit import SecurityAudit


@pytest.mark.asyncio
async def test_events_persisted_newest_first(audit):
    await audit.log_authentication("API_KEY_AUTH", "SUCCESS", {"key_id": "a"})
    await audit.log_security_violation("HASH_COLLISION", "duplicate hash", "LOGGED")

    events = await audit.recent_events()

    assert [e["category"] for e in events] == ["SECURITY_VIOLATION", "AUTHENTICATION"]
    assert events[0]["severity"] == "HIGH"
    assert events[1]["severity"] == "INFO"
    assert events[1]["details"] == {"action": "API_KEY_AUTH", "key_id": "a"}


@pytest.mark.asyncio
async def test_audit_log_is_capped(audit, fake_redis):
    audit.MAX_EVENTS = 3
    for i in range(5):
        await audit.log_event("AUTHENTICATION", "FAILURE", {"n": i})

    assert len(fake_redis.lists[SecurityAudit.AUDIT_KEY]) == 3


@pytest.mark.asyncio
async def test_backend_failure_never_raises():
    redis = AsyncMock()
    redis.lpush.side_effect = ConnectionError("redis down")
    audit = SecurityAudit(redis)

    assert await audit.log_event("AUTHENTICATION", "ERROR") is not None


@pytest.mark.asyncio
async def test_works_without_redis():
    audit = SecurityAudit()

    assert await audit.log_event("DATA_MIGRATION", "SUCCESS") is not None
    assert await audit.recent_events() == []
