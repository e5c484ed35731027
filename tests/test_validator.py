from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from gatekey.modules.api.models import AuthOutcome, utcnow
from gatekey.modules.auth.dos_guard import DoSGuard
from gatekey.modules.auth.legacy import LegacyDataAdapter
from gatekey.modules.auth.validator import Validator

SECRET = "sk-" + "1f" * 32


async def put(store, record, index_hash=None):
    await store.set(record.id, record, new_index_hash=index_hash)


@pytest.mark.asyncio
@pytest.mark.parametrize("secret", ["", "not-the-right-prefix", "SK-abc", None, 123])
async def test_format_invalid_never_touches_store(validator, fake_redis, secret):
    result = await validator.validate(secret)

    assert result.outcome is AuthOutcome.FORMAT_INVALID
    assert result.view is None
    assert fake_redis.calls == []


@pytest.mark.asyncio
async def test_current_hash_found_through_index(validator, store, hash_engine, make_record):
    stored = hash_engine.hash(SECRET)
    await put(store, make_record("key-1", stored), stored)

    result = await validator.validate(SECRET)

    assert result.ok
    assert result.view.id == "key-1"
    assert not hasattr(result.view, "secret_hash")


@pytest.mark.asyncio
@pytest.mark.parametrize("tagged", [False, True])
async def test_legacy_hash_found_through_index_and_scheduled(
    store, hash_engine, dos_guard, legacy_adapter, make_record, tagged
):
    stored = hash_engine.hash_legacy(SECRET)
    if tagged:
        stored = f"v1:{stored}"
    await put(store, make_record("key-1", stored), stored)
    migration = MagicMock()
    validator = Validator(store, hash_engine, dos_guard, legacy_adapter, migration=migration)

    result = await validator.validate(SECRET)

    assert result.ok
    migration.submit.assert_called_once_with("key-1", SECRET, stored)


@pytest.mark.asyncio
async def test_unindexed_record_found_by_full_scan(validator, store, hash_engine, make_record):
    await put(store, make_record("key-1", hash_engine.hash_legacy(SECRET)))

    result = await validator.validate(SECRET, source="10.0.0.1")

    assert result.ok
    assert result.view.id == "key-1"


@pytest.mark.asyncio
async def test_unknown_key_is_not_found_and_counts_failure(validator, dos_guard, fake_redis):
    result = await validator.validate(SECRET, source="10.0.0.1")

    assert result.outcome is AuthOutcome.NOT_FOUND
    assert dos_guard.snapshot()["sources"] == {"10.0.0.1": 1}
    assert fake_redis.lists["security:audit"]
    # Attempted secrets never reach the audit trail
    assert SECRET not in fake_redis.lists["security:audit"][0]


@pytest.mark.asyncio
async def test_full_scan_is_capped(store, hash_engine, dos_guard, legacy_adapter, make_record):
    for i in range(20):
        await put(store, make_record(f"key-{i:02d}", hash_engine.hash_legacy(f"sk-other-{i}")))
    # Sorted last, beyond the cap
    await put(store, make_record("key-zz", hash_engine.hash_legacy(SECRET)))
    validator = Validator(store, hash_engine, dos_guard, legacy_adapter, full_scan_max_keys=20)

    result = await validator.validate(SECRET)

    assert result.outcome is AuthOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_key_against_1000_legacy_records(
    store, hash_engine, dos_guard, legacy_adapter, make_record
):
    for i in range(1000):
        await put(store, make_record(f"key-{i:04d}", hash_engine.hash_legacy(f"sk-legacy-{i}")))
    validator = Validator(store, hash_engine, dos_guard, legacy_adapter)

    result = await validator.validate(SECRET)

    assert result.outcome is AuthOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_source_rate_limited_after_repeated_misses(validator, store):
    for _ in range(5):
        assert (await validator.validate(SECRET, "1.1.1.1")).outcome is AuthOutcome.NOT_FOUND

    result = await validator.validate(SECRET, "1.1.1.1")
    assert result.outcome is AuthOutcome.SERVICE_UNAVAILABLE

    other = await validator.validate(SECRET, "2.2.2.2")
    assert other.outcome is AuthOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_circuit_open_blocks_full_scan_then_recovers(validator, fake_redis, clock):
    for i in range(10):
        await validator.validate(SECRET, f"10.0.0.{i}")

    fake_redis.calls.clear()
    result = await validator.validate(SECRET, "10.9.9.9")
    assert result.outcome is AuthOutcome.SERVICE_UNAVAILABLE
    assert "smembers" not in fake_redis.calls

    clock.advance(61)
    result = await validator.validate(SECRET, "10.9.9.9")
    assert result.outcome is AuthOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_index_hits_bypass_open_circuit(
    validator, store, hash_engine, dos_guard, make_record
):
    stored = hash_engine.hash(SECRET)
    await put(store, make_record("key-1", stored), stored)
    for _ in range(10):
        dos_guard.record_failure()

    assert (await validator.validate(SECRET)).ok


@pytest.mark.asyncio
async def test_full_scan_error_counts_failure(validator, fake_redis, dos_guard):
    fake_redis.smembers = AsyncMock(side_effect=ConnectionError("redis down"))

    result = await validator.validate(SECRET, "1.1.1.1")

    assert result.outcome is AuthOutcome.NOT_FOUND
    assert dos_guard.snapshot()["failure_count"] == 1


@pytest.mark.asyncio
async def test_store_error_is_internal_error(validator, fake_redis):
    fake_redis.hget = AsyncMock(side_effect=ConnectionError("redis down"))

    result = await validator.validate(SECRET)

    assert result.outcome is AuthOutcome.INTERNAL_ERROR
    assert result.view is None


@pytest.mark.asyncio
async def test_disabled_and_expired(validator, store, hash_engine, make_record):
    disabled_secret, expired_secret = "sk-disabled", "sk-expired"
    for key_id, secret, fields in [
        ("off", disabled_secret, {"is_active": False}),
        ("old", expired_secret, {"expires_at": utcnow() - timedelta(minutes=1)}),
    ]:
        stored = hash_engine.hash(secret)
        await put(store, make_record(key_id, stored, **fields), stored)

    assert (await validator.validate(disabled_secret)).outcome is AuthOutcome.DISABLED
    assert (await validator.validate(expired_secret)).outcome is AuthOutcome.EXPIRED


@pytest.mark.asyncio
async def test_suspicious_legacy_owner_fails_closed(validator, store, hash_engine, make_record):
    stored = hash_engine.hash(SECRET)
    await put(store, make_record("key-1", stored, user_id="admin"), stored)

    result = await validator.validate(SECRET)

    assert result.outcome is AuthOutcome.AUTHORIZATION_FAILED


@pytest.mark.asyncio
async def test_inactive_legacy_user_rejected(store, hash_engine, make_record, clock):
    stored = hash_engine.hash(SECRET)
    await put(store, make_record("key-1", stored, user_id="u-1", owner="u-1"), stored)
    directory = AsyncMock()
    directory.is_user_active.return_value = False
    validator = Validator(
        store, hash_engine, DoSGuard(clock=clock), LegacyDataAdapter(user_directory=directory)
    )

    result = await validator.validate(SECRET)

    assert result.outcome is AuthOutcome.DISABLED
    directory.is_user_active.assert_awaited_once_with("u-1")


@pytest.mark.asyncio
async def test_normalized_ownership_written_directly_without_coordinator(
    store, hash_engine, dos_guard, legacy_adapter, make_record
):
    stored = hash_engine.hash(SECRET)
    await put(store, make_record("key-1", stored, user_username="alice"), stored)
    validator = Validator(store, hash_engine, dos_guard, legacy_adapter)

    result = await validator.validate(SECRET)

    assert result.ok
    assert result.view.owner == "alice"
    assert (await store.get("key-1")).owner == "alice"
