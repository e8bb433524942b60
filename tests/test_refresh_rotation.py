"""Refresh-token lifecycle: issue, rotate, revoke, purge."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from tenantauth.service.errors import InvalidRefreshToken
from tenantauth.service.runtime import get_runtime


def _user(runtime, email="rotate@example.com"):
    return runtime.store.create_user(email, runtime.hasher.hash("password123"))


def _records(runtime, user_id):
    return [t for t in runtime.store.refresh_tokens.values() if t.user_id == user_id]


@pytest.mark.asyncio
async def test_only_hash_is_persisted():
    runtime = get_runtime()
    user = _user(runtime)

    raw = await runtime.sessions.create_refresh_token(user.id, "10.0.0.1", "pytest")

    (record,) = _records(runtime, user.id)
    assert record.token_hash != raw
    assert raw not in record.token_hash
    assert runtime.hasher.verify(record.token_hash, raw)
    assert record.ip_addr == "10.0.0.1"
    assert record.user_agent == "pytest"
    assert not record.revoked


@pytest.mark.asyncio
async def test_rotation_links_old_record_to_new():
    runtime = get_runtime()
    user = _user(runtime)
    raw = await runtime.sessions.create_refresh_token(user.id)
    (old,) = _records(runtime, user.id)

    new_raw = await runtime.sessions.rotate_refresh_token(raw)

    assert new_raw != raw
    stored_old = runtime.store.get_refresh_token(old.id)
    assert stored_old.revoked
    replacement = runtime.store.get_refresh_token(stored_old.replaced_by_id)
    assert replacement is not None
    assert not replacement.revoked
    assert runtime.hasher.verify(replacement.token_hash, new_raw)


@pytest.mark.asyncio
async def test_rotated_token_cannot_be_replayed():
    runtime = get_runtime()
    user = _user(runtime)
    raw = await runtime.sessions.create_refresh_token(user.id)

    await runtime.sessions.rotate_refresh_token(raw)
    with pytest.raises(InvalidRefreshToken):
        await runtime.sessions.rotate_refresh_token(raw)


@pytest.mark.asyncio
async def test_revoke_is_idempotent():
    runtime = get_runtime()
    user = _user(runtime)
    raw = await runtime.sessions.create_refresh_token(user.id)

    assert await runtime.sessions.revoke_refresh_token(raw) is True
    assert await runtime.sessions.revoke_refresh_token(raw) is False
    with pytest.raises(InvalidRefreshToken):
        await runtime.sessions.rotate_refresh_token(raw)


@pytest.mark.asyncio
async def test_revoke_leaves_other_sessions_alive():
    runtime = get_runtime()
    user = _user(runtime)
    first = await runtime.sessions.create_refresh_token(user.id)
    second = await runtime.sessions.create_refresh_token(user.id)

    assert await runtime.sessions.revoke_refresh_token(first)
    assert await runtime.sessions.rotate_refresh_token(second)


@pytest.mark.asyncio
async def test_access_token_is_not_a_refresh_token():
    runtime = get_runtime()
    user = _user(runtime)
    access = runtime.auth.sign_access_token(
        await runtime.auth._principal_for(user)
    )
    with pytest.raises(InvalidRefreshToken):
        await runtime.sessions.rotate_refresh_token(access)


@pytest.mark.asyncio
async def test_expired_record_rejected_and_purged():
    runtime = get_runtime()
    user = _user(runtime)
    raw = await runtime.sessions.create_refresh_token(user.id)
    (record,) = _records(runtime, user.id)
    record.expires_at = datetime.utcnow() - timedelta(seconds=1)

    with pytest.raises(InvalidRefreshToken):
        await runtime.sessions.rotate_refresh_token(raw)

    assert await runtime.sessions.purge_expired() == 1
    assert runtime.store.get_refresh_token(record.id) is None
    assert await runtime.sessions.purge_expired() == 0


def _live(runtime, user_id):
    return runtime.store.list_live_refresh_tokens(user_id, datetime.utcnow())


@pytest.mark.asyncio
async def test_rotation_losing_the_race_is_rejected(monkeypatch):
    runtime = get_runtime()
    user = _user(runtime)
    raw = await runtime.sessions.create_refresh_token(user.id)
    # What a concurrent rotation listed before either one swapped the record
    seen_before_rotation = _live(runtime, user.id)

    winner = await runtime.sessions.rotate_refresh_token(raw)
    monkeypatch.setattr(
        runtime.store, "list_live_refresh_tokens", lambda user_id, now: seen_before_rotation
    )

    with pytest.raises(InvalidRefreshToken):
        await runtime.sessions.rotate_refresh_token(raw)

    monkeypatch.undo()
    (live,) = _live(runtime, user.id)
    assert runtime.hasher.verify(live.token_hash, winner)
    assert len(_records(runtime, user.id)) == 2


def test_parallel_rotations_of_one_token_yield_one_winner():
    runtime = get_runtime()
    user = _user(runtime)
    raw = asyncio.run(runtime.sessions.create_refresh_token(user.id))

    def rotate():
        try:
            return asyncio.run(runtime.sessions.rotate_refresh_token(raw))
        except InvalidRefreshToken:
            return None

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: rotate(), range(4)))

    winners = [result for result in results if result is not None]
    assert len(winners) == 1
    (live,) = _live(runtime, user.id)
    assert runtime.hasher.verify(live.token_hash, winners[0])
