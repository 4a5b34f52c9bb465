"""
Entity lock lease tests.
"""

import pytest
from datetime import timedelta

from backend.app.core.exceptions import LockHeldError, ValidationFailedError
from backend.app.services.activity import get_activity_trail, ActivityAction
from backend.app.services.entity_locking import (
    acquire_lock,
    release_lock,
    release_entity_lock,
    force_release_lock,
    check_lock,
    list_active_locks,
    cleanup_expired_locks,
    ensure_writable,
)


async def test_acquire_conflict_and_expiry_takeover(db_session, frozen_clock):
    """Scenario D: U1 holds the lease, U2 is refused, then takes over after expiry."""
    lock, created, refreshed = await acquire_lock(db_session, "invoice", 42, "U1")
    await db_session.commit()

    assert created is True
    assert refreshed is False
    assert lock.entity_id == "42"

    with pytest.raises(LockHeldError) as exc_info:
        await acquire_lock(db_session, "invoice", 42, "U2")
    assert exc_info.value.holder == "U1"
    assert exc_info.value.details["expires_at"] == lock.expires_at.isoformat()

    frozen_clock.advance(minutes=6)

    taken, created, refreshed = await acquire_lock(db_session, "invoice", 42, "U2")
    await db_session.commit()

    assert taken.id == lock.id
    assert taken.locked_by == "U2"
    assert created is True
    status = await check_lock(db_session, "invoice", "42")
    assert status["holder"] == "U2"


async def test_same_holder_refreshes_lease(db_session, frozen_clock):
    lock, _, _ = await acquire_lock(db_session, "invoice", "7", "U1")
    first_expiry = lock.expires_at

    frozen_clock.advance(minutes=2)
    again, created, refreshed = await acquire_lock(db_session, "invoice", "7", "U1")

    assert again.id == lock.id
    assert created is False
    assert refreshed is True
    assert again.expires_at > first_expiry


async def test_same_holder_after_expiry_gets_a_new_lease(db_session, frozen_clock):
    lock, _, _ = await acquire_lock(db_session, "invoice", "7", "U1")

    frozen_clock.advance(minutes=10)
    again, created, refreshed = await acquire_lock(db_session, "invoice", "7", "U1")

    assert created is True
    assert refreshed is False
    assert again.id == lock.id
    assert again.locked_at == frozen_clock.current
    assert again.expires_at == frozen_clock.current + timedelta(minutes=5)


async def test_acquire_requires_identity(db_session):
    with pytest.raises(ValidationFailedError):
        await acquire_lock(db_session, "invoice", 1, "")
    with pytest.raises(ValidationFailedError):
        await acquire_lock(db_session, "", 1, "U1")


async def test_release_only_by_holder_and_idempotent(db_session):
    lock, _, _ = await acquire_lock(db_session, "invoice", 1, "U1")
    lock_id = lock.id

    assert await release_lock(db_session, lock_id, "U2") is None
    assert (await check_lock(db_session, "invoice", 1))["locked"] is True

    assert await release_lock(db_session, lock_id, "U1") is not None
    assert await release_lock(db_session, lock_id, "U1") is None
    assert (await check_lock(db_session, "invoice", 1))["locked"] is False


async def test_release_by_entity(db_session):
    await acquire_lock(db_session, "draw", 3, "U1")

    assert await release_entity_lock(db_session, "draw", 3, "U2") is None
    assert await release_entity_lock(db_session, "draw", 3, "U1") is not None
    assert await release_entity_lock(db_session, "draw", 3, "U1") is None


async def test_force_release_logs_previous_holder(db_session):
    await acquire_lock(db_session, "invoice", 9, "U1")

    removed = await force_release_lock(db_session, "invoice", 9, "admin")
    await db_session.commit()

    assert removed.locked_by == "U1"
    assert (await check_lock(db_session, "invoice", 9))["locked"] is False
    assert await force_release_lock(db_session, "invoice", 9, "admin") is None

    trail = await get_activity_trail(db_session, "invoice", 9)
    assert trail[0].action == ActivityAction.LOCK_FORCE_RELEASED
    assert trail[0].details["previous_holder"] == "U1"


async def test_check_lock_reports_remaining_time(db_session, frozen_clock):
    await acquire_lock(db_session, "invoice", 5, "U1")
    frozen_clock.advance(minutes=1)

    status = await check_lock(db_session, "invoice", 5)

    assert status["locked"] is True
    assert status["remaining_seconds"] == 240

    frozen_clock.advance(minutes=5)
    assert (await check_lock(db_session, "invoice", 5))["locked"] is False


async def test_list_and_cleanup_skip_expired(db_session, frozen_clock):
    await acquire_lock(db_session, "invoice", 1, "U1")
    frozen_clock.advance(minutes=3)
    await acquire_lock(db_session, "invoice", 2, "U2")
    frozen_clock.advance(minutes=3)

    active = await list_active_locks(db_session)
    assert [lock.entity_id for lock in active] == ["2"]

    assert await cleanup_expired_locks(db_session) == 1
    assert await cleanup_expired_locks(db_session) == 0


async def test_write_gate(db_session, frozen_clock):
    await ensure_writable(db_session, "invoice", 1, "U2")

    await acquire_lock(db_session, "invoice", 1, "U1")
    await ensure_writable(db_session, "invoice", 1, "U1")
    with pytest.raises(LockHeldError):
        await ensure_writable(db_session, "invoice", 1, "U2")

    frozen_clock.advance(minutes=5)
    await ensure_writable(db_session, "invoice", 1, "U2")
