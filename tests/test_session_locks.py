"""
Unit tests for SessionLockRegistry.
"""
import asyncio

import pytest

from memory_relay.domain.context.state.session_locks import SessionLockRegistry


class TestSessionLockRegistry:
    """Tests for per-conversation serialization."""

    @pytest.mark.asyncio
    async def test_same_id_is_serialized(self):
        """Test a second holder waits for the first release."""
        locks = SessionLockRegistry()
        order = []

        async def holder(name, hold):
            await locks.acquire("A")
            order.append(f"{name}-start")
            await asyncio.sleep(hold)
            order.append(f"{name}-end")
            locks.release("A")

        await asyncio.gather(holder("first", 0.05), holder("second", 0))

        assert order == ["first-start", "first-end", "second-start", "second-end"]

    @pytest.mark.asyncio
    async def test_different_ids_do_not_block(self):
        """Test independent conversations proceed concurrently."""
        locks = SessionLockRegistry()
        await locks.acquire("A")

        await asyncio.wait_for(locks.acquire("B"), timeout=0.5)

        assert locks.is_locked("A")
        assert locks.is_locked("B")
        locks.release("A")
        locks.release("B")

    @pytest.mark.asyncio
    async def test_release_from_another_task(self):
        """Test a lock can be handed to a detached task."""
        locks = SessionLockRegistry()
        await locks.acquire("A")

        async def finalize():
            locks.release("A")

        await asyncio.create_task(finalize())
        assert not locks.is_locked("A")

    @pytest.mark.asyncio
    async def test_idle_ids_are_dropped(self):
        """Test the registry forgets ids nobody holds."""
        locks = SessionLockRegistry()
        await locks.acquire("A")
        locks.release("A")

        assert locks.active_ids() == set()

    def test_release_without_hold_raises(self):
        """Test releasing an unheld lock is an error."""
        locks = SessionLockRegistry()
        with pytest.raises(RuntimeError):
            locks.release("A")
