from typing import Dict
import asyncio


class SessionLockRegistry:
    """Serializes access to each conversation's state.

    One asyncio lock per conversation id, reference-counted so ids with no
    holders or waiters are dropped. Release is not tied to the acquiring
    task: a request may hand its lock to the detached task that performs
    the final save.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    async def acquire(self, conversation_id: str) -> None:
        """Wait until the conversation's lock is held by the caller"""

        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        self._refs[conversation_id] = self._refs.get(conversation_id, 0) + 1

        try:
            await lock.acquire()
        except BaseException:
            self._unref(conversation_id)
            raise

    def release(self, conversation_id: str) -> None:
        """Release the conversation's lock"""

        lock = self._locks.get(conversation_id)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Lock for {conversation_id!r} is not held")
        lock.release()
        self._unref(conversation_id)

    def is_locked(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return bool(lock and lock.locked())

    def active_ids(self):
        return set(self._locks.keys())

    def _unref(self, conversation_id: str) -> None:
        remaining = self._refs.get(conversation_id, 1) - 1
        if remaining <= 0:
            self._refs.pop(conversation_id, None)
            self._locks.pop(conversation_id, None)
        else:
            self._refs[conversation_id] = remaining
