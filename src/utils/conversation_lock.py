import asyncio
import threading
import weakref
from contextlib import asynccontextmanager


class ConversationLockRegistry:
    """
    One asyncio.Lock per conversation id.
    Turns of the same conversation run serially, different conversations run in parallel.
    Locks are held in a WeakValueDictionary so idle conversations do not accumulate.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def get_lock(self, conversation_id: str) -> asyncio.Lock:
        with self._registry_lock:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[conversation_id] = lock
            return lock

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self.get_lock(conversation_id)
        async with lock:
            yield lock
