"""
# core/session_guard.py

Module Contract
- Purpose: Stale-session protection and per-session side-pipeline locks.
- Key classes:
  - SessionGuard(store, current_session): guard(session_id) -> GuardedWriter
  - GuardedWriter: append/update/remove that only reach the store while the captured session is still current; dropped writes are counted
  - SessionLockMap: keyed, non-blocking locks released in a finally block (hold(key) context manager)
- Side effects:
  - Writes to the conversation store through the wrapped writer only.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from config.app_config import REVEAL_CHUNK_CHARS, REVEAL_DELAY_S
from core.conversation import ConversationMessage
from core.stream_text import reveal_prefixes
from storage.conversation_store import ConversationStore
from utils.logging_utils import get_logger

logger = get_logger("session_guard")


class GuardedWriter:
    """Writes for one run, bound to the session id captured at submission"""

    def __init__(self, store: ConversationStore, session_id: str, is_current: Callable[[str], bool]):
        self.store = store
        self.session_id = session_id
        self._is_current = is_current
        self.discarded = 0

    @property
    def active(self) -> bool:
        return self._is_current(self.session_id)

    def _allow(self, action: str, message_id: str) -> bool:
        if self.active:
            return True
        self.discarded += 1
        logger.debug(f"[GUARD] Discarded {action} for {message_id}: session {self.session_id} no longer current")
        return False

    async def append(self, message: ConversationMessage) -> bool:
        if not self._allow("append", message.id):
            return False
        await self.store.append_message(self.session_id, message)
        return True

    async def update(self, message_id: str, **partial) -> bool:
        if not self._allow("update", message_id):
            return False
        return await self.store.update_message(self.session_id, message_id, partial)

    async def remove(self, message_id: str) -> bool:
        if not self._allow("remove", message_id):
            return False
        return await self.store.remove_message(self.session_id, message_id)

    async def reveal(
        self,
        message_id: str,
        text: str,
        chunk_chars: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> bool:
        """Write canned text onto a message a few characters at a time."""
        chunk_chars = REVEAL_CHUNK_CHARS if chunk_chars is None else chunk_chars
        delay = REVEAL_DELAY_S if delay is None else delay
        for prefix in reveal_prefixes(text, chunk_chars):
            done = len(prefix) == len(text)
            if not await self.update(message_id, content=prefix, streaming=not done):
                return False
            if not done:
                await asyncio.sleep(delay)
        return True

    async def get(self, message_id: str) -> Optional[ConversationMessage]:
        return await self.store.get_message(self.session_id, message_id)

    async def load_history(self) -> List[ConversationMessage]:
        return await self.store.load_history(self.session_id)


class SessionGuard:
    """Single place that decides whether a run may still write"""

    def __init__(self, store: ConversationStore, current_session: Callable[[], Optional[str]]):
        self.store = store
        self._current_session = current_session

    def is_current(self, session_id: str) -> bool:
        return session_id is not None and self._current_session() == session_id

    def guard(self, session_id: str) -> GuardedWriter:
        return GuardedWriter(self.store, session_id, self.is_current)


class SessionLockMap:
    """Non-blocking locks keyed by session id (e.g. one title job per chat)"""

    def __init__(self):
        self._held: Dict[str, str] = {}

    def is_held(self, key: str) -> bool:
        return key in self._held

    def try_acquire(self, key: str, owner: str = "") -> bool:
        if key in self._held:
            logger.debug(f"[LOCK] {key} already held by {self._held[key] or 'anonymous'}")
            return False
        self._held[key] = owner
        return True

    def release(self, key: str) -> None:
        self._held.pop(key, None)

    @asynccontextmanager
    async def hold(self, key: str, owner: str = "") -> AsyncIterator[bool]:
        """Yield True when the lock was taken; it is released on exit either way."""
        acquired = self.try_acquire(key, owner)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
