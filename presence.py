"""
Typing indicators with double expiry.

Every "is typing" write arms a clear timer for its (user, room) key, replacing any
timer still pending for that key. Independently of the timers, readers drop rows
whose last update is older than the stale window, so a lost timer (or a restart
of the loop that owned it) can never leave a user typing forever.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import config
from database import MemoryStore
from schemas import PublicUser, utcnow

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Schedules plain callbacks on the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class TypingTracker:
    def __init__(
        self,
        store: MemoryStore,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        clear_after: float = config.TYPING_CLEAR_AFTER,
        stale_after: float = config.TYPING_STALE_AFTER,
        on_expire: Optional[Callable[[str, str], None]] = None,
    ):
        self.store = store
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock
        self.clear_after = clear_after
        self.stale_after = timedelta(seconds=stale_after)
        self._timers: Dict[Tuple[str, str], TimerHandle] = {}
        # called with (user_id, room_id) when a clear timer fires
        self.on_expire = on_expire

    def set_typing(self, user_id: str, room_id: str, is_typing: bool) -> None:
        key = (user_id, room_id)
        self._cancel(key)
        if not is_typing:
            self.store.clear_typing(user_id, room_id)
            return
        self.store.upsert_typing(user_id, room_id, True, self.clock())
        self._timers[key] = self.scheduler.call_later(self.clear_after, lambda: self._expire(key))

    def typing_users(self, room_id: str, exclude: Optional[str] = None) -> List[PublicUser]:
        cutoff = self.clock() - self.stale_after
        users = []
        for row in self.store.typing_rows(room_id):
            if not row.is_typing or row.last_update <= cutoff or row.user_id == exclude:
                continue
            user = self.store.get_user(row.user_id)
            if user:
                users.append(user.public())
        return users

    def is_typing(self, user_id: str, room_id: str) -> bool:
        return any(u.id == user_id for u in self.typing_users(room_id))

    def pending(self) -> int:
        return len(self._timers)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _cancel(self, key: Tuple[str, str]) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, key: Tuple[str, str]) -> None:
        self._timers.pop(key, None)
        self.store.clear_typing(*key)
        logger.debug(f"Typing status expired for user {key[0]} in room {key[1]}")
        if self.on_expire is not None:
            self.on_expire(*key)
