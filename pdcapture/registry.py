"""
Per-tab capture registry.

Each tab owns an ordered list of unique captures stored under
``captures:<tabId>``. The first discovery of a logical asset wins its
position; later duplicates are dropped.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .classifier import build_preview_label, capture_identity
from .config import BADGE_COLOR
from .models import Capture
from .storage import CAPTURE_KEY_PREFIX, CaptureStore, StorageError, capture_key

logger = logging.getLogger('pdcapture.registry')

BadgeListener = Callable[[int, dict], Awaitable[None]]


def is_valid_tab_id(tab_id) -> bool:
    return isinstance(tab_id, int) and not isinstance(tab_id, bool) and tab_id >= 0


class BadgeBoard:
    """Textual per-tab indicator showing how many candidates were found."""

    def __init__(self, listener: Optional[BadgeListener] = None):
        self._badges: Dict[int, dict] = {}
        self.listener = listener

    def get(self, tab_id: int) -> dict:
        return dict(self._badges.get(tab_id, {"text": "", "color": None}))

    async def set(self, tab_id: int, text: str, color: Optional[str] = None):
        badge = self._badges.get(tab_id, {"text": "", "color": None})
        badge = {"text": text, "color": color if color is not None else badge["color"]}
        if text:
            self._badges[tab_id] = badge
        else:
            self._badges.pop(tab_id, None)
        if self.listener:
            try:
                await self.listener(tab_id, badge)
            except Exception as e:
                logger.debug('Badge listener failed for tab %s: %s', tab_id, e)


class CaptureRegistry:
    def __init__(self, store: CaptureStore, badges: Optional[BadgeBoard] = None):
        self.store = store
        self.badges = badges or BadgeBoard()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @asynccontextmanager
    async def _lock(self, tab_id: int):
        """Serialize work on one tab; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(tab_id)
        if lock is None:
            lock = self._locks[tab_id] = asyncio.Lock()
        self._lock_users[tab_id] = self._lock_users.get(tab_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tab_id] -= 1
            if not self._lock_users[tab_id]:
                del self._lock_users[tab_id]
                del self._locks[tab_id]

    def tracked_tabs(self) -> int:
        return len(self._locks)

    async def record(self, tab_id: int, canonical_url: str, source_url: str,
                     media_type: str) -> Optional[Capture]:
        """Append a capture unless one with the same identity exists.

        Returns the new capture, or None when nothing was stored.
        """
        if not is_valid_tab_id(tab_id):
            logger.debug('record: ignoring invalid tab id %r', tab_id)
            return None

        key = capture_key(tab_id)
        candidate_key = capture_identity(canonical_url)

        async with self._lock(tab_id):
            try:
                captures = await self.store.get(key)
            except StorageError as e:
                logger.warning('Could not read captures for tab %s: %s', tab_id, e)
                return None

            if any(capture_identity(str(item.get("url", ""))) == candidate_key
                   for item in captures if isinstance(item, dict)):
                logger.debug('Duplicate candidate for tab %s: %s', tab_id, canonical_url)
                return None

            next_index = len(captures)
            capture = Capture(
                id=f"{int(time.time() * 1000)}-{next_index}",
                url=canonical_url,
                source_url=source_url,
                label=build_preview_label(source_url, next_index),
                media_type=media_type,
            )
            try:
                await self.store.set(key, captures + [capture.model_dump()])
            except StorageError as e:
                logger.warning('Could not store capture for tab %s: %s', tab_id, e)
                return None

            await self.badges.set(tab_id, str(next_index + 1), BADGE_COLOR)

        logger.info('Tab %s: new %s candidate #%d %s', tab_id, capture.media_type, next_index + 1, capture.url)
        return capture

    async def clear(self, tab_id: int):
        if not is_valid_tab_id(tab_id):
            return

        async with self._lock(tab_id):
            try:
                await self.store.remove(capture_key(tab_id))
            except StorageError as e:
                logger.warning('Could not clear captures for tab %s: %s', tab_id, e)
                return
            await self.badges.set(tab_id, "")
        logger.debug('Cleared captures for tab %s', tab_id)

    async def snapshot(self, tab_id: int) -> List[Capture]:
        if not is_valid_tab_id(tab_id):
            return []
        try:
            items = await self.store.get(capture_key(tab_id))
        except StorageError as e:
            logger.warning('Could not read captures for tab %s: %s', tab_id, e)
            return []

        captures = []
        for item in items:
            try:
                captures.append(Capture.model_validate(item))
            except ValidationError:
                logger.debug('Skipping malformed capture in tab %s: %r', tab_id, item)
        return captures

    async def tabs(self) -> List[int]:
        """Ids of tabs that currently have stored captures."""
        try:
            keys = await self.store.keys(CAPTURE_KEY_PREFIX)
        except StorageError as e:
            logger.warning('Could not list capture keys: %s', e)
            return []
        tab_ids = []
        for key in keys:
            suffix = key[len(CAPTURE_KEY_PREFIX):]
            if suffix.isascii() and suffix.isdigit():
                tab_ids.append(int(suffix))
        return sorted(tab_ids)
