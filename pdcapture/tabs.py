"""
Tab lifecycle binding and the classify -> resolve tab -> record pipeline
"""

import logging
import re
from typing import Optional

from .classifier import classify
from .models import Capture
from .registry import CaptureRegistry, is_valid_tab_id

logger = logging.getLogger('pdcapture.tabs')

NO_TAB = -1

# ASCII digits only; "²" passes str.isdigit() but not int()
TAB_ID_RE = re.compile(r"[0-9]+")


def parse_tab_id(value) -> int:
    """Coerce an external tab id to int; NO_TAB when it is not a usable id."""
    if isinstance(value, bool):
        return NO_TAB
    if isinstance(value, int):
        return value if value >= 0 else NO_TAB
    if isinstance(value, str) and TAB_ID_RE.fullmatch(value.strip()):
        return int(value.strip())
    return NO_TAB


class ActiveTabTracker:
    """Remembers which tab currently has focus."""

    def __init__(self):
        self._active = NO_TAB

    async def active_tab(self) -> int:
        return self._active

    def activate(self, tab_id: int):
        self._active = tab_id

    def forget(self, tab_id: int):
        if self._active == tab_id:
            self._active = NO_TAB


async def resolve_target_tab(tab_id, tracker: ActiveTabTracker) -> int:
    if is_valid_tab_id(tab_id):
        return tab_id
    active = await tracker.active_tab()
    return active if is_valid_tab_id(active) else NO_TAB


class TabLifecycle:
    """Maps tab closed/activated/loading signals to registry clears."""

    def __init__(self, registry: CaptureRegistry, tracker: ActiveTabTracker):
        self.registry = registry
        self.tracker = tracker

    async def on_removed(self, tab_id) -> bool:
        if not is_valid_tab_id(tab_id):
            return False
        self.tracker.forget(tab_id)
        await self.registry.clear(tab_id)
        return True

    async def on_activated(self, tab_id) -> bool:
        if not is_valid_tab_id(tab_id):
            return False
        self.tracker.activate(tab_id)
        await self.registry.clear(tab_id)
        return True

    async def on_updated(self, tab_id, status: Optional[str]) -> bool:
        # Any top-level load start clears, soft navigations included
        if not is_valid_tab_id(tab_id):
            return False
        if status == "loading":
            await self.registry.clear(tab_id)
        return True


class CapturePipeline:
    def __init__(self, registry: CaptureRegistry, tracker: ActiveTabTracker):
        self.registry = registry
        self.tracker = tracker

    async def observe(self, url: str, tab_id=NO_TAB) -> Optional[Capture]:
        """Handle one observed request from start to finish."""
        classification = classify(url)
        if classification is None:
            logger.debug('Rejected: %s', url)
            return None

        target = await resolve_target_tab(tab_id, self.tracker)
        if target < 0:
            logger.debug('No tab for %s; dropping', url)
            return None

        return await self.registry.record(
            target, classification.url, classification.source_url, classification.media_type)
