import asyncio
import tempfile
import unittest
from pathlib import Path

from pdcapture.registry import CaptureRegistry
from pdcapture.storage import CaptureStore
from pdcapture.tabs import (
    NO_TAB,
    ActiveTabTracker,
    CapturePipeline,
    TabLifecycle,
    parse_tab_id,
    resolve_target_tab,
)

SEGMENT_1 = "https://cdnapisec.kaltura.com/p/1/sp/100/scf/hls/p/1/flavorId/0_abc/seg-1-v1-a1.ts?token=x"
SEGMENT_2 = "https://cdnapisec.kaltura.com/p/1/sp/100/scf/hls/p/1/flavorId/0_abc/seg-2-v1-a1.ts?token=y"
PLAYLIST = "https://cdnapisec.kaltura.com/p/1/hls/name/Lecture%202/master.m3u8"


class SlowTracker(ActiveTabTracker):
    """Tracker whose lookup yields to the event loop first."""

    async def active_tab(self) -> int:
        await asyncio.sleep(0)
        return await super().active_tab()


class ParseTabIdTests(unittest.TestCase):
    def test_accepts_non_negative_ints_and_digit_strings(self) -> None:
        self.assertEqual(parse_tab_id(7), 7)
        self.assertEqual(parse_tab_id("12"), 12)
        self.assertEqual(parse_tab_id(" 3 "), 3)

    def test_everything_else_is_no_tab(self) -> None:
        for value in (-1, "-4", "abc", "", None, 1.5, True, [1], "\u00b2", "3\u00b2"):
            self.assertEqual(parse_tab_id(value), NO_TAB, value)


class TabsTestCase(unittest.IsolatedAsyncioTestCase):
    tracker_class = ActiveTabTracker

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        store = CaptureStore(Path(self._tmp.name) / "captures.db")
        await store.init()
        self.registry = CaptureRegistry(store)
        self.tracker = self.tracker_class()
        self.lifecycle = TabLifecycle(self.registry, self.tracker)
        self.pipeline = CapturePipeline(self.registry, self.tracker)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()


class LifecycleTests(TabsTestCase):
    async def test_activation_clears_and_marks_active(self) -> None:
        await self.pipeline.observe(SEGMENT_1, 2)
        self.assertTrue(await self.lifecycle.on_activated(2))
        self.assertEqual(await self.registry.snapshot(2), [])
        self.assertEqual(await self.tracker.active_tab(), 2)

    async def test_only_loading_status_clears(self) -> None:
        await self.pipeline.observe(SEGMENT_1, 2)
        await self.lifecycle.on_updated(2, "complete")
        await self.lifecycle.on_updated(2, None)
        self.assertEqual(len(await self.registry.snapshot(2)), 1)
        await self.lifecycle.on_updated(2, "loading")
        self.assertEqual(await self.registry.snapshot(2), [])

    async def test_removal_clears_and_forgets_active_tab(self) -> None:
        await self.lifecycle.on_activated(2)
        await self.pipeline.observe(SEGMENT_1, 2)
        await self.lifecycle.on_removed(2)
        self.assertEqual(await self.registry.snapshot(2), [])
        self.assertEqual(await self.tracker.active_tab(), NO_TAB)

    async def test_invalid_tab_ids_are_ignored(self) -> None:
        self.assertFalse(await self.lifecycle.on_removed(-1))
        self.assertFalse(await self.lifecycle.on_activated("x"))
        self.assertFalse(await self.lifecycle.on_updated(None, "loading"))
        self.assertEqual(await self.tracker.active_tab(), NO_TAB)


class PipelineTests(TabsTestCase):
    async def test_rejected_request_records_nothing(self) -> None:
        self.assertIsNone(await self.pipeline.observe("https://canvas.ucsd.edu/app.js", 1))
        self.assertEqual(await self.registry.snapshot(1), [])

    async def test_segments_of_same_asset_are_deduplicated(self) -> None:
        first = await self.pipeline.observe(SEGMENT_1, 1)
        second = await self.pipeline.observe(SEGMENT_2, 1)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(first.url, "https://cdnapisec.kaltura.com/p/1/sp/100/pd/p/1/flavorId/0_abc?token=x")
        self.assertEqual(first.label, "0_abc")

    async def test_unknown_tab_without_active_tab_is_dropped(self) -> None:
        self.assertEqual(await resolve_target_tab(NO_TAB, self.tracker), NO_TAB)
        self.assertIsNone(await self.pipeline.observe(SEGMENT_1, NO_TAB))

    async def test_unknown_tab_falls_back_to_active_tab(self) -> None:
        await self.lifecycle.on_activated(8)
        capture = await self.pipeline.observe(PLAYLIST, NO_TAB)
        self.assertIsNotNone(capture)
        self.assertEqual(capture.label, "Lecture 2")
        self.assertEqual([c.url for c in await self.registry.snapshot(8)], [capture.url])


class ConcurrentPipelineTests(TabsTestCase):
    tracker_class = SlowTracker

    async def test_interleaved_requests_record_once(self) -> None:
        self.tracker.activate(3)
        results = await asyncio.gather(
            self.pipeline.observe(SEGMENT_1, NO_TAB),
            self.pipeline.observe(SEGMENT_2, NO_TAB),
            self.pipeline.observe(SEGMENT_1, 3),
        )
        self.assertEqual(sum(1 for r in results if r is not None), 1)
        self.assertEqual(len(await self.registry.snapshot(3)), 1)


if __name__ == "__main__":
    unittest.main()
