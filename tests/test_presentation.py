import unittest

from pdcapture.models import Capture
from pdcapture.presentation import describe_candidates, sanitize_filename, suggested_filename


class FilenameTests(unittest.TestCase):
    def test_unsafe_characters_become_spaces(self) -> None:
        self.assertEqual(sanitize_filename('Week 1: Intro / "Overview"?'), "Week 1 Intro Overview")

    def test_empty_title_uses_default(self) -> None:
        self.assertEqual(sanitize_filename(""), "Kaltura_Video")
        self.assertEqual(sanitize_filename(None), "Kaltura_Video")
        self.assertEqual(sanitize_filename(" ?* "), "Kaltura_Video")

    def test_long_titles_are_truncated(self) -> None:
        self.assertEqual(len(sanitize_filename("x" * 300)), 140)

    def test_suggested_filename_has_mp4_extension(self) -> None:
        self.assertEqual(suggested_filename("Lecture 3"), "Lecture 3.mp4")


class DescribeCandidatesTests(unittest.TestCase):
    def test_empty_registry_hint(self) -> None:
        view = describe_candidates([])
        self.assertEqual(view["options"], [])
        self.assertIn("No stream candidates", view["status"])

    def test_options_are_numbered_and_tagged(self) -> None:
        captures = [
            Capture(id="1-0", url="https://h/pd/a", source_url="s", label="0_abc", media_type="video"),
            Capture(id="1-1", url="https://h/pd/b", source_url="s", label="Candidate 2", media_type="audio"),
        ]
        view = describe_candidates(captures)
        self.assertEqual(view["status"], "Detected 2 stream candidate(s).")
        self.assertEqual([o["text"] for o in view["options"]], ["1. [Video] 0_abc", "2. [Audio] Candidate 2"])
        self.assertEqual(view["options"][1]["url"], "https://h/pd/b")


if __name__ == "__main__":
    unittest.main()
