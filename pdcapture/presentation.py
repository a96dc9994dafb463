"""
Read-only views over a tab's captures for the popup
"""

import re
from typing import List, Optional

from .models import Capture

DEFAULT_BASENAME = "Kaltura_Video"
DOWNLOAD_EXTENSION = "mp4"
MAX_FILENAME_LENGTH = 140

UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
WHITESPACE_RE = re.compile(r"\s+")


def sanitize_filename(value: Optional[str]) -> str:
    if not value:
        return DEFAULT_BASENAME
    value = UNSAFE_FILENAME_RE.sub(" ", value)
    value = WHITESPACE_RE.sub(" ", value).strip()
    return value[:MAX_FILENAME_LENGTH] or DEFAULT_BASENAME


def suggested_filename(title: Optional[str]) -> str:
    return f"{sanitize_filename(title)}.{DOWNLOAD_EXTENSION}"


def describe_candidates(captures: List[Capture]) -> dict:
    if not captures:
        return {
            "status": "No stream candidates detected yet. Play the lecture first.",
            "options": [],
        }
    options = []
    for idx, item in enumerate(captures):
        type_tag = "[Audio]" if item.media_type == "audio" else "[Video]"
        options.append({
            "id": item.id,
            "url": item.url,
            "text": f"{idx + 1}. {type_tag} {item.label}",
        })
    return {"status": f"Detected {len(captures)} stream candidate(s).", "options": options}
