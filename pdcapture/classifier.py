"""
Request classifier: recognizes segmented-stream requests and rewrites them
into a single progressive-download URL.

Every rewrite rule is a pure function taking the query-less URL and returning
the rewritten URL, or None to reject it. Rules run in the order of
REWRITE_RULES.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

AUDIO = "audio"
VIDEO = "video"

MEDIA_REQUEST_RE = re.compile(
    r"/scf/hls/|/hls/|/serveFlavor/|/seg-|/segment/|/chunklist|/frag-|\.m3u8(\?|$)|\.ts(\?|$)",
    re.IGNORECASE,
)

SEGMENTED_FLAVOR_ROOT = "/scf/hls/"
HLS_ROOT_RE = re.compile(r"/hls/", re.IGNORECASE)
PROGRESSIVE_ROOT = "/pd/"
PROGRESSIVE_ROOT_RE = re.compile(r"/pd/", re.IGNORECASE)
MP4_SUFFIX_RE = re.compile(r"\.mp4$", re.IGNORECASE)

# Cut points, applied one after another
SEGMENT_MARKERS = ("/seg-", "/segment/", "/chunklist", "/frag-")

MANIFEST_SUFFIX_RES = (
    re.compile(r"/(master|playlist|index)\.m3u8$", re.IGNORECASE),
    re.compile(r"\.ts$", re.IGNORECASE),
    re.compile(r"\.m3u8$", re.IGNORECASE),
    re.compile(r"/$"),
)

AUDIO_PATH_RE = re.compile(r"/audio/", re.IGNORECASE)
AUDIO_TERM_RE = re.compile(r"audio", re.IGNORECASE)

FLAVOR_ID_RE = re.compile(r"/flavorId/([^/]+)", re.IGNORECASE)
NAME_RE = re.compile(r"/name/([^/]+)", re.IGNORECASE)


@dataclass(frozen=True)
class Classification:
    url: str
    source_url: str
    media_type: str


def is_likely_media_request(source_url: str) -> bool:
    """Cheap relevance filter; most page traffic fails it."""
    return bool(MEDIA_REQUEST_RE.search(source_url))


def split_query(url: str):
    """Split off everything from the first '?' (kept with its '?')."""
    index = url.find("?")
    if index < 0:
        return url, ""
    return url[:index], url[index:]


def rewrite_delivery_root(url: str) -> Optional[str]:
    if SEGMENTED_FLAVOR_ROOT in url:
        return url.replace(SEGMENTED_FLAVOR_ROOT, PROGRESSIVE_ROOT, 1)
    return HLS_ROOT_RE.sub(PROGRESSIVE_ROOT, url, count=1)


def truncate_at_markers(url: str) -> Optional[str]:
    for marker in SEGMENT_MARKERS:
        url = url.split(marker, 1)[0]
    return url


def strip_manifest_suffix(url: str) -> Optional[str]:
    for pattern in MANIFEST_SUFFIX_RES:
        url = pattern.sub("", url, count=1)
    return url


def require_progressive_target(url: str) -> Optional[str]:
    """Reject anything that still looks like a manifest or segment."""
    if not url:
        return None
    if not PROGRESSIVE_ROOT_RE.search(url) and not MP4_SUFFIX_RE.search(url):
        return None
    return url


REWRITE_RULES: tuple[Callable[[str], Optional[str]], ...] = (
    rewrite_delivery_root,
    truncate_at_markers,
    strip_manifest_suffix,
    require_progressive_target,
)


def canonicalize(url: str) -> Optional[str]:
    """Rewrite a stream URL into its whole-asset URL, or None if it has none."""
    base, query = split_query(url)
    for rule in REWRITE_RULES:
        base = rule(base)
        if base is None:
            return None
    if "?" not in base and query:
        base = f"{base}{query}"
    return base


def build_download_url(source_url: str) -> Optional[str]:
    if not is_likely_media_request(source_url):
        return None
    return canonicalize(source_url)


def is_audio_stream(source_url: str) -> bool:
    return bool(AUDIO_PATH_RE.search(source_url) or AUDIO_TERM_RE.search(source_url))


def classify(source_url: str) -> Optional[Classification]:
    """Classify one observed request URL; None means rejected."""
    download_url = build_download_url(source_url)
    if not download_url:
        return None
    media_type = AUDIO if is_audio_stream(source_url) else VIDEO
    return Classification(url=download_url, source_url=source_url, media_type=media_type)


def capture_identity(url: str) -> str:
    return url.split("?", 1)[0].lower()


def build_preview_label(source_url: str, index: int) -> str:
    flavor_match = FLAVOR_ID_RE.search(source_url)
    if flavor_match:
        return flavor_match.group(1)

    name_match = NAME_RE.search(source_url)
    if name_match:
        return unquote(name_match.group(1))

    return f"Candidate {index + 1}"


def host_allowed(host: str, patterns: list) -> bool:
    """Check a host against Chrome-style host patterns ('*.example.com')."""
    host = (host or "").lower().split(":", 1)[0]
    if not host:
        return False
    for pattern in patterns:
        pattern = (pattern or "").lower()
        if not pattern:
            continue
        if pattern.startswith("*."):
            root = pattern[2:]
            if host == root or host.endswith("." + root):
                return True
            continue
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        if re.match(regex, host):
            return True
    return False


def url_host_allowed(url: str, patterns: list) -> bool:
    return host_allowed(urlparse(url).hostname or "", patterns)
