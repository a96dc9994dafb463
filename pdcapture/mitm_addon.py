"""
mitmproxy addon for pdcapture
Watches browser requests to lecture hosts and forwards stream requests to the backend
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

import httpx
from mitmproxy import http

from pdcapture.classifier import is_likely_media_request, url_host_allowed
from pdcapture.config import VERBOSE, load_proxy_config
from pdcapture.tabs import NO_TAB, parse_tab_id

logger = logging.getLogger('pdcapture.proxy')

REQUEST_ENDPOINT = "/api/internal/request"


def vlog(msg: str):
    if VERBOSE:
        logger.info(f'[pdcapture][verbose] {msg}')


def load_config(path: Optional[Path] = None) -> dict:
    """Load current proxy configuration"""
    cfg = load_proxy_config(path)
    vlog(f"Loaded config: hosts={len(cfg.get('allowed_hosts', []))} tab_header={cfg.get('tab_header')}")
    return cfg


def tab_id_from_headers(headers, header_name: str) -> int:
    """Tab id announced by the browser bridge, -1 when unknown"""
    value = headers.get(header_name) if header_name else None
    if value is None:
        return NO_TAB
    tab_id = parse_tab_id(value)
    if tab_id == NO_TAB:
        vlog(f'Ignoring malformed tab header {header_name}={value!r}')
    return tab_id


def send_to_backend(backend_url: str, endpoint: str, data: dict):
    """Send data to backend"""
    try:
        with httpx.Client(timeout=5) as client:
            r = client.post(f"{backend_url}{endpoint}", json=data)
            vlog(f"POST {endpoint} -> {r.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Backend error: {e}")


def dispatch_in_background(backend_url: str, endpoint: str, data: dict):
    threading.Thread(
        target=send_to_backend,
        args=(backend_url, endpoint, data),
        daemon=True,
    ).start()


class PdCaptureAddon:
    def __init__(self, config_path: Optional[Path] = None,
                 dispatch: Optional[Callable[[str, str, dict], None]] = None):
        self.config_path = config_path
        self.config = load_config(config_path)
        self.dispatch = dispatch or dispatch_in_background

    def reload_config(self):
        """Reload configuration from file"""
        self.config = load_config(self.config_path)

    def request(self, flow: http.HTTPFlow):
        """Forward stream requests from allowed hosts to the backend"""
        self.reload_config()

        header_name = self.config.get("tab_header")
        tab_id = tab_id_from_headers(flow.request.headers, header_name)
        if header_name and header_name in flow.request.headers:
            del flow.request.headers[header_name]

        url = flow.request.pretty_url
        if not url_host_allowed(url, self.config.get("allowed_hosts", [])):
            return

        if not is_likely_media_request(url):
            return

        vlog(f"Stream request (tab={tab_id}): {url}")
        self.dispatch(self.config.get("backend_url"), REQUEST_ENDPOINT, {"url": url, "tab_id": tab_id})


addons = [PdCaptureAddon()]
