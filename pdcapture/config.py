"""
Shared settings for the backend and the proxy addon
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).parent.parent
PROXY_CONFIG_PATH = Path(__file__).parent / ".proxy_config.json"

DB_PATH = Path(os.getenv('PDCAPTURE_DB', str(BASE_DIR / ".pdcapture.db")))
BACKEND_URL = os.getenv('PDCAPTURE_BACKEND_URL', "http://127.0.0.1:5000")
TAB_HEADER = os.getenv('PDCAPTURE_TAB_HEADER', "X-Pdcapture-Tab")

LOG_LEVEL = os.getenv('PDCAPTURE_LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = os.getenv('PDCAPTURE_LOG_FORMAT', '%(asctime)s %(levelname)s %(name)s: %(message)s')
VERBOSE = os.getenv('PDCAPTURE_VERBOSE', '0') in ('1', 'true', 'TRUE', 'yes', 'YES')

# Video/lecture hosts whose traffic is observed at all
DEFAULT_ALLOWED_HOSTS = [
    "*.kaltura.com",
    "*.podcast.ucsd.edu",
    "canvas.ucsd.edu",
    "canvaskaf.ucsd.edu",
]

BADGE_COLOR = "#4CAF50"

logger = logging.getLogger('pdcapture')


def setup_logging():
    """Configure logging once."""
    if logger.handlers:
        return
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format=LOG_FORMAT)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.info('Logging initialized (level=%s)', LOG_LEVEL)


def default_proxy_config() -> dict:
    return {
        "allowed_hosts": list(DEFAULT_ALLOWED_HOSTS),
        "tab_header": TAB_HEADER,
        "backend_url": BACKEND_URL,
    }


def load_proxy_config(path: Optional[Path] = None) -> dict:
    """Load the proxy configuration, falling back to defaults"""
    path = path or PROXY_CONFIG_PATH
    config = default_proxy_config()
    try:
        if path.exists():
            stored = json.loads(path.read_text())
            if isinstance(stored, dict):
                config.update({k: v for k, v in stored.items() if k in config})
    except (OSError, ValueError) as e:
        logging.getLogger('pdcapture.proxy').warning('Failed to read config file %s (%s); using defaults', path, e)
    return config


def write_proxy_config(config: dict, path: Optional[Path] = None):
    path = path or PROXY_CONFIG_PATH
    path.write_text(json.dumps(config, indent=2))
    logger.debug('Proxy config updated at %s: %s', path, config)
