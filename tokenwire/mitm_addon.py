"""
mitmproxy addon for Tokenwire
Observes outbound requests and forwards their headers to the backend as events
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
from mitmproxy import ctx, http

VERBOSE = os.getenv('TOKENWIRE_VERBOSE', '0') in ('1', 'true', 'TRUE', 'yes', 'YES')

logger = logging.getLogger('tokenwire.addon')


def vlog(msg: str):
    if VERBOSE:
        logger.info(f'[tokenwire][verbose] {msg}')


DEFAULT_BACKEND_URL = "http://127.0.0.1:5000"
DEFAULT_CONFIG_PATH = Path(__file__).parent / ".proxy_config.json"
DEFAULT_CONTEXT_HEADER = "x-tokenwire-context"

FILTERED_EXTENSIONS = {
    '.png', '.jpg', '.jpeg', '.gif', '.ico', '.svg', '.webp',
    '.css', '.woff', '.woff2', '.ttf', '.eot',
    '.mp3', '.mp4', '.avi', '.mov', '.webm'
}


def load_config(path: Path) -> dict:
    """Load current addon configuration"""
    try:
        if path.exists():
            cfg = json.loads(path.read_text())
            vlog(f"Loaded config: backend={cfg.get('backend_url')} context_header={cfg.get('context_header')}")
            return cfg
    except (OSError, ValueError) as e:
        logger.warning('Failed to read config file %s (%s); using defaults', path, e)
    return {
        "backend_url": DEFAULT_BACKEND_URL,
        "context_header": DEFAULT_CONTEXT_HEADER,
    }


def should_filter(url: str) -> bool:
    """Static assets never carry tokens worth reporting"""
    path = urlparse(url).path.lower()
    filtered = any(path.endswith(ext) for ext in FILTERED_EXTENSIONS)
    if filtered:
        vlog(f'Filtered by extension: {url}')
    return filtered


def context_id_for(request: http.Request, peername, context_header: str) -> str:
    """Context from the tagging header, else the client address."""
    tagged = request.headers.get(context_header)
    if tagged:
        return tagged
    if peername:
        return str(peername[0])
    return "default"


def build_request_event(request: http.Request, context_id: str, context_header: str) -> dict:
    return {
        "type": "request_observed",
        "context_id": context_id,
        "url": request.pretty_url,
        "headers": [
            {"name": name, "value": value}
            for name, value in request.headers.items(multi=True)
            if name.lower() != context_header
        ],
    }


def send_to_backend(backend_url: str, endpoint: str, data: dict):
    """Send data to backend"""
    try:
        with httpx.Client(timeout=5) as client:
            r = client.post(f"{backend_url}{endpoint}", json=data)
            vlog(f"POST {endpoint} -> {r.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Backend error: {e}")


class TokenwireAddon:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self.config = load_config(self.config_path)

    def load(self, loader):
        loader.add_option(
            name="tokenwire_config",
            typespec=str,
            default="",
            help="Path of the Tokenwire addon config written by the backend",
        )

    def configure(self, updated):
        if "tokenwire_config" in updated and ctx.options.tokenwire_config:
            self.config_path = Path(ctx.options.tokenwire_config)
            self.reload_config()

    def reload_config(self):
        """Reload configuration from file"""
        vlog('Reloading config from disk')
        self.config = load_config(self.config_path)

    def request(self, flow: http.HTTPFlow):
        """Forward request headers to the backend and strip the context tag"""
        self.reload_config()

        url = flow.request.pretty_url
        if should_filter(url):
            return

        context_header = self.config.get("context_header", DEFAULT_CONTEXT_HEADER).lower()
        peername = flow.client_conn.peername if flow.client_conn else None
        context_id = context_id_for(flow.request, peername, context_header)
        data = build_request_event(flow.request, context_id, context_header)
        if context_header in flow.request.headers:
            del flow.request.headers[context_header]
        vlog(f"Request: {flow.request.method} {url} context={context_id}")

        threading.Thread(
            target=send_to_backend,
            args=(self.config.get("backend_url", DEFAULT_BACKEND_URL), "/api/internal/request", data),
            daemon=True,
        ).start()


addons = [TokenwireAddon()]
