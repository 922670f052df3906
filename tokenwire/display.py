"""
Display helpers: masking, source labels and opaque copy handles.

The collection listing never carries raw token values; a raw value is only
released through an explicit copy of its handle.
"""

import hashlib
from typing import List, Optional

from .collector import CollectionEntry

MASK_CHAR = "•"
VISIBLE_START = 4
VISIBLE_END = 4
MIN_MASKABLE_LENGTH = 12
MASK_WIDTH = 8
FULL_MASK = MASK_CHAR * MIN_MASKABLE_LENGTH
MAX_SOURCE_LENGTH = 40


def mask_token(token: str) -> str:
    """Keep the first and last four characters; the middle is a fixed-width mask."""
    if not token or len(token) < MIN_MASKABLE_LENGTH:
        return FULL_MASK
    return token[:VISIBLE_START] + MASK_CHAR * MASK_WIDTH + token[-VISIBLE_END:]


def truncate_source(source: str, max_length: int = MAX_SOURCE_LENGTH) -> str:
    if len(source) <= max_length:
        return source
    return source[:max_length - 3] + "..."


def token_handle(token: str, generation: int) -> str:
    return hashlib.sha256(f"{generation}:{token}".encode()).hexdigest()[:12]


def render_collection(entries: List[CollectionEntry], capacity: int, generation: int) -> dict:
    return {
        "entries": [{
            "display_source": truncate_source(e.representative_source),
            "source": e.representative_source,
            "masked_token": mask_token(e.token),
            "handle": token_handle(e.token, generation),
            "first_seen_at": e.first_seen_at.isoformat(),
        } for e in entries],
        "size": len(entries),
        "capacity": capacity,
    }


def resolve_handle(entries: List[CollectionEntry], handle: str, generation: int) -> Optional[str]:
    for e in entries:
        if token_handle(e.token, generation) == handle:
            return e.token
    return None
