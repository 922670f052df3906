"""Error taxonomy shared by the engine and the HTTP surfaces."""

from typing import List, Optional


class TokenwireError(Exception):
    """Base class for all tokenwire errors."""


class PolicyValidationError(TokenwireError):
    """Rejected policy input. The active policy is left unchanged."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


class MatchFailure(TokenwireError):
    """Malformed or unexpected event shape; treated as no match."""


class ScanFailure(TokenwireError):
    """On-demand storage/cookie fetch failed; the collection is unchanged."""
