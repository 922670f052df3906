"""
Token matcher - decides whether one observed event carries a token under a policy.

Stateless: the same event and policy always yield the same candidates.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import MatchFailure
from .events import CookieSnapshot, RequestObserved, StorageSnapshot
from .policy import DetectionKind, DetectionSource, Policy

BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE | re.DOTALL)

SESSION_HEADERS = ("x-session-token", "session-token", "x-session-id")

STORAGE_KEYWORDS = {
    DetectionKind.BEARER_HEADER: ("token", "access_token", "accesstoken", "auth_token", "authtoken", "bearer"),
    DetectionKind.SESSION_HEADER: ("session", "sessiontoken", "session_token", "sessionid", "session_id"),
}

COOKIE_KEYWORDS = {
    DetectionKind.BEARER_HEADER: ("token", "access_token", "auth_token", "bearer", "jwt"),
    DetectionKind.SESSION_HEADER: ("session", "sessionid", "session_id", "sid"),
}

# Storage and cookie values must be longer than this to count as a token
MIN_VALUE_LENGTH = 10


@dataclass(frozen=True)
class CandidateToken:
    value: str
    source_label: str


def _header_token(name: str, value: str, policy: Policy) -> Optional[str]:
    kind = policy.detection_kind
    if kind is DetectionKind.BEARER_HEADER:
        if name != "authorization":
            return None
        m = BEARER_RE.match(value)
        return m.group(1).strip() if m else None
    if kind is DetectionKind.SESSION_HEADER:
        return value if name in SESSION_HEADERS else None
    return value if name == policy.header_name.lower() else None


def match_headers(event: RequestObserved, policy: Policy) -> List[CandidateToken]:
    for header in event.headers:
        token = _header_token(header.name.lower(), header.value, policy)
        if token:
            return [CandidateToken(value=token, source_label=event.url)]
    return []


def _keywords(table: dict, policy: Policy) -> tuple:
    if policy.detection_kind is DetectionKind.CUSTOM_HEADER:
        return (policy.header_name.lower(),)
    return table[policy.detection_kind]


def _plausible(value: str) -> bool:
    return bool(value) and len(value) > MIN_VALUE_LENGTH


def match_storage(event: StorageSnapshot, policy: Policy) -> List[CandidateToken]:
    keywords = _keywords(STORAGE_KEYWORDS, policy)
    found = []
    for item in event.items:
        key = item.key.lower()
        if any(k in key for k in keywords) and _plausible(item.value):
            found.append(CandidateToken(value=item.value, source_label=f"{item.storage_kind}:{item.key}"))
    return found


def match_cookies(event: CookieSnapshot, policy: Policy) -> List[CandidateToken]:
    keywords = _keywords(COOKIE_KEYWORDS, policy)
    found = []
    for cookie in event.cookies:
        name = cookie.name.lower()
        if any(k in name for k in keywords) and _plausible(cookie.value):
            found.append(CandidateToken(value=cookie.value, source_label=f"cookie:{cookie.name}"))
    return found


_DISPATCH = {
    RequestObserved: (DetectionSource.REQUEST_HEADERS, match_headers),
    StorageSnapshot: (DetectionSource.BROWSER_STORAGE, match_storage),
    CookieSnapshot: (DetectionSource.COOKIES, match_cookies),
}


def match_all(event, policy: Policy) -> List[CandidateToken]:
    """All candidates an event yields under the policy, in event order.

    Events whose kind does not match the policy's detection source yield
    nothing. Anything that is not a known observed event raises MatchFailure.
    """
    try:
        source, fn = _DISPATCH[type(event)]
    except KeyError:
        raise MatchFailure(f"Unsupported event type: {type(event).__name__}") from None
    if source is not policy.detection_source:
        return []
    return fn(event, policy)


def match(event, policy: Policy) -> Optional[CandidateToken]:
    candidates = match_all(event, policy)
    return candidates[0] if candidates else None
