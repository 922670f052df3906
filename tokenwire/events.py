"""
Event variants flowing from the observation feed into the engine.

Feed events arrive from the proxy addon or the host; snapshot events are
the results of on-demand storage/cookie fetches.
"""

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class Header(_Event):
    name: str
    value: str


class StorageItem(_Event):
    key: str
    value: str
    storage_kind: Literal["localStorage", "sessionStorage"] = "localStorage"


class Cookie(_Event):
    name: str
    value: str
    domain: str = ""


class RequestObserved(_Event):
    type: Literal["request_observed"] = "request_observed"
    context_id: str
    url: str
    headers: List[Header] = []

    @classmethod
    def from_pairs(cls, context_id: str, url: str, pairs) -> "RequestObserved":
        return cls(context_id=context_id, url=url,
                   headers=[Header(name=n, value=v) for n, v in pairs])


class StorageSnapshotRequested(_Event):
    type: Literal["storage_snapshot_requested"] = "storage_snapshot_requested"
    context_id: str


class CookiesSnapshotRequested(_Event):
    type: Literal["cookies_snapshot_requested"] = "cookies_snapshot_requested"
    context_id: str
    url: str


class StorageSnapshot(_Event):
    type: Literal["storage_snapshot"] = "storage_snapshot"
    context_id: str
    origin: str = ""
    items: List[StorageItem] = []


class CookieSnapshot(_Event):
    type: Literal["cookie_snapshot"] = "cookie_snapshot"
    context_id: str
    url: str
    cookies: List[Cookie] = []


FeedEvent = Annotated[
    Union[RequestObserved, StorageSnapshotRequested, CookiesSnapshotRequested],
    Field(discriminator="type"),
]

ObservedEvent = Union[RequestObserved, StorageSnapshot, CookieSnapshot]
