import pytest

from tokenwire.collector import Collector
from tokenwire.events import RequestObserved
from tokenwire.policy import Policy


def bearer_request(token, url="https://api.example.com/me", context_id="tab-1"):
    return RequestObserved.from_pairs(context_id, url, [
        ("Accept", "application/json"),
        ("Authorization", f"Bearer {token}"),
    ])


@pytest.fixture
def policy():
    return Policy()


@pytest.fixture
def collector(policy):
    return Collector(policy)
