import json
from typing import Any, List, Optional

import pytest

from claim_tool import RequestResult, Settings

SUCCESS_PHRASE = "Congratulations, the name is yours!!!"


def ok(body: Any, raw: Optional[str] = None, status: int = 200) -> RequestResult:
    return RequestResult(succeeded=True, http_status=status, body=body,
                         raw=raw if raw is not None else json.dumps(body))


def fail(status: int, body: Any = None) -> RequestResult:
    body = {} if body is None else body
    return RequestResult(succeeded=False, http_status=status, body=body,
                         raw=f"HTTP {status}: {json.dumps(body)}")


def confirmation_page(displayed: str, phrase: str = SUCCESS_PHRASE) -> str:
    return (
        "<html><body>"
        f"<h1>{phrase}</h1>"
        f'<p class="text-3xl font-instrumentSerif italic text-primary py-5">{displayed}<span>.id</span></p>'
        "</body></html>"
    )


def happy_path(username: str, amount: Any = 0, success_url: Optional[str] = None) -> List[RequestResult]:
    page = confirmation_page(username)
    complete_body = {"successUrl": success_url} if success_url else {}
    return [
        ok({"status": 1}),
        ok({"status": 1, "data": {"url": "https://checkout.test/c/pay/cs_123"}}),
        ok({"amountTotal": amount}),
        ok(complete_body),
        ok(page, raw=page),
    ]


class FakeClient:
    """Replays scripted results in order and records every call."""

    def __init__(self, results: List[RequestResult]):
        self.results = list(results)
        self.calls: List[dict] = []

    def send(self, url, payload=None, auth_header="", method="POST"):
        self.calls.append({"url": url, "payload": payload, "auth": auth_header, "method": method})
        if not self.results:
            raise AssertionError(f"unexpected request to {url}")
        return self.results.pop(0)


class MemoryLedger:
    def __init__(self):
        self.unavailable: List[str] = []
        self.registered: List[tuple] = []

    def mark_unavailable(self, username):
        self.unavailable.append(username)

    def record_registered(self, username, identifier):
        self.registered.append((username, identifier))


@pytest.fixture
def settings():
    return Settings(
        id_api_base="https://id.test/api/v1/id",
        checkout_api_base="https://pay.test/api/v1/payment-pages/for-checkout-session/",
        home_base="https://home.test/",
        discount_code="ZERO100",
        success_phrase=SUCCESS_PHRASE,
    )


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def sleeps():
    return []
