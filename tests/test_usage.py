import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from beadrunner.config import UsageConfig
from beadrunner.usage import (
    AdmissionController,
    CredentialError,
    CredentialStore,
    FileCredentialStore,
    parse_utilization,
    token_from_credentials,
)


class StaticCredentials(CredentialStore):
    def __init__(self, token: str | None = "tok-123") -> None:
        self.token = token
        self.reads = 0

    def read_token(self) -> str:
        self.reads += 1
        if self.token is None:
            raise CredentialError("No OAuth token found")
        return self.token


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _controller(
    handler: Any,
    *,
    threshold: int = 70,
    credentials: CredentialStore | None = None,
    clock: FakeClock | None = None,
) -> AdmissionController:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return AdmissionController(
        UsageConfig(threshold=threshold, cache_seconds=300.0),
        credentials=credentials or StaticCredentials(),
        client=client,
        clock=clock or FakeClock(),
    )


def _usage(five_hour: Any, seven_day: Any) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        return httpx.Response(
            200,
            json={"five_hour": {"utilization": five_hour}, "seven_day": {"utilization": seven_day}},
        )

    return handler


def test_over_when_either_window_reaches_threshold() -> None:
    assert _controller(_usage(75, 10)).check_usage() == "over"
    assert _controller(_usage(10, 70)).check_usage() == "over"
    assert _controller(_usage(50, 60)).check_usage() == "ok"


def test_request_carries_oauth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    controller = _controller(handler)

    assert controller.check_usage() == "ok"
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/api/oauth/usage"
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert request.headers["anthropic-beta"] == "oauth-2025-04-20"


def test_missing_windows_count_as_zero() -> None:
    assert parse_utilization({}) == (0.0, 0.0)
    assert parse_utilization({"five_hour": None, "seven_day": {"utilization": None}}) == (0.0, 0.0)
    assert parse_utilization({"five_hour": {"utilization": 12.5}}) == (12.5, 0.0)
    with pytest.raises(ValueError):
        parse_utilization({"five_hour": {"utilization": "high"}})
    with pytest.raises(ValueError):
        parse_utilization([1, 2])


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, text="boom"),
        lambda request: httpx.Response(401, json={"error": "expired"}),
        lambda request: httpx.Response(200, text="<html>not json</html>"),
        lambda request: httpx.Response(200, json={"five_hour": {"utilization": "n/a"}}),
    ],
    ids=["server-error", "unauthorized", "not-json", "bad-utilization"],
)
def test_unreadable_usage_fails_open(handler: Any) -> None:
    controller = _controller(handler)

    assert controller.check_usage() == "ok"
    assert controller.snapshot is None


def test_network_error_fails_open() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    assert _controller(handler).check_usage() == "ok"


def test_missing_credentials_fail_open_without_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    controller = _controller(handler, credentials=StaticCredentials(token=None))

    assert controller.check_usage() == "ok"
    assert calls == []


def test_snapshot_is_cached_until_ttl_or_invalidation() -> None:
    calls: list[httpx.Request] = []
    values = iter([80, 20, 20])

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"five_hour": {"utilization": next(values)}})

    clock = FakeClock()
    controller = _controller(handler, clock=clock)

    assert controller.check_usage() == "over"
    clock.now = 299.0
    assert controller.check_usage() == "over"
    assert len(calls) == 1

    controller.invalidate()
    assert controller.check_usage() == "ok"
    assert len(calls) == 2

    clock.now = 700.0
    assert controller.check_usage() == "ok"
    assert len(calls) == 3


def test_zero_threshold_disables_the_check() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"five_hour": {"utilization": 100}})

    credentials = StaticCredentials()
    controller = _controller(handler, threshold=0, credentials=credentials)

    assert controller.check_usage() == "ok"
    assert calls == []
    assert credentials.reads == 0


def test_token_from_credentials() -> None:
    raw = json.dumps({"claudeAiOauth": {"accessToken": " abc "}})
    assert token_from_credentials(raw) == "abc"
    for bad in ["not json", "{}", json.dumps({"claudeAiOauth": {"accessToken": ""}})]:
        with pytest.raises(CredentialError):
            token_from_credentials(bad)


def test_file_credential_store(tmp_path: Path) -> None:
    path = tmp_path / ".credentials.json"
    store = FileCredentialStore(path)
    with pytest.raises(CredentialError):
        store.read_token()

    path.write_text(json.dumps({"claudeAiOauth": {"accessToken": "file-token"}}), encoding="utf-8")
    assert store.read_token() == "file-token"


def test_snapshot_describe() -> None:
    controller = _controller(_usage(42.5, 7))
    snapshot = controller.fetch_snapshot()

    assert snapshot is not None
    assert snapshot.describe() == "5h=42.5% 7d=7%"
    assert snapshot.result == "ok"
