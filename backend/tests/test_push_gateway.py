import asyncio
import json

import httpx
import pytest

from conftest import make_notification
from notiserver.integrations.push_gateway import (
    GatewayInitError,
    HttpPushGateway,
    LoggingPushGateway,
    build_message,
)


@pytest.fixture
def credentials_file(tmp_path):
    path = tmp_path / "push.json"
    path.write_text(json.dumps({"api_key": "key-123"}), encoding="utf-8")
    return str(path)


def make_gateway(credentials_file, handler, endpoint="https://push.test/send"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPushGateway(credentials_file, endpoint, client=client)


def test_one_request_per_token_and_outcomes_are_counted(credentials_file):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((str(request.url), request.headers["Authorization"], body["message"]["token"]))
        if body["message"]["token"].startswith("bad"):
            return httpx.Response(400, json={"error": "invalid token"})
        return httpx.Response(200, json={"name": "ok"})

    gateway = make_gateway(credentials_file, handler)
    notification = make_notification("good-1", "bad-1", "good-2", id=7)

    async def scenario():
        try:
            return await gateway.send(notification)
        finally:
            await gateway.aclose()

    report = asyncio.run(scenario())

    assert report.success_count == 2
    assert report.failure_count == 1
    assert report.failed_tokens == ["bad-1"]
    assert sorted(token for _, _, token in seen) == ["bad-1", "good-1", "good-2"]
    assert {url for url, _, _ in seen} == {"https://push.test/send"}
    assert {auth for _, auth, _ in seen} == {"Bearer key-123"}


def test_transport_errors_count_as_failures(credentials_file):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = make_gateway(credentials_file, handler)
    report = asyncio.run(gateway.send(make_notification("a", "b")))

    assert (report.success_count, report.failure_count) == (0, 2)


def test_unexpected_error_fails_only_its_token(credentials_file):
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["message"]["token"] == "boom":
            raise RuntimeError("malformed response")
        return httpx.Response(200)

    gateway = make_gateway(credentials_file, handler)
    report = asyncio.run(gateway.send(make_notification("ok-1", "boom", "ok-2")))

    assert (report.success_count, report.failure_count) == (2, 1)
    assert report.failed_tokens == ["boom"]


def test_endpoint_from_credentials_overrides_default(tmp_path):
    path = tmp_path / "push.json"
    path.write_text(
        json.dumps({"api_key": "k", "endpoint": "https://other.test/v1/send"}), encoding="utf-8"
    )
    urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200)

    asyncio.run(make_gateway(str(path), handler).send(make_notification("a")))

    assert urls == ["https://other.test/v1/send"]


def test_missing_credentials_file_raises_init_error(tmp_path):
    gateway = make_gateway(str(tmp_path / "missing.json"), lambda r: httpx.Response(200))

    with pytest.raises(GatewayInitError):
        asyncio.run(gateway.send(make_notification("a")))


def test_credentials_without_api_key_raise_init_error(tmp_path):
    path = tmp_path / "push.json"
    path.write_text(json.dumps({"endpoint": "https://x.test"}), encoding="utf-8")
    gateway = make_gateway(str(path), lambda r: httpx.Response(200))

    with pytest.raises(GatewayInitError):
        asyncio.run(gateway.send(make_notification("a")))


def test_build_message_carries_payload_for_all_platforms():
    notification = make_notification(
        "tok",
        title="Sale",
        body="50% off",
        image_url="https://img.test/a.png",
        analytics_label="campaign-1",
        data={"screen": "offers"},
    )

    msg = build_message(notification, "tok")

    assert msg["token"] == "tok"
    assert msg["notification"] == {
        "title": "Sale",
        "body": "50% off",
        "image": "https://img.test/a.png",
    }
    assert msg["android"]["priority"] == "high"
    assert msg["apns"]["headers"] == {"apns-priority": "10"}
    assert msg["apns"]["payload"]["aps"]["sound"] == "default"
    assert msg["apns"]["payload"]["image-url"] == "https://img.test/a.png"
    assert msg["fcm_options"] == {"analytics_label": "campaign-1"}
    assert msg["data"] == {"screen": "offers"}


def test_logging_gateway_reports_every_token_failed():
    report = asyncio.run(LoggingPushGateway().send(make_notification("a", "b", "c")))

    assert (report.success_count, report.failure_count) == (0, 3)
    assert report.failed_tokens == ["a", "b", "c"]
