"""Tests for the IPFS client (network faked with httpx.MockTransport)."""
import base64
import json
from typing import Callable, List
from unittest.mock import AsyncMock, call

import httpx
import pytest

from weaver.config import IPFSSecrets, IPFSSettings, StrategySettings
from weaver.errors import ContentAddressUploadFailed
from weaver.ipfs.client import DEFAULT_ORIGIN, IPFSClient, build_default_strategies
from weaver.ipfs.schemas import AuthStrategy

NODE = "http://ipfs.test:5001"


def strategy(name: str) -> AuthStrategy:
    return AuthStrategy(name=name, headers={"X-Strategy": name})


THREE = [strategy("one"), strategy("two"), strategy("three")]


class Recorder:
    """MockTransport handler that records every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def adds(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/v0/add"]

    def pins(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/v0/pin/add"]


def added(cid: str = "QmTest", size: str = "42") -> httpx.Response:
    return httpx.Response(200, json={"Name": "photo.png", "Hash": cid, "Size": size})


def make_client(recorder: Recorder, **kwargs) -> IPFSClient:
    kwargs.setdefault("strategies", THREE)
    kwargs.setdefault("sleep", AsyncMock())
    return IPFSClient(NODE, transport=httpx.MockTransport(recorder), **kwargs)


class TestUpload:
    @pytest.mark.asyncio
    async def test_falls_through_403_to_third_strategy(self):
        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(200, json={"Pins": ["QmTest"]})
            if request.headers["X-Strategy"] in ("one", "two"):
                return httpx.Response(403, text="forbidden")
            return added()

        recorder = Recorder(handler)
        client = make_client(recorder)

        result = await client.upload(b"hello", "photo.png", "image/png")

        assert result.cid == "QmTest"
        assert result.strategy == "three"
        assert result.attempt == 1
        assert result.size == 42
        assert result.pinned is True
        assert result.url == "https://ipfs.io/ipfs/QmTest"
        assert client.last_strategy == "three"
        assert [r.headers["X-Strategy"] for r in recorder.adds()] == ["one", "two", "three"]
        client._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payload_and_query_reused_for_every_attempt(self):
        def handler(request):
            if request.headers.get("X-Strategy") == "three":
                return added()
            return httpx.Response(403)

        recorder = Recorder(handler)
        await make_client(recorder, pin_files=False).upload(b"hello-bytes", "a.txt", "text/plain")

        for request in recorder.adds():
            assert b"hello-bytes" in request.content
            assert request.url.params["hash"] == "sha2-256"
            assert "pin" not in request.url.params
        assert recorder.pins() == []

    @pytest.mark.asyncio
    async def test_pin_query_when_pinning(self):
        recorder = Recorder(lambda r: added() if r.url.path == "/api/v0/add" else httpx.Response(200))
        await make_client(recorder).upload(b"x", "a.txt")

        assert recorder.adds()[0].url.params["pin"] == "true"
        pin = recorder.pins()[0]
        assert pin.url.params["arg"] == "QmTest"
        assert pin.url.params["recursive"] == "true"

    @pytest.mark.asyncio
    async def test_winning_strategy_is_tried_first_next_time(self):
        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(200)
            if request.headers["X-Strategy"] == "two":
                return added()
            return httpx.Response(403)

        recorder = Recorder(handler)
        client = make_client(recorder)
        await client.upload(b"a", "a.txt")
        first_round = len(recorder.adds())
        await client.upload(b"b", "b.txt")

        second = recorder.adds()[first_round:]
        assert [r.headers["X-Strategy"] for r in second] == ["two"]

    @pytest.mark.asyncio
    async def test_no_caching_when_disabled(self):
        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(200)
            if request.headers["X-Strategy"] == "two":
                return added()
            return httpx.Response(403)

        recorder = Recorder(handler)
        client = make_client(recorder, cache_winning_strategy=False)
        await client.upload(b"a", "a.txt")
        await client.upload(b"b", "b.txt")

        assert [r.headers["X-Strategy"] for r in recorder.adds()] == ["one", "two", "one", "two"]

    @pytest.mark.asyncio
    async def test_exponential_backoff_between_rounds(self):
        recorder = Recorder(lambda r: httpx.Response(500, text="down"))
        client = make_client(recorder, retries=3)

        with pytest.raises(ContentAddressUploadFailed) as exc_info:
            await client.upload(b"x", "a.txt")

        assert len(recorder.adds()) == 9
        assert client._sleep.await_args_list == [call(2), call(4)]
        assert "HTTP 500" in exc_info.value.technical_detail

    @pytest.mark.asyncio
    async def test_succeeds_on_later_attempt(self):
        attempts = {"n": 0}

        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(200)
            attempts["n"] += 1
            return added() if attempts["n"] > 3 else httpx.Response(502)

        client = make_client(Recorder(handler), retries=2)
        result = await client.upload(b"x", "a.txt")

        assert result.attempt == 2
        assert result.strategy == "one"
        client._sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_transport_errors_move_to_next_strategy(self):
        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(200)
            if request.headers["X-Strategy"] == "one":
                raise httpx.ConnectTimeout("timed out", request=request)
            return added()

        result = await make_client(Recorder(handler)).upload(b"x", "a.txt")
        assert result.strategy == "two"

    @pytest.mark.asyncio
    async def test_malformed_response_is_a_failure(self):
        def handler(request):
            if request.headers["X-Strategy"] == "one":
                return httpx.Response(200, json={"unexpected": True})
            return added()

        result = await make_client(Recorder(handler), pin_files=False).upload(b"x", "a.txt")
        assert result.strategy == "two"

    @pytest.mark.asyncio
    async def test_non_object_add_response_is_a_failure(self):
        def handler(request):
            if request.headers["X-Strategy"] == "one":
                return httpx.Response(200, json=[{"Hash": "QmWrong"}])
            return added()

        result = await make_client(Recorder(handler), pin_files=False).upload(b"x", "a.txt")
        assert result.strategy == "two"
        assert result.cid == "QmTest"

    @pytest.mark.asyncio
    async def test_pin_failure_is_reported_not_raised(self):
        def handler(request):
            if request.url.path == "/api/v0/pin/add":
                return httpx.Response(500, text="pin error")
            return added()

        result = await make_client(Recorder(handler)).upload(b"x", "a.txt")

        assert result.cid == "QmTest"
        assert result.pinned is False
        assert result.pin_error == "HTTP 500"


class TestHelpers:
    def test_gateway_url_template(self):
        client = IPFSClient(NODE, gateway_url="https://gw.test/ipfs/{cid}?download=1")
        assert client.gateway_url("Qm1") == "https://gw.test/ipfs/Qm1?download=1"

    def test_gateway_url_prefix(self):
        client = IPFSClient(NODE, gateway_url="https://gw.test/ipfs/")
        assert client.gateway_url("Qm1") == "https://gw.test/ipfs/Qm1"

    def test_retries_must_be_positive(self):
        with pytest.raises(ValueError):
            IPFSClient(NODE, retries=0)

    def test_default_strategies_without_credentials(self):
        strategies = build_default_strategies()
        assert [s.name for s in strategies] == ["standard", "with_origin", "custom_headers"]
        assert strategies[1].headers["Origin"] == DEFAULT_ORIGIN

    def test_empty_origin_drops_origin_strategy(self):
        names = [s.name for s in build_default_strategies(origin="")]
        assert names == ["standard", "custom_headers"]

    def test_default_settings_keep_origin_strategy(self):
        client = IPFSClient.from_settings(IPFSSettings(), IPFSSecrets())
        assert [s.name for s in client.strategies] == ["standard", "with_origin", "custom_headers"]

    def test_default_strategies_with_credentials(self):
        strategies = build_default_strategies(
            origin="https://app.test", api_key="k", basic_username="u", basic_password="p",
        )
        assert [s.name for s in strategies] == [
            "standard", "with_origin", "bearer_token", "basic_auth", "custom_headers",
        ]
        assert strategies[1].headers["Origin"] == "https://app.test"
        assert strategies[2].headers["Authorization"] == "Bearer k"
        expected = "Basic " + base64.b64encode(b"u:p").decode()
        assert strategies[3].headers["Authorization"] == expected

    def test_from_settings(self):
        settings = IPFSSettings(
            node_url=NODE,
            retries=2,
            strategies=[StrategySettings(name="custom", headers={"X-Key": "1"})],
        )
        client = IPFSClient.from_settings(settings, IPFSSecrets(api_key="ignored"))
        assert client.retries == 2
        assert [s.name for s in client.strategies] == ["custom"]

    def test_from_settings_builds_defaults_from_secrets(self):
        client = IPFSClient.from_settings(IPFSSettings(), IPFSSecrets(api_key="k"))
        assert "bearer_token" in [s.name for s in client.strategies]


class TestPin:
    @pytest.mark.asyncio
    async def test_pin(self):
        recorder = Recorder(lambda r: httpx.Response(200, json={"Pins": ["Qm1"]}))
        result = await make_client(recorder).pin("Qm1")
        assert result.pinned is True
        assert recorder.pins()[0].url.params["arg"] == "Qm1"

    @pytest.mark.asyncio
    async def test_pin_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await make_client(Recorder(handler)).pin("Qm1")
        assert result.pinned is False
        assert "refused" in result.error


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy_node(self):
        def handler(request):
            if request.url.path == "/api/v0/version":
                return httpx.Response(200, content=json.dumps({"Version": "0.29.0"}))
            if request.method == "OPTIONS":
                return httpx.Response(200)
            if request.url.path == "/api/v0/add":
                return httpx.Response(400, text="file argument required")
            return httpx.Response(404)

        report = await make_client(Recorder(handler)).health_check()

        assert report.healthy is True
        assert report.version == "0.29.0"
        assert report.accessible is False
        assert report.summary() == {
            "basic_connectivity": False,
            "api_version": True,
            "cors_preflight": True,
            "upload_endpoint": True,
        }

    @pytest.mark.asyncio
    async def test_forbidden_upload_endpoint(self):
        def handler(request):
            if request.url.path == "/api/v0/add" and request.method == "POST":
                return httpx.Response(403)
            return httpx.Response(200, json={"Version": "0.29.0"})

        report = await make_client(Recorder(handler)).health_check()
        probe = report.probe("upload_endpoint")
        assert probe.success is False
        assert probe.status == 403
        assert report.accessible is True

    @pytest.mark.asyncio
    async def test_unreachable_node_never_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        report = await make_client(Recorder(handler)).health_check()

        assert report.healthy is False
        assert report.accessible is False
        assert len(report.probes) == 4
        assert not any(p.success for p in report.probes)

    @pytest.mark.asyncio
    async def test_garbage_version_body(self):
        def handler(request):
            if request.url.path == "/api/v0/version":
                return httpx.Response(200, text="not json")
            return httpx.Response(200)

        report = await make_client(Recorder(handler)).health_check()
        assert report.healthy is False
        assert report.probe("api_version").success is False

    @pytest.mark.asyncio
    async def test_non_object_version_body(self):
        def handler(request):
            if request.url.path == "/api/v0/version":
                return httpx.Response(200, json=["0.20.0"])
            return httpx.Response(200)

        report = await make_client(Recorder(handler)).health_check()
        assert report.healthy is False
        assert report.version is None
        assert "expected a JSON object" in report.probe("api_version").detail
