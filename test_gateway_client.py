"""
Tests for the outbound gateway client and the retry policy.
"""

import asyncio
import json

import httpx
import pytest

from crm_bridge.errors import GatewayError
from crm_bridge.gateway_client import GatewayClient
from crm_bridge.retry import RetryPolicy, retry_async

NO_DELAY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


def make_client(handler) -> GatewayClient:
    return GatewayClient(
        "http://gateway.test/",
        api_key="key-123",
        retry_policy=NO_DELAY,
        transport=httpx.MockTransport(handler),
    )


class TestGatewayClient:
    def test_create_instance(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"instance": {"instanceName": "acme", "status": "created"}})

        async def scenario():
            client = make_client(handler)
            try:
                return await client.create_instance("acme", "http://crm.test/webhook/evolution/acme", ["MESSAGES_UPSERT"])
            finally:
                await client.close()

        result = asyncio.run(scenario())

        assert result["instance"]["instanceName"] == "acme"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/instance/create"
        assert request.headers["apikey"] == "key-123"
        body = json.loads(request.content)
        assert body["instanceName"] == "acme"
        assert body["webhook"]["url"] == "http://crm.test/webhook/evolution/acme"
        assert body["webhook"]["events"] == ["MESSAGES_UPSERT"]

    def test_retries_transient_status(self):
        """Test 503 responses are retried until the gateway recovers."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"instance": {"state": "open"}})

        async def scenario():
            client = make_client(handler)
            try:
                return await client.connection_state("acme")
            finally:
                await client.close()

        assert asyncio.run(scenario()) == "open"
        assert calls == ["/instance/connectionState/acme"] * 3

    def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(400, json={"message": "bad number"})

        async def scenario():
            client = make_client(handler)
            try:
                await client.send_text("acme", "5511999999999", "hello")
            finally:
                await client.close()

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    def test_transport_error_exhausts_retries(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            client = make_client(handler)
            try:
                await client.set_webhook("acme", "http://crm.test/webhook/evolution/acme")
            finally:
                await client.close()

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code is None
        assert len(calls) == NO_DELAY.max_attempts


class TestRetryPolicy:
    def test_exponential_delay_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)

        assert [policy.delay_for(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=0.5)

        for _ in range(50):
            assert 1.0 <= policy.delay_for(0) <= 3.0

    def test_retry_async_permanent_error(self):
        calls = []

        async def fn():
            calls.append(1)
            raise ValueError("permanent")

        with pytest.raises(ValueError):
            asyncio.run(retry_async(fn, NO_DELAY, retry_on=lambda e: False))

        assert len(calls) == 1
