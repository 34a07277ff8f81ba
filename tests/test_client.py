"""Tests for ResilientClient."""

import asyncio
import time

import httpx
import pytest

from catalog.services.client import ResilientClient
from catalog.services.connection import ConnectionState
from catalog.services.errors import NetworkError, ValidationError
from helpers import BASE_URL, json_response


class TestRequests:
    """URL building, decoding and status handling."""

    async def test_get_decodes_json(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({"ok": True}))

        response = await client.get("/api/benefits")

        assert response.status == 200
        assert response.data == {"ok": True}
        assert response.url == f"{BASE_URL}/api/benefits"
        assert counter.count == 1
        assert counter.requests[0].headers["accept"] == "application/json"

    async def test_undecodable_body_is_validation_error_and_not_retried(
        self, make_client
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                content=b"not-gzip",
                headers={"content-type": "application/json", "content-encoding": "gzip"},
            )

        client, counter, _ = make_client(handler)

        with pytest.raises(ValidationError):
            await client.get("/gzipped")

        assert counter.count == 1

    async def test_other_request_errors_become_network_error(self, make_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.TooManyRedirects("redirect loop", request=request)

        client, counter, _ = make_client(handler)

        with pytest.raises(NetworkError) as exc_info:
            await client.get("/loop")

        assert counter.count == 3
        assert exc_info.value.attempts == 3

    async def test_non_json_body_returned_as_text(self, make_client) -> None:
        client, _, _ = make_client(
            lambda r: httpx.Response(200, text="hello", headers={"content-type": "text/plain"})
        )

        response = await client.get("/plain")

        assert response.data == "hello"

    async def test_empty_json_body_is_none(self, make_client) -> None:
        client, _, _ = make_client(
            lambda r: httpx.Response(204, headers={"content-type": "application/json"})
        )

        assert (await client.delete("/api/item/1")).data is None

    async def test_post_sends_json_body(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({"created": True}, 201))

        response = await client.post("/api/items", json_data={"name": "x"})

        assert response.status == 201
        assert counter.requests[0].method == "POST"
        assert counter.requests[0].content == b'{"name":"x"}'

    async def test_build_url_sorts_params(self, make_client) -> None:
        client, _, _ = make_client(lambda r: json_response({}))

        url = client.build_url("api/benefits", {"page": 2, "limit": 10})

        assert url == f"{BASE_URL}/api/benefits?limit=10&page=2"
        assert client.build_url("https://other.test/x") == "https://other.test/x"

    async def test_not_found_is_network_error_with_status(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({"error": "nope"}, 404))

        with pytest.raises(NetworkError) as exc_info:
            await client.get("/missing")

        assert exc_info.value.status == 404
        assert exc_info.value.has_response
        assert counter.count == 3

    async def test_invalid_json_is_validation_error_and_not_retried(
        self, make_client
    ) -> None:
        client, counter, _ = make_client(
            lambda r: httpx.Response(
                200, content=b"{not json", headers={"content-type": "application/json"}
            )
        )

        with pytest.raises(ValidationError):
            await client.get("/broken")

        assert counter.count == 1


class TestRetries:
    """Retry budget and backoff delays."""

    async def test_three_failures_make_three_calls(self, make_client) -> None:
        client, counter, sleep = make_client(lambda r: json_response({}, 503))

        with pytest.raises(NetworkError) as exc_info:
            await client.get("/flaky")

        assert counter.count == 3
        assert exc_info.value.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_success_after_two_failures(self, make_client) -> None:
        statuses = iter([500, 502, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            return json_response({"status": status}, status)

        client, counter, sleep = make_client(handler)

        response = await client.get("/flaky")

        assert response.data == {"status": 200}
        assert counter.count == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_delay_capped_by_max_delay(self, make_client) -> None:
        client, _, sleep = make_client(
            lambda r: json_response({}, 500),
            maxAttempts=5,
            baseDelayMs=1000,
            maxDelayMs=3000,
        )

        with pytest.raises(NetworkError):
            await client.get("/down")

        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]

    async def test_passed_deadline_makes_no_calls_and_no_sleeps(self, make_client) -> None:
        client, counter, sleep = make_client(lambda r: json_response({}))

        with pytest.raises(NetworkError) as exc_info:
            await client.get("/late", deadline=time.monotonic() - 1)

        assert counter.count == 0
        assert sleep.delays == []
        assert exc_info.value.attempts == 1

    async def test_backoff_capped_by_time_left_before_deadline(self, make_client) -> None:
        client, _, sleep = make_client(lambda r: json_response({}, 503))

        with pytest.raises(NetworkError):
            await client.get("/flaky", deadline=time.monotonic() + 0.5)

        assert sleep.delays
        assert all(delay <= 0.5 for delay in sleep.delays)


class TestConnectionTracking:
    """Connection state inferred from request outcomes."""

    async def test_transport_error_goes_offline(self, make_client) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, counter, _ = make_client(handler)

        with pytest.raises(NetworkError) as exc_info:
            await client.get("/unreachable")

        assert counter.count == 3
        assert not exc_info.value.has_response
        assert client.connection_state() == ConnectionState.OFFLINE

    async def test_timeout_degrades(self, make_client) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.5)
            return json_response({})

        client, _, _ = make_client(handler, requestTimeoutMs=30)

        with pytest.raises(NetworkError):
            await client.get("/slow")

        assert client.connection_state() == ConnectionState.DEGRADED

    async def test_slow_then_fast_response(self, make_client) -> None:
        delays = iter([0.06, 0.0])

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(next(delays))
            return json_response({})

        client, _, _ = make_client(handler, slowThresholdMs=20, dedupWindowMs=0)
        seen = []
        client.connection.subscribe(seen.append)

        await client.get("/one")
        assert client.connection_state() == ConnectionState.DEGRADED

        await client.get("/one")
        assert client.connection_state() == ConnectionState.ONLINE
        assert seen == [ConnectionState.DEGRADED, ConnectionState.ONLINE]

    async def test_external_signals(self, make_client) -> None:
        client, _, _ = make_client(lambda r: json_response({}))

        client.notify_network_down()
        assert client.connection_state() == ConnectionState.OFFLINE

        # A successful request alone does not bring the client back online
        await client.get("/ping")
        assert client.connection_state() == ConnectionState.OFFLINE

        client.notify_connectivity_restored()
        assert client.connection_state() == ConnectionState.ONLINE


class TestDeduplication:
    """Concurrent identical requests collapse into one network call."""

    async def test_concurrent_identical_requests_share_one_call(
        self, make_client
    ) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            return json_response([1, 2, 3])

        client, counter, _ = make_client(handler)

        responses = await asyncio.gather(
            *(client.get("/api/benefits", params={"limit": 10}) for _ in range(4))
        )

        assert counter.count == 1
        assert all(r.data == [1, 2, 3] for r in responses)

    async def test_different_bodies_are_not_deduplicated(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({}))

        await asyncio.gather(
            client.post("/api/items", json_data={"n": 1}),
            client.post("/api/items", json_data={"n": 2}),
        )

        assert counter.count == 2

    async def test_trailing_request_reuses_result_within_window(
        self, make_client
    ) -> None:
        client, counter, _ = make_client(lambda r: json_response({"n": counter.count}))

        first = await client.get("/api/banks")
        second = await client.get("/api/banks")

        assert counter.count == 1
        assert first.data == second.data

    async def test_zero_window_makes_a_new_call(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({}), dedupWindowMs=0)

        await client.get("/api/banks")
        await client.get("/api/banks")

        assert counter.count == 2

    async def test_clear_in_flight_forces_new_call(self, make_client) -> None:
        client, counter, _ = make_client(lambda r: json_response({}))

        await client.get("/api/banks")
        client.clear_in_flight()
        await client.get("/api/banks")

        assert counter.count == 2

    def test_request_key_ignores_header_case_and_order(self) -> None:
        a = ResilientClient.request_key("get", "/x", {"A": "1", "b": "2"}, None)
        b = ResilientClient.request_key("GET", "/x", {"B": "2", "a": "1"}, None)

        assert a == b
        assert a != ResilientClient.request_key("GET", "/x", {"a": "1"}, "body")
