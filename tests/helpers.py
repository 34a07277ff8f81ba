from typing import Any, Callable

import httpx

BASE_URL = "https://api.test"


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class CallCounter:
    """Wraps a MockTransport handler and counts requests."""

    def __init__(self, handler: Callable[[httpx.Request], Any]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if hasattr(response, "__await__"):
            response = await response
        return response

    @property
    def count(self) -> int:
        return len(self.requests)


def json_response(data: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json=data)
