from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple


class StubResponse:
    def __init__(self, status: int, payload: Optional[dict] = None, text: str = "") -> None:
        self.status = status
        self._payload = payload
        self._text = text

    async def json(self, content_type: Optional[str] = None) -> dict:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    async def text(self) -> str:
        return self._text


class StubRequestContext:
    def __init__(self, response: StubResponse, delay: float) -> None:
        self._response = response
        self._delay = delay

    async def __aenter__(self) -> StubResponse:
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._response

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class StubSession:
    """Replays queued responses per (method, url); the last response repeats."""

    def __init__(
        self,
        routes: Dict[Tuple[str, str], List[StubResponse]],
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.routes = {key: list(value) for key, value in routes.items()}
        self.delays = delays or {}
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, headers=None, json=None) -> StubRequestContext:
        self.calls.append({"method": method, "url": url, "headers": headers or {}, "json": json})
        queue = self.routes[(method, url.split("?", 1)[0])]
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        return StubRequestContext(response, self.delays.get(method, 0.0))

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call["method"] == method)
