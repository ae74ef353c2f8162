from __future__ import annotations

import unittest
from typing import Any

import aiohttp

from config import HttpSettings
from utils.errors import SecurityCheckError, TransportError
from utils.http_client import HttpResult, ResilientHttpClient


class _FakeResponse:
    def __init__(self, status: int, payload: Any = None, body: str = "", headers: dict | None = None) -> None:
        self.status = status
        self._payload = payload
        self._body = body
        self.headers = headers or {}

    async def json(self, content_type: str | None = None) -> Any:
        return self._payload

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[tuple[str, str, dict]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append((method, url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


class ResilientHttpClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, outcomes: list[Any], **settings: Any) -> tuple[ResilientHttpClient, _FakeSession]:
        client = ResilientHttpClient(HttpSettings(cooldown_429_seconds=0.0, **settings), timeout_seconds=5)
        session = _FakeSession(outcomes)
        client._session = session
        client._compute_delay = lambda attempt, status: 0.0
        return client, session

    async def test_retries_server_errors_then_succeeds(self) -> None:
        client, session = self._client(
            [_FakeResponse(503, body="busy"), _FakeResponse(200, {"pairs": []})], retry_attempts=3
        )
        result = await client.get_json("https://api.example/search", source="dexscreener", params={"q": "SOL"})

        self.assertTrue(result.ok)
        self.assertEqual(result.data, {"pairs": []})
        self.assertEqual(len(session.requests), 2)
        self.assertEqual(session.requests[0][2]["params"], {"q": "SOL"})
        stats = client.snapshot_stats()["dexscreener"]
        self.assertEqual((stats["ok"], stats["retries"]), (1, 1))

    async def test_client_errors_are_not_retried(self) -> None:
        client, session = self._client([_FakeResponse(400, body='{"error":"No routes found"}')], retry_attempts=3)
        result = await client.get_json("https://api.example/quote")

        self.assertFalse(result.ok)
        self.assertEqual(result.status, 400)
        self.assertFalse(result.retryable)
        self.assertIn("No routes found", result.body)
        self.assertEqual(len(session.requests), 1)

    async def test_rate_limited_response_counts_and_retries(self) -> None:
        client, _ = self._client([_FakeResponse(429), _FakeResponse(200, {"ok": True})], retry_attempts=2)
        result = await client.get_json("https://api.example/x", source="rugcheck")

        self.assertTrue(result.ok)
        self.assertEqual(client.snapshot_stats()["rugcheck"]["rate_limited"], 1)

    async def test_network_errors_exhaust_attempts(self) -> None:
        client, session = self._client(
            [aiohttp.ClientConnectionError("reset"), aiohttp.ClientConnectionError("reset")], retry_attempts=2
        )
        result = await client.post_json("https://rpc.example", {"jsonrpc": "2.0"}, source="rpc")

        self.assertFalse(result.ok)
        self.assertEqual(result.status, 0)
        self.assertTrue(result.retryable)
        self.assertTrue(result.error.startswith("http_error:"))
        self.assertEqual(session.requests[0][0], "POST")
        self.assertEqual(session.requests[0][2]["json"], {"jsonrpc": "2.0"})

    async def test_close_closes_session(self) -> None:
        client, session = self._client([])
        await client.close()
        self.assertTrue(session.closed)


class HttpResultTests(unittest.TestCase):
    def test_raise_for_transport_uses_error_class(self) -> None:
        HttpResult(True, 200, {}).raise_for_transport("rugcheck")
        with self.assertRaises(SecurityCheckError) as ctx:
            HttpResult(False, 502, None, error="http_status_502").raise_for_transport(
                "rugcheck", error_cls=SecurityCheckError
            )
        self.assertIsInstance(ctx.exception, TransportError)
        self.assertEqual(ctx.exception.status, 502)


if __name__ == "__main__":
    unittest.main()
