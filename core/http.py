from __future__ import annotations
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

RETRY_STATUS = {429, 500, 502, 503, 504}

class RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response

class AsyncHttpClient:
    """Client HTTP asynchrone. Seules les lectures sont rejouées, jamais les ordres."""

    def __init__(self, base_url: str, timeout: float = 2.5, headers: dict | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.client = httpx.AsyncClient(base_url=base_url.rstrip('/'), timeout=timeout,
                                        headers=headers or {}, transport=transport)

    @retry(stop=stop_after_attempt(3), wait=wait_fixed(0.2), reraise=True,
           retry=retry_if_exception_type((httpx.TransportError, RetryableStatus)))
    async def post_read(self, path: str, payload: dict, **kw) -> httpx.Response:
        """Lecture idempotente transportée en POST (proxy de signature) : rejouable."""
        resp = await self.client.post(path, json=payload, **kw)
        if resp.status_code in RETRY_STATUS:
            raise RetryableStatus(resp)
        return resp

    async def post_json(self, path: str, payload: dict, **kw) -> httpx.Response:
        # Pas de retry : un POST d'ordre ne doit jamais être resoumis spéculativement
        return await self.client.post(path, json=payload, **kw)

    async def close(self) -> None:
        await self.client.aclose()
