from __future__ import annotations

from typing import Any, Mapping

import httpx


class WebhookClient:
    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> int:
        """Send one request and return the status code.

        Raises ``httpx.HTTPError`` on transport failures, timeouts and
        non-2xx responses.
        """
        verb = (method or "POST").upper()
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            follow_redirects=True,
        ) as client:
            if verb == "GET":
                response = await client.request(verb, url, headers=request_headers)
            else:
                response = await client.request(
                    verb, url, headers=request_headers, json=body
                )
        response.raise_for_status()
        return response.status_code
