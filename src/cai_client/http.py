from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import httpx
from loguru import logger

from .config import ClientConfig
from .errors import (
    CaiAuthenticationError,
    CaiConnectionError,
    CaiDecodingError,
    CaiServerError,
    CaiTimeoutError,
)
from .protocol import extract_rest_error


class HttpRequester:
    """Issue REST requests and decode their JSON bodies.

    Every verb returns the decoded JSON object or raises an error from the
    client taxonomy; service error envelopes inside successful responses are
    raised as `CaiServerError`.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.http_timeout),
                proxy=self._config.proxy,
                transport=self._transport,
                trust_env=self._transport is None,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            client = self._client
            self._client = None
            await client.aclose()

    async def get(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        include_web_next_auth: bool = False,
    ) -> dict[str, Any]:
        return await self.request(
            "GET",
            url,
            params=params,
            headers=headers,
            include_web_next_auth=include_web_next_auth,
        )

    async def post(
        self,
        url: str,
        *,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
        include_web_next_auth: bool = False,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            url,
            json_body=json_body,
            headers=headers,
            include_web_next_auth=include_web_next_auth,
        )

    async def put(
        self,
        url: str,
        *,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        return await self.request("PUT", url, json_body=json_body, headers=headers)

    async def patch(
        self,
        url: str,
        *,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        return await self.request("PATCH", url, json_body=json_body, headers=headers)

    async def delete(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        return await self.request("DELETE", url, headers=headers)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
        include_web_next_auth: bool = False,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON object."""
        merged_headers = self._config.http_headers(include_web_next_auth=include_web_next_auth)
        if headers:
            merged_headers.update(headers)

        logger.debug("http.request method={} url={}", method, url)
        try:
            response = await self.client.request(
                method,
                url,
                params=dict(params) if params is not None else None,
                json=json_body,
                headers=merged_headers,
            )
        except httpx.TimeoutException as exc:
            raise CaiTimeoutError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise CaiConnectionError(
                f"{method} {url} failed ({exc.__class__.__name__}: {exc})"
            ) from exc

        return self._handle_response(method, url, response)

    async def probe(self, url: str) -> int:
        """GET `url` and return the status code without decoding the body."""
        logger.debug("http.probe url={}", url)
        try:
            response = await self.client.get(url, headers=self._config.http_headers())
        except httpx.TimeoutException as exc:
            raise CaiTimeoutError(f"GET {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise CaiConnectionError(f"GET {url} failed ({exc.__class__.__name__}: {exc})") from exc
        return response.status_code

    def _handle_response(self, method: str, url: str, response: httpx.Response) -> dict[str, Any]:
        body = _decode_body(response)

        if response.status_code in (401, 403):
            message = _error_message(body) or f"{method} {url} was rejected as unauthorized"
            raise CaiAuthenticationError(message, status=response.status_code)

        if response.status_code >= 400:
            message = _error_message(body) or f"{method} {url} failed with status {response.status_code}"
            raise CaiServerError(message, status=response.status_code)

        if body is None:
            return {}
        if not isinstance(body, dict):
            raise CaiDecodingError(f"{method} {url} returned a non-object JSON body")

        rest_error = extract_rest_error(body)
        if rest_error is not None:
            message, is_auth_failure = rest_error
            error_cls = CaiAuthenticationError if is_auth_failure else CaiServerError
            raise error_cls(message, status=response.status_code, command=body.get("command"))

        return body


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        if response.status_code >= 400:
            return None
        raise CaiDecodingError(
            f"{response.request.method} {response.request.url} returned invalid JSON"
        ) from exc


def _error_message(body: Any) -> str | None:
    rest_error = extract_rest_error(body)
    if rest_error is not None:
        return rest_error[0]
    return None
