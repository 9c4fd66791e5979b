"""Shared REST client for ledger and storefront connectors.

Low-level HTTP client used by every connector. Handles authentication
headers, bounded timeouts and error mapping. It deliberately does not retry:
retries belong to the error recovery engine, which needs to see every failure
to classify and persist it.
"""

from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import json

import aiohttp

from core.observability.logging import get_logger

logger = get_logger(__name__)


class ConnectorError(Exception):
    """Base exception for remote API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class AuthenticationError(ConnectorError):
    """Authentication failed (401/403)."""
    pass


class NotFoundError(ConnectorError):
    """Resource not found (404)."""
    pass


class RateLimitError(ConnectorError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str, retry_after: int = 60, response_body: str = ""):
        super().__init__(message, 429, response_body)
        self.retry_after = retry_after


class ValidationError(ConnectorError):
    """Request rejected by the remote API (400/422)."""
    pass


class ConnectorTimeoutError(ConnectorError):
    """The remote call did not complete within the configured timeout."""
    pass


class ConfigurationError(ConnectorError):
    """Connector is missing required configuration (URL, credentials, location)."""
    pass


HeadersProvider = Callable[[], Awaitable[Dict[str, str]]]
UnauthorizedHook = Callable[[], Awaitable[bool]]


class RestClient:
    """HTTP client for a JSON REST API.

    Provides:
    - Authenticated API calls (static headers, basic auth or a headers provider)
    - Bounded per-call timeout surfaced as ConnectorTimeoutError
    - One token refresh on 401/403 when an on_unauthorized hook is set
    - Status code to exception mapping

    Usage:
        client = RestClient("https://shop.example.com/wp-json/wc/v3/", basic_auth=("ck", "cs"))
        orders = await client.get("orders", params={"per_page": "100"})
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        headers_provider: Optional[HeadersProvider] = None,
        basic_auth: Optional[tuple] = None,
        on_unauthorized: Optional[UnauthorizedHook] = None,
        timeout_seconds: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL; relative paths are joined onto it
            headers: Static headers sent with every request
            headers_provider: Coroutine returning extra headers (e.g. a bearer token)
            basic_auth: (username, password) for HTTP basic auth
            on_unauthorized: Coroutine called once on 401/403; returns True if a retry makes sense
            timeout_seconds: Total timeout for one call
            session: Existing aiohttp session to reuse (not closed by this client)
        """
        if not base_url:
            raise ConfigurationError("Base URL is not configured")
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        }
        self.headers_provider = headers_provider
        self.basic_auth = aiohttp.BasicAuth(*basic_auth) if basic_auth else None
        self.on_unauthorized = on_unauthorized
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _build_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return self.base_url + path.lstrip("/")

    async def _get_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.headers_provider:
            headers.update(await self.headers_provider())
        return headers

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
    ) -> Any:
        """Make an API request.

        Args:
            method: HTTP method
            path: Path relative to base_url, or a full URL
            params: Query parameters
            data: JSON body

        Returns:
            Decoded JSON response ({} for empty bodies)

        Raises:
            AuthenticationError: 401/403 after the optional refresh
            NotFoundError: 404
            RateLimitError: 429
            ValidationError: 400/422
            ConnectorTimeoutError: call exceeded timeout_seconds
            ConnectorError: any other failure
        """
        url = self._build_url(path)
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        refreshed = False

        while True:
            headers = await self._get_headers()
            try:
                async with session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=data,
                    auth=self.basic_auth,
                    timeout=timeout,
                ) as response:
                    response_text = await response.text()
                    status = response.status
                    retry_after_header = response.headers.get("Retry-After")
            except asyncio.TimeoutError:
                raise ConnectorTimeoutError(
                    f"Request timed out after {self.timeout_seconds}s: {method} {url}"
                )
            except aiohttp.ClientError as e:
                raise ConnectorError(f"Network error calling {method} {url}: {e}")

            if status < 400:
                if status == 204 or not response_text:
                    return {}
                try:
                    return json.loads(response_text)
                except ValueError:
                    raise ConnectorError(
                        f"Invalid JSON from {method} {url}", status, response_text
                    )

            if status in (401, 403):
                if not refreshed and self.on_unauthorized is not None:
                    refreshed = True
                    logger.warning(f"Got {status} from {url}, attempting token refresh...")
                    if await self.on_unauthorized():
                        continue
                raise AuthenticationError(
                    f"Unauthorized ({status}): {response_text[:500]}",
                    status,
                    response_text,
                )

            if status == 404:
                raise NotFoundError(f"Resource not found (404): {url}", status, response_text)

            if status == 429:
                try:
                    retry_after = int(retry_after_header) if retry_after_header else 60
                except ValueError:
                    retry_after = 60
                raise RateLimitError(
                    f"Rate limit exceeded (429 too many requests): {url}",
                    retry_after,
                    response_text,
                )

            if status in (400, 422):
                raise ValidationError(
                    f"Validation error ({status}): {response_text[:500]}",
                    status,
                    response_text,
                )

            raise ConnectorError(
                f"API error {status}: {response_text[:500]}",
                status,
                response_text,
            )

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, data: Any, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, params=params, data=data)

    async def put(self, path: str, data: Any) -> Any:
        return await self.request("PUT", path, data=data)

    async def get_all_pages(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = 100,
        page_param: str = "page",
        size_param: str = "per_page",
        max_pages: int = 100,
    ) -> list:
        """List all records from a page-numbered endpoint.

        Args:
            path: Endpoint path
            params: Extra query parameters
            page_size: Records per page
            page_param: Name of the page-number parameter
            size_param: Name of the page-size parameter
            max_pages: Safety cap on pages fetched

        Returns:
            All records across pages
        """
        all_results = []
        page = 1

        while page <= max_pages:
            query = dict(params or {})
            query[page_param] = str(page)
            query[size_param] = str(page_size)

            results = await self.get(path, params=query)
            if isinstance(results, dict):
                results = results.get("data", [])
            if not results:
                break

            all_results.extend(results)

            if len(results) < page_size:
                break
            page += 1

        return all_results
