"""
Base Connector Class

All provider clients inherit from this base class.
Provides the shared HTTP request path, pagination parsing and the error types
callers use to classify remote failures.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.utils.logger import log


class ConnectorError(Exception):
    """Base error for provider clients"""


class ProviderError(ConnectorError):
    """A remote provider rejected a request or returned an API-level error"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CouponCreationError(ProviderError):
    """
    Compound coupon creation failed after the price rule was created and the
    compensating delete failed too. `price_rule_id` is the orphaned rule.
    """

    def __init__(self, message: str, price_rule_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.price_rule_id = price_rule_id


class BaseConnector(ABC):
    """
    Base class for provider REST clients

    Implements common patterns:
    - One httpx request per call, no retry or backoff
    - Error translation into ProviderError
    - Link-header pagination
    """

    def __init__(
        self,
        source_name: str,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize connector

        Args:
            source_name: Name of the provider (e.g., 'record_store', 'commerce')
            base_url: Root URL every request path is joined to
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.source_name = source_name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def _get_headers(self) -> Dict[str, str]:
        """HTTP headers for every request"""
        pass

    @abstractmethod
    async def test_connection(self) -> Dict[str, Any]:
        """
        Check the provider is reachable with the configured credentials

        Returns:
            Dict with success flag and either provider info or error
        """
        pass

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None
    ) -> httpx.Response:
        """Send a single request and return the raw response"""
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            return await client.request(
                method,
                self._url(path),
                params=params,
                json=json,
                headers=self._get_headers()
            )

    def _raise_for_status(self, response: httpx.Response, context: str):
        """Translate a non-2xx response into ProviderError"""
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = response.text
        detail = body.get("errors", body) if isinstance(body, dict) else body
        message = f"{self.source_name} {context} failed: HTTP {response.status_code}: {detail}"
        log.error(message)
        raise ProviderError(message, status_code=response.status_code, body=body)

    def _get_next_page_url(self, link_header: Optional[str]) -> Optional[str]:
        """
        Parse next page URL from Link header

        Args:
            link_header: Link header from response

        Returns:
            Next page URL or None
        """
        if not link_header:
            return None

        # Parse Link header: <url>; rel="next"
        for link in link_header.split(","):
            parts = link.split(";")
            if len(parts) == 2 and 'rel="next"' in parts[1]:
                return parts[0].strip().strip("<>")

        return None
