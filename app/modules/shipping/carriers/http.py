"""
Shared HTTP transport for courier APIs

Wraps httpx.AsyncClient and turns transport failures into carrier errors:
- network errors, timeouts, 429 and 5xx -> CarrierUnavailableError
- any other 4xx -> CarrierRejectedError (status_code kept in details)

Authentication differs per courier and stays in each carrier module.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from app.core.exceptions import CarrierError, CarrierRejectedError, CarrierUnavailableError
from app.models.carrier import CarrierCode

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


def _error_message(response: httpx.Response) -> str:
    """Best-effort error text from a courier error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error", "rmk", "remarks", "detail", "errorMessage"):
            value = body.get(key)
            if value:
                return str(value)[:500]
    return str(body)[:500]


def expect_object(carrier: CarrierCode, data: Any, operation: str) -> Dict[str, Any]:
    """
    The decoded body as a dict.

    Raises:
        CarrierError: the courier answered 2xx with some other JSON shape
    """
    if isinstance(data, dict):
        return data
    logger.warning(f"{carrier.value} {operation} returned {type(data).__name__}, expected an object")
    raise CarrierError(
        f"{carrier.value} returned an unexpected {operation} response",
        carrier=carrier.value,
    )


class CarrierHTTPClient:
    """
    One pooled httpx client per courier instance.

    Args:
        carrier: Owning carrier, used in errors and logs
        base_url: Courier API root
        timeout: Transport timeout; the core applies its own per-call bound
        transport: Optional httpx transport (tests inject MockTransport)
    """

    def __init__(
        self,
        carrier: CarrierCode,
        base_url: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.carrier = carrier
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            CarrierUnavailableError: network failure, timeout, 429 or 5xx
            CarrierRejectedError: other 4xx, or a 2xx that is not JSON
        """
        client = self._get_http_client()
        name = self.carrier.value

        try:
            response = await client.request(
                method.upper(), path, json=json, params=params, data=data, headers=headers,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{name} {method} {path} timed out: {e}")
            raise CarrierUnavailableError(f"{name} timed out", carrier=name)
        except httpx.RequestError as e:
            logger.warning(f"{name} {method} {path} failed: {e}")
            raise CarrierUnavailableError(f"Network error: {e}", carrier=name)

        logger.debug(f"{name} API {method} {path} -> {response.status_code}")

        if response.status_code == 429 or response.status_code >= 500:
            raise CarrierUnavailableError(
                f"{name} returned {response.status_code}",
                carrier=name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise CarrierRejectedError(
                _error_message(response),
                carrier=name,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise CarrierRejectedError(
                f"{name} returned a non-JSON body",
                carrier=name,
                status_code=response.status_code,
            )


class TokenCache:
    """Bearer token with expiry; refreshed five minutes early."""

    def __init__(self):
        self.token: Optional[str] = None
        self.expires_at: Optional[datetime] = None

    @property
    def valid(self) -> bool:
        if not self.token or not self.expires_at:
            return False
        return datetime.now(timezone.utc) < self.expires_at - timedelta(minutes=5)

    def store(self, token: str, ttl_seconds: int) -> str:
        self.token = token
        self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        return token

    def clear(self):
        self.token = None
        self.expires_at = None
