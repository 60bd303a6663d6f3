"""
HTTP client for the Traffic API, used by the dashboard
"""

from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import httpx
import structlog

logger = structlog.get_logger()


class ApiError(Exception):
    """Non-2xx response or transport failure; the message is shown to users as-is"""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TrafficApiClient:
    """Thin wrapper over the Traffic API using the caller's ID token"""

    def __init__(self, base_url: str, token: Optional[str], timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error("traffic_api_unreachable", method=method, path=path, error=str(e))
            raise ApiError(f"Traffic API unreachable: {e}")

        if response.is_error:
            message = f"HTTP {response.status_code}"
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("error"):
                message = f"{message}: {data['error']}"
            logger.warning("traffic_api_error", method=method, path=path, status_code=response.status_code)
            raise ApiError(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/me")

    def list_traffic(self, limit: int = 10, order: str = "asc",
                     cursor: Optional[str] = None) -> Dict[str, Any]:
        params = {"limit": str(limit), "order": order}
        if cursor:
            params["cursor"] = cursor
        return self._request("GET", "/traffic", params=params)

    def iter_pages(self, limit: int = 10, order: str = "asc", pages: int = 1) -> Iterator[Dict[str, Any]]:
        """Follow nextCursor for up to ``pages`` pages"""
        cursor = None
        for _ in range(max(pages, 1)):
            page = self.list_traffic(limit=limit, order=order, cursor=cursor)
            yield page
            cursor = page.get("nextCursor")
            if not cursor:
                break

    def create_traffic(self, date: str, visits: int) -> Dict[str, Any]:
        return self._request("POST", "/traffic", json={"date": date, "visits": visits})

    def update_traffic(self, record_id: str, visits: int) -> Dict[str, Any]:
        return self._request("PUT", f"/traffic/{quote(record_id, safe='')}", json={"visits": visits})

    def delete_traffic(self, record_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/traffic/{quote(record_id, safe='')}")
