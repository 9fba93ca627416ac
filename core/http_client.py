"""
Shared HTTP Client
==================

Session-backed HTTP client used for outbound notification webhooks.

Features:
- Consistent User-Agent header
- Configurable default timeout (10s)
- Automatic retry on transient errors (429, 500, 502, 503, 504)
- Exponential backoff

Usage:
    from core.http_client import get_http_client

    client = get_http_client()
    response = client.post("https://hooks.example.com/orders", json={"order_id": 7})
"""

from __future__ import annotations

import logging
from typing import Optional, Dict, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class HTTPClient:
    """
    HTTP client with User-Agent, timeouts, and retry logic.
    """

    DEFAULT_USER_AGENT = "BookingOrders/1.0"
    DEFAULT_TIMEOUT = 10
    DEFAULT_MAX_RETRIES = 2

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_retries = max_retries

        self.session = requests.Session()
        self.session.headers["User-Agent"] = user_agent

        retry = Retry(
            total=max_retries,
            backoff_factor=0.5,  # 0.5s, 1s, 2s
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        logger.debug(f"HTTPClient initialized: timeout={timeout}s, retries={max_retries}")

    def post(
        self,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> requests.Response:
        """
        Make a POST request with a JSON body.

        Args:
            url: Request URL
            json: JSON body (auto-serialized)
            headers: Additional headers merged with the session defaults
            timeout: Override default timeout

        Returns:
            requests.Response object
        """
        timeout = timeout if timeout is not None else self.timeout

        logger.debug(f"POST {url} (timeout={timeout}s)")
        try:
            response = self.session.post(url, json=json, headers=headers, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed on POST {url}: {e}")
            raise
        logger.debug(f"POST {url} -> {response.status_code}")
        return response

    def close(self) -> None:
        """Close the underlying session."""
        self.session.close()

    def __enter__(self) -> "HTTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


_http_client: Optional[HTTPClient] = None


def get_http_client(timeout: Optional[int] = None) -> HTTPClient:
    """
    Get or create the global HTTP client instance.

    Args:
        timeout: Override default timeout (only affects first call)
    """
    global _http_client
    if _http_client is None:
        _http_client = HTTPClient(timeout=timeout or HTTPClient.DEFAULT_TIMEOUT)
    return _http_client


def reset_http_client() -> None:
    """Reset the global HTTP client (for testing)."""
    global _http_client
    if _http_client is not None:
        _http_client.close()
        _http_client = None
