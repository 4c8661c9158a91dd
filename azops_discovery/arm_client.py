"""
Azure Resource Manager REST client with pagination and backoff support.

Only performs GET requests (read-only, safe operations). Authentication is
a pre-acquired bearer token; acquiring it is left to the environment.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterator
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException

from .rate_limiting import ReadThrottle

logger = logging.getLogger(__name__)

# Status codes worth retrying at the call site. 401/403 show up while a
# freshly issued credential is still propagating.
TRANSIENT_STATUS_CODES = frozenset({401, 403, 408, 429})


@dataclass
class APICallStats:
    """Track API call statistics."""
    total_calls: int = 0
    successful_calls: int = 0
    retried_calls: int = 0
    failed_calls: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "retried_calls": self.retried_calls,
            "failed_calls": self.failed_calls,
        }


class ArmClientError(Exception):
    """Base exception for ARM client errors."""
    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response

    @property
    def is_transient(self) -> bool:
        """True when repeating the same call may succeed."""
        if self.status_code is None:
            return True
        return self.status_code in TRANSIENT_STATUS_CODES or self.status_code >= 500


class NotFoundError(ArmClientError):
    """Raised when the requested entity does not exist."""
    def __init__(self, path: str, response: Any = None):
        super().__init__(f"Not found: {path}", status_code=404, response=response)
        self.path = path


def _error_message(data: Any) -> str:
    """Pull the ARM error message out of an error body."""
    if isinstance(data, dict):
        error = data.get("error") or {}
        if isinstance(error, dict) and error.get("message"):
            return f"{error.get('code', 'Error')}: {error['message']}"
    return str(data)[:200]


class ArmClient:
    """
    ARM REST API client with nextLink pagination and exponential backoff.

    Features:
    - Automatic pagination via ``nextLink``
    - Exponential backoff for throttling (429) and server errors (5xx)
    - Respects Retry-After and the remaining-reads headers
    - API call tracking/statistics

    Usage:
        client = ArmClient("https://management.azure.com", token)
        for rg in client.paginate("/subscriptions/<id>/resourcegroups", "2021-04-01"):
            print(rg["name"])
    """

    DEFAULT_TIMEOUT = 30
    MAX_RETRIES = 3
    BASE_BACKOFF_SECONDS = 1.0
    MAX_BACKOFF_SECONDS = 60.0

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        verify_ssl: bool = True,
        throttle: ReadThrottle | None = None,
    ):
        """
        Initialize ARM client.

        Args:
            base_url: ARM endpoint (e.g., "https://management.azure.com")
            token: Bearer token for the management plane
            timeout: Request timeout in seconds
            max_retries: Maximum attempts for throttled/5xx requests
            verify_ssl: Whether to verify SSL certificates
            throttle: Shared read throttle (one is created when omitted)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.stats = APICallStats()
        self.throttle = throttle or ReadThrottle()
        self._stats_lock = Lock()

        # Create session for connection pooling
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "azops-discovery/0.1.0",
        })
        self._session.verify = verify_ssl

    def _build_url(self, path: str) -> str:
        """Build full URL from path."""
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return urljoin(self.base_url, path)

    def _calculate_backoff(self, attempt: int, retry_after: float | None = None) -> float:
        """Calculate backoff time with exponential increase."""
        if retry_after is not None:
            return min(float(retry_after), self.MAX_BACKOFF_SECONDS)
        backoff = self.BASE_BACKOFF_SECONDS * (2 ** attempt)
        return min(backoff, self.MAX_BACKOFF_SECONDS)

    def _should_retry(self, status_code: int) -> bool:
        return status_code == 429 or (500 <= status_code < 600)

    def _get_retry_after(self, headers: dict[str, str]) -> float | None:
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return None

    def _count(self, field_name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, field_name, getattr(self.stats, field_name) + 1)

    def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[int, Any, dict[str, str]]:
        """
        Perform GET request with automatic retry and backoff.

        Args:
            path: API path or absolute URL (nextLink)
            params: Query parameters

        Returns:
            Tuple of (status_code, json_or_text, headers)

        Raises:
            ArmClientError: When the request cannot be sent after retries
        """
        url = self._build_url(path)
        params = params or {}

        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            self._count("total_calls")
            self.throttle.wait_if_needed()

            try:
                logger.debug(f"GET {url} params={params} (attempt {attempt + 1})")
                response = self._session.get(url, params=params, timeout=self.timeout)

                headers = dict(response.headers)
                try:
                    data = response.json()
                except ValueError:
                    data = response.text

                self.throttle.update_from_headers(headers)

                if self._should_retry(response.status_code) and attempt < self.max_retries - 1:
                    retry_after = self._get_retry_after(headers)
                    if retry_after is not None:
                        # Slept below, not again in wait_if_needed()
                        self.throttle.clear_retry_after()
                    backoff = self._calculate_backoff(attempt, retry_after)
                    self._count("retried_calls")
                    logger.warning(
                        f"Request failed with {response.status_code}, "
                        f"retrying in {backoff:.1f}s (attempt {attempt + 1}/{self.max_retries})",
                        extra={"status_code": response.status_code, "attempt": attempt + 1},
                    )
                    time.sleep(backoff)
                    continue

                if response.status_code < 400:
                    self._count("successful_calls")
                else:
                    self._count("failed_calls")

                return response.status_code, data, headers

            except RequestException as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    self._count("retried_calls")
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Request error: {e}, retrying in {backoff:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(backoff)
                else:
                    logger.error(f"Request failed after {self.max_retries} attempts: {e}")

        self._count("failed_calls")
        raise ArmClientError(f"Request failed after {self.max_retries} retries: {last_error}")

    def get_json(
        self,
        path: str,
        api_version: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        GET a single ARM document.

        Raises:
            NotFoundError: On 404
            ArmClientError: On any other status >= 400
        """
        params = dict(params or {})
        if api_version:
            params["api-version"] = api_version

        status_code, data, _ = self.get(path, params)
        if status_code == 404:
            raise NotFoundError(path, response=data)
        if status_code >= 400:
            raise ArmClientError(
                f"GET {path} failed with {status_code}: {_error_message(data)}",
                status_code=status_code,
                response=data,
            )
        return data

    def paginate(
        self,
        path: str,
        api_version: str,
        params: dict[str, Any] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Iterate over every item of an ARM list operation.

        Follows ``nextLink`` until exhausted. The nextLink already carries
        the query string, so params are only sent with the first request.
        """
        data = self.get_json(path, api_version, params)
        while True:
            if not isinstance(data, dict):
                raise ArmClientError(
                    f"Unexpected list response for {path}: {type(data).__name__}",
                    status_code=None,
                    response=data,
                )
            for item in data.get("value") or []:
                yield item
            next_link = data.get("nextLink")
            if not next_link:
                return
            data = self.get_json(next_link)

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self) -> "ArmClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
