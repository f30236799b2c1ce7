"""HTTP client for the remote pull-batch, push-batch and change-stream endpoints.

Handles network transport with retry logic; merging is left to callers.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

import httpx

logger = logging.getLogger(__name__)

PULL_PATH = "/api/sync/pull-batch"
PUSH_PATH = "/api/sync/push-batch"
STREAM_PATH = "/api/sync/stream-sse"


@dataclass
class PullResponse:
    """Decoded pull-batch response."""

    server_time_ms: int
    diffs: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullResponse":
        diffs = data.get("diffs") or {}
        return cls(
            server_time_ms=int(data.get("server_time_ms") or 0),
            diffs={
                name: rows
                for name, rows in diffs.items()
                if isinstance(rows, list)
            },
        )

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.diffs.values())


class RemoteSyncClient:
    """Client for the account-scoped sync endpoint.

    Uses exponential backoff for server errors, connection failures and
    timeouts. Client errors (4xx) are not retried.
    """

    def __init__(
        self,
        base_url: str | None,
        app_key: str | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the remote client.

        Args:
            base_url: Base URL of the sync backend (e.g., "http://backend:8000").
            app_key: Optional key sent as the x-app-key header.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.app_key = app_key
        self.max_retries = max_retries
        self.timeout = timeout
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.app_key:
            headers["x-app-key"] = self.app_key
        return headers

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to base_url.
            params: Optional query parameters.
            json_data: Optional JSON body.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.base_url:
            return None, "No remote URL configured"

        url = f"{self.base_url}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, params=params, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        self._consecutive_failures += 1
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"Request error: {e}")
                    self._consecutive_failures += 1
                    return None, str(e)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Connection failed: max retries ({self.max_retries}) exceeded"

    async def pull(
        self,
        account: str,
        since: int,
        collections: Sequence[str],
    ) -> tuple[PullResponse | None, str | None]:
        """Fetch every row changed strictly after ``since``.

        Returns:
            Tuple of (response, error_message).
        """
        params = {
            "user_id": account,
            "since": str(since or 0),
            "tables": ",".join(collections),
        }
        data, error = await self._request_with_retry("GET", PULL_PATH, params=params)
        if error:
            return None, error

        if not isinstance(data, dict):
            return None, f"Unexpected pull response: {data!r}"

        response = PullResponse.from_dict(data)
        logger.debug(
            f"Pulled {response.row_count} rows since={since}, "
            f"server_time={response.server_time_ms}"
        )
        return response, None

    async def push(
        self,
        account: str,
        device_id: str,
        changes: dict[str, list[dict[str, Any]]],
    ) -> tuple[Any, str | None]:
        """Send local changes.

        Returns:
            Tuple of (acknowledgement, error_message).
        """
        payload = {
            "user_id": account,
            "device_id": device_id,
            "changes": changes,
        }
        return await self._request_with_retry("POST", PUSH_PATH, json_data=payload)

    async def stream(
        self,
        account: str,
        since: int,
        collections: Sequence[str],
    ) -> AsyncIterator[PullResponse]:
        """Follow the server-sent change stream.

        Every event carries a pull-shaped payload. Events that fail to decode
        are logged and skipped. The iterator ends when the server closes the
        stream; connection and HTTP failures propagate as ``httpx.HTTPError``
        so the caller can reconnect from its own cursor.

        Args:
            account: Account whose changes to follow.
            since: Cursor the server should start streaming after.
            collections: Collection names to include.

        Yields:
            One PullResponse per event.
        """
        if not self.base_url:
            return

        params = {
            "user_id": account,
            "since": str(since or 0),
            "tables": ",".join(collections),
        }
        headers = self._headers()
        headers["accept"] = "text/event-stream"
        # No read timeout: the server may stay quiet for long stretches
        timeout = httpx.Timeout(self.timeout, read=None)

        async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
            async with client.stream(
                "GET", f"{self.base_url}{STREAM_PATH}", params=params
            ) as response:
                response.raise_for_status()
                self._consecutive_failures = 0
                logger.info(f"Change stream open for {account} since={since}")

                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line.startswith("data:"):
                        value = line[5:]
                        data_lines.append(value[1:] if value.startswith(" ") else value)
                    elif not line and data_lines:
                        event = _decode_event("\n".join(data_lines))
                        data_lines = []
                        if event is not None:
                            yield event


def _decode_event(data: str) -> PullResponse | None:
    try:
        payload = json.loads(data)
    except ValueError as e:
        logger.warning(f"Dropping undecodable stream event: {e}")
        return None

    if not isinstance(payload, dict):
        logger.warning(f"Dropping unexpected stream event: {payload!r}")
        return None
    return PullResponse.from_dict(payload)
