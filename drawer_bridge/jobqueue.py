"""
Print-queue client.

The POS writes one `print_queue` row per completed cash payment. Rows are
read and claimed through Supabase's PostgREST endpoint with httpx.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable

import httpx

from .protocol import CASH_DRAWER_JOB_TYPE, DrawerJob

logger = logging.getLogger('drawer.bridge.queue')

DEFAULT_TIMEOUT = 10.0


class QueueError(Exception):
    """Raised when the queue cannot be read or updated."""


class PrintQueueClient:
    """Reads pending drawer jobs and marks them printed."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = 'print_queue',
        job_type: str = CASH_DRAWER_JOB_TYPE,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self._endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._job_type = job_type
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=2, max_connections=4),
        )
        self._headers = {
            'apikey': api_key,
            'Authorization': f"Bearer {api_key}",
        }

    async def fetch_pending(self, limit: int = 10) -> list[DrawerJob]:
        """Oldest unprocessed drawer jobs, at most `limit`."""
        params = {
            'select': 'id,type,created_at,printed_at',
            'type': f"eq.{self._job_type}",
            'printed_at': 'is.null',
            'order': 'created_at.asc',
            'limit': str(limit),
        }
        rows = await self._request('GET', params=params)
        if not isinstance(rows, list):
            raise QueueError(f"Unexpected queue response: {rows!r}")
        try:
            return [DrawerJob.from_row(row) for row in rows]
        except ValueError as e:
            raise QueueError(str(e)) from e

    async def mark_printed(self, ids: Iterable) -> None:
        """Set `printed_at = now()` on the given rows."""
        ids = list(ids)
        if not ids:
            return
        params = {'id': f"in.({','.join(str(i) for i in ids)})"}
        body = {'printed_at': datetime.now(timezone.utc).isoformat()}
        await self._request(
            'PATCH', params=params, json=body, headers={'Prefer': 'return=minimal'},
        )

    async def enqueue(self) -> DrawerJob:
        """Insert a drawer job, as the checkout flow does."""
        rows = await self._request(
            'POST',
            json={'type': self._job_type, 'payload': {}},
            headers={'Prefer': 'return=representation'},
        )
        if not rows:
            raise QueueError('Insert returned no row')
        row = rows[0] if isinstance(rows, list) else rows
        try:
            return DrawerJob.from_row(row)
        except ValueError as e:
            raise QueueError(str(e)) from e

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, *, params=None, json=None, headers=None):
        merged = dict(self._headers)
        if headers:
            merged.update(headers)
        try:
            resp = await self._client.request(
                method, self._endpoint, params=params, json=json, headers=merged,
            )
        except httpx.HTTPError as e:
            raise QueueError(f"{method} {self._endpoint} failed: {e}") from e

        if resp.status_code >= 400:
            raise QueueError(f"{method} {self._endpoint} returned {resp.status_code}: {resp.text[:200]}")

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise QueueError(f"Invalid JSON from queue: {e}") from e
