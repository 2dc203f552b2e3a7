"""Traxmate ingestion client with bounded, exponential-backoff retries.

Retry policy::

    2xx                          → success
    no response / timeout / 5xx  → transient, retry after retry_delay * 2**n
    anything else (4xx, 3xx)     → fail immediately

:meth:`TraxmateClient.send` never raises (task cancellation aside); every
outcome is reported as a :class:`DeliveryResult`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

import aiohttp
import orjson

from spaces_traxmate_bridge.config import TraxmateConfig
from spaces_traxmate_bridge.models import BatchDeliveryResult, DeliveryResult, TransformedRecord

logger = logging.getLogger(__name__)


def is_transient(status: Optional[int]) -> bool:
    """True for a failure worth retrying: no response at all, or a 5xx."""
    return status is None or 500 <= status < 600


class TraxmateClient:
    """Sends :class:`TransformedRecord` payloads to the Traxmate ingestion API.

    Parameters
    ----------
    config:
        API key, ingestion URL, retry and timeout settings.
    session:
        Optional shared :class:`aiohttp.ClientSession`.  When omitted the
        client creates (and owns) one on first use.
    log:
        Logger for delivery outcomes (defaults to the module logger).
    sleep:
        Awaitable used for backoff and batch pauses.
    """

    def __init__(
        self,
        config: TraxmateConfig,
        session: Optional[aiohttp.ClientSession] = None,
        log: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = config.ingestion_url
        self._api_key = config.api_key
        self._max_retries = config.max_retries
        self._retry_delay = config.retry_delay_ms / 1000.0
        self._batch_pause = config.batch_pause_ms / 1000.0
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_ms / 1000.0)
        self._session = session
        self._owns_session = session is None
        self._log = log or logger
        self._sleep = sleep

    async def __aenter__(self) -> "TraxmateClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── public API ──────────────────────────────────────────────────

    def retry_delay(self, retry_index: int) -> float:
        """Seconds to wait before retry number *retry_index* (0-based)."""
        return self._retry_delay * (2 ** retry_index)

    async def send(self, record: TransformedRecord) -> DeliveryResult:
        """POST one record, retrying transient failures.

        Returns
        -------
        DeliveryResult
            ``retry_count`` is the number of retries performed, so a
            persistent 5xx ends with ``retry_count == max_retries``.
        """
        identifier = record.identifier
        try:
            body = orjson.dumps(record.to_payload())
        except TypeError as exc:
            self._log.error("Cannot serialise record for %s: %s", identifier, exc)
            return DeliveryResult(success=False, identifier=identifier, error=str(exc))

        retry_count = 0
        while True:
            attempt = retry_count + 1
            status: Optional[int] = None
            try:
                status = await self._post(body)
                error = None if 200 <= status < 300 else f"HTTP {status}"
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                error = str(exc) or type(exc).__name__
            except Exception as exc:
                self._log.exception("Unexpected error sending %s to Traxmate", identifier)
                return DeliveryResult(
                    success=False,
                    identifier=identifier,
                    error=str(exc) or type(exc).__name__,
                    retry_count=retry_count,
                )

            if error is None:
                self._log.info(
                    "Sent %s (timestamp=%s) to Traxmate: HTTP %d (attempt %d)",
                    identifier,
                    record.timestamp,
                    status,
                    attempt,
                )
                return DeliveryResult(
                    success=True,
                    identifier=identifier,
                    status=status,
                    retry_count=retry_count,
                )

            self._log.error(
                "Failed to send %s to Traxmate (attempt %d): %s",
                identifier,
                attempt,
                error,
            )

            if retry_count >= self._max_retries or not is_transient(status):
                return DeliveryResult(
                    success=False,
                    identifier=identifier,
                    status=status,
                    error=error,
                    retry_count=retry_count,
                )

            delay = self.retry_delay(retry_count)
            self._log.info(
                "Retrying %s in %.1fs (retry %d/%d)",
                identifier,
                delay,
                retry_count + 1,
                self._max_retries,
            )
            await self._sleep(delay)
            retry_count += 1

    async def send_batch(self, records: Iterable[TransformedRecord]) -> BatchDeliveryResult:
        """Send *records* one at a time with a short pause between requests."""
        batch = BatchDeliveryResult()
        for record in records:
            batch.results.append(await self.send(record))
            await self._sleep(self._batch_pause)

        self._log.info(
            "Batch send completed: total=%d success=%d failures=%d",
            batch.total,
            batch.success_count,
            batch.failure_count,
        )
        return batch

    def status(self) -> dict:
        """Read-only settings summary for the status endpoint."""
        return {
            "base_url": self._url,
            "has_api_key": bool(self._api_key),
            "max_retries": self._max_retries,
            "retry_delay_ms": int(self._retry_delay * 1000),
        }

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    # ── internal ────────────────────────────────────────────────────

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, body: bytes) -> int:
        """Issue one POST and return the response status."""
        session = self._get_session()
        self._log.debug("POST %s (%d bytes)", self._url, len(body))
        async with session.post(
            self._url,
            data=body,
            headers={
                "Content-Type": "application/json",
                "X-API-Key": self._api_key,
            },
            timeout=self._timeout,
        ) as resp:
            status = resp.status
            self._log.debug("Traxmate responded %d %s", status, resp.reason)
            # the status decides the outcome; the body is only drained for reuse
            try:
                await resp.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self._log.debug("Could not read Traxmate response body: %s", exc)
            return status
