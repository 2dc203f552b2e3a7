"""WebSocket connection to the Cisco Spaces firehose.

Connection state machine::

    DISCONNECTED → (initialize) → CONNECTING → (success) → CONNECTED
    CONNECTED → (close / error) → DISCONNECTED → (backoff) → CONNECTING
    CONNECTING → (failure) → DISCONNECTED → (backoff) → CONNECTING
    any → (disconnect) → DISCONNECTED

Every connect starts with a credential exchange: an authenticated GET on the
firehose URL returns the ``websocketUrl`` to open.  Only the first exchange,
made by :meth:`SpacesConnection.initialize`, is fatal; after that, failures
feed the reconnect loop until ``max_attempts`` consecutive attempts fail.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import orjson
import websockets
import websockets.exceptions

from spaces_traxmate_bridge.classifier import IGNORED, MALFORMED, classify
from spaces_traxmate_bridge.config import SpacesConfig
from spaces_traxmate_bridge.errors import ConfigError, FirehoseError
from spaces_traxmate_bridge.models import ConnectionState, ConnectionStatus

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[Any]]


class SpacesConnection:
    """Owns the firehose WebSocket lifecycle and dispatches ``BLE_DEVICES`` events.

    Parameters
    ----------
    config:
        Access token, firehose URL, monitored event type and reconnect params.
    on_event:
        Coroutine function called with each qualifying event.  Each call runs
        in its own task so a slow delivery never holds up the next frame.
    session:
        Optional :class:`aiohttp.ClientSession` for the credential exchange.
    log:
        Logger for connection events (defaults to the module logger).
    """

    def __init__(
        self,
        config: SpacesConfig,
        on_event: EventHandler,
        session: Optional[aiohttp.ClientSession] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._access_token = config.access_token
        self._firehose_url = config.firehose_url
        self._event_type = config.event_type
        self._request_timeout = aiohttp.ClientTimeout(total=config.request_timeout_ms / 1000.0)
        self._base_delay = config.reconnect.base_delay_ms / 1000.0
        self._max_attempts = config.reconnect.max_attempts
        self._connect_timeout = config.reconnect.connect_timeout_ms / 1000.0
        self._on_event = on_event
        self._session = session
        self._owns_session = session is None
        self._log = log or logger

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._max_attempts_reached = False
        self._stream_url: Optional[str] = None
        self._ws = None
        self._receiver: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._event_tasks: set[asyncio.Task] = set()
        self._shutdown = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    # ── public API ──────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Exchange credentials for a stream URL and connect.

        Raises
        ------
        ConfigError
            If the access token or firehose URL is not configured.
        FirehoseError
            If the credential exchange fails.  A failed WebSocket handshake
            after a successful exchange is *not* fatal; it is retried by the
            reconnect loop.
        """
        if not self._access_token:
            raise ConfigError("Cisco Spaces access token is required")
        if not self._firehose_url:
            raise ConfigError("Cisco Spaces firehose URL is required")

        self._shutdown.clear()
        self._max_attempts_reached = False

        try:
            self._stream_url = await self._fetch_stream_url()
        except FirehoseError as exc:
            self._log.error("Failed to initialize Cisco Spaces connection: %s", exc)
            raise

        if not await self._connect(self._stream_url):
            self.schedule_reconnect()

    def schedule_reconnect(self) -> None:
        """Start the reconnect loop unless one is already running."""
        if self._shutdown.is_set():
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect *attempt* (1-based)."""
        return self._base_delay * (2 ** (attempt - 1))

    async def disconnect(self) -> None:
        """Tear down the connection and cancel any pending reconnect.

        Safe to call repeatedly; later calls find nothing to do.
        """
        self._shutdown.set()
        was_active = (
            self._ws is not None
            or self._state is not ConnectionState.DISCONNECTED
            or self._stream_url is not None
        )

        pending = []
        for task in (self._reconnect_task, self._receiver):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                pending.append(task)
        self._reconnect_task = None
        self._receiver = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._stream_url = None
        self._set_state(ConnectionState.DISCONNECTED)
        if was_active:
            self._log.info("Disconnected from Cisco Spaces WebSocket")

    async def close(self) -> None:
        """Disconnect and release the HTTP session if this object owns it."""
        await self.disconnect()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def wait_idle(self) -> None:
        """Wait for every dispatched event handler to finish."""
        while self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    def status(self) -> ConnectionStatus:
        """Read-only connection summary for health reporting."""
        return ConnectionStatus(
            is_connected=self._state is ConnectionState.CONNECTED,
            state=self._state.value,
            reconnect_attempts=self._attempts,
            max_reconnect_attempts=self._max_attempts,
            max_attempts_reached=self._max_attempts_reached,
        )

    # ── internal: credential exchange + connect ─────────────────────

    async def _fetch_stream_url(self) -> str:
        """GET the firehose URL and return the ``websocketUrl`` it names."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            async with self._session.get(
                self._firehose_url,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self._request_timeout,
            ) as resp:
                body = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise FirehoseError(f"Firehose URL request failed: {exc}") from exc

        if not 200 <= status < 300:
            raise FirehoseError(f"Firehose URL request failed: HTTP {status}")

        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            raise FirehoseError("Invalid response from Cisco Spaces API: not JSON") from exc

        url = data.get("websocketUrl") if isinstance(data, dict) else None
        if not url or not isinstance(url, str):
            raise FirehoseError("Invalid response from Cisco Spaces API: no websocketUrl")

        self._log.info("Retrieved WebSocket URL from Cisco Spaces")
        return url

    async def _open(self, url: str):
        return await websockets.connect(
            url,
            additional_headers={"Authorization": f"Bearer {self._access_token}"},
            open_timeout=self._connect_timeout,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=10,
        )

    async def _connect(self, url: str) -> bool:
        """Open the WebSocket; return True and start receiving on success."""
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._open(url)
        except (websockets.exceptions.WebSocketException, asyncio.TimeoutError, OSError) as exc:
            self._log.warning("Failed to open Cisco Spaces WebSocket: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        if self._shutdown.is_set():
            await ws.close()
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        self._ws = ws
        self._attempts = 0  # reset backoff on success
        self._max_attempts_reached = False
        self._set_state(ConnectionState.CONNECTED)
        self._log.info("Connected to Cisco Spaces WebSocket")
        self._receiver = asyncio.create_task(self._receive(ws))
        return True

    async def _receive(self, ws) -> None:
        """Read frames until the socket closes, then hand over to reconnect."""
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except websockets.exceptions.ConnectionClosed as exc:
            self._log.warning("WebSocket closed: %s", exc)
        except OSError as exc:
            self._log.warning("Network error: %s", exc)
        else:
            self._log.warning(
                "WebSocket connection closed: %s - %s",
                getattr(ws, "close_code", None),
                getattr(ws, "close_reason", None),
            )
        finally:
            if self._ws is ws:
                self._ws = None

        if not self._shutdown.is_set():
            self._set_state(ConnectionState.DISCONNECTED)
            self.schedule_reconnect()

    async def _reconnect_loop(self) -> None:
        """Retry exchange + connect with exponential backoff up to the ceiling.

        ``reconnect_attempts`` is incremented exactly once per scheduled
        attempt, whichever step of that attempt fails.
        """
        while not self._shutdown.is_set():
            if self._attempts >= self._max_attempts:
                self._max_attempts_reached = True
                self._log.error(
                    "Max reconnect attempts reached (%d), firehose stays down",
                    self._max_attempts,
                )
                return

            self._attempts += 1
            delay = self.backoff_delay(self._attempts)
            self._log.info(
                "Scheduling reconnect attempt %d/%d in %.1fs",
                self._attempts,
                self._max_attempts,
                delay,
            )
            if await self._wait_for_shutdown(delay):
                return

            try:
                self._stream_url = await self._fetch_stream_url()
            except FirehoseError as exc:
                self._log.error("Reconnect attempt %d failed: %s", self._attempts, exc)
                continue

            if await self._connect(self._stream_url):
                return

    async def _wait_for_shutdown(self, delay: float) -> bool:
        """Sleep *delay* seconds; return True early if disconnect was requested."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False  # backoff elapsed normally
        return True

    # ── internal: frames ────────────────────────────────────────────

    def _handle_frame(self, raw: str | bytes) -> None:
        result = classify(raw, self._event_type)
        if result.kind == MALFORMED:
            self._log.error(
                "Failed to parse WebSocket message: %s (%s)", result.error, result.raw_excerpt
            )
            return
        if result.kind == IGNORED:
            self._log.debug("Received non-%s event: %s", self._event_type, result.event_type)
            return

        event = result.event
        self._log.info(
            "Received BLE device data: deviceId=%s lastSeen=%s rssi=%s",
            event.get("deviceId"),
            event.get("lastSeen"),
            event.get("rssi"),
        )
        task = asyncio.create_task(self._on_event(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_done)

    def _event_done(self, task: asyncio.Task) -> None:
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Event handler failed: %s", exc, exc_info=exc)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        self._log.info("Connection state: %s → %s", old.value, new.value)
