"""WebSocket link to the federation relay.

Keeps one duplex connection to the relay open:
1. Performs the initial handshake (failure is reported to the caller once)
2. Hands every inbound message (text or raw binary frame) to the registered
   handler, in arrival order
3. On close or error, waits a fixed delay and reconnects, forever by default

Delivery is best-effort. Outbound messages sent while the link is down are
dropped, not buffered.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from rich.console import Console

logger = logging.getLogger(__name__)
console = Console()

MessageHandler = Callable[[str | bytes], Awaitable[None]]


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RelayConnectError(Exception):
    """The initial handshake with the relay failed."""


class RelayLink:
    """
    Manages the WebSocket connection to the federation relay.

    The reconnect loop runs in a supervised task: an attempt counter plus a
    delay (fixed unless a backoff multiplier above 1.0 is configured). The
    connector and sleep functions are injectable so the loop can be driven
    by a fake clock.
    """

    def __init__(
        self,
        host: str,
        port: int,
        reconnect_delay: float = 5.0,
        backoff: float = 1.0,
        max_reconnect_delay: float = 60.0,
        max_retries: int = -1,  # -1 = infinite retries
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        log_callback: Callable[[str, str], None] | None = None,
    ):
        self.url = f"ws://{host}:{port}"
        self.reconnect_delay = reconnect_delay
        self.backoff = backoff
        self.max_reconnect_delay = max_reconnect_delay
        self.max_retries = max_retries
        self.log_callback = log_callback

        self.ws: Any = None
        self.state = LinkState.DISCONNECTED
        self.reconnect_attempts = 0

        self._connector = connector or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self._handler: MessageHandler | None = None
        self._current_delay = reconnect_delay
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self.state is LinkState.CONNECTED

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}]{message}[/{color}]")

    def on_message(self, handler: MessageHandler):
        """Register the callback invoked once per inbound message."""
        self._handler = handler

    async def connect(self):
        """Connect to the relay and start the reconnect supervisor.

        Raises:
            RelayConnectError: if the initial handshake fails. No background
                loop is started in that case.
        """
        self._running = True
        try:
            await self._open()
        except Exception as e:
            self._running = False
            raise RelayConnectError(f"Could not connect to relay at {self.url}: {e}") from e

        self._task = asyncio.create_task(self._supervise())

    async def _open(self):
        """Single connection attempt."""
        self.state = LinkState.CONNECTING
        self._log(f"Connecting to federation: {self.url}", "info")
        try:
            self.ws = await self._connector(
                self.url,
                ping_interval=30,
                ping_timeout=10,
            )
        except BaseException:
            self.state = LinkState.DISCONNECTED
            raise

        self.state = LinkState.CONNECTED
        self._current_delay = self.reconnect_delay
        self._log("Connected to federation relay", "success")

    async def _supervise(self):
        while self._running:
            await self._read_messages()
            if not self._running:
                break
            self._log("Disconnected from federation (will reconnect...)", "warn")
            await self._reconnect()

    async def _read_messages(self):
        """Pump inbound messages until the connection closes or fails."""
        ws = self.ws
        try:
            async for message in ws:
                await self._dispatch(message)
        except asyncio.CancelledError:
            logger.info("Relay reader cancelled")
            raise
        except websockets.ConnectionClosed as e:
            logger.info("Relay connection closed: %s", e)
        except Exception as e:
            logger.error("Relay connection error: %s (%s)", e, type(e).__name__)
            self._log(f"Federation connection error: {e}", "error")
        finally:
            await self._drop(ws)

    async def _dispatch(self, message: str | bytes):
        if not self._handler:
            logger.debug("No message handler registered, dropping relay message")
            return
        try:
            await self._handler(message)
        except Exception as e:
            logger.exception("Error processing relay message")
            self._log(f"Error processing message: {e}", "error")

    async def _reconnect(self):
        """Retry until connected, stopped, or out of retries."""
        failures = 0
        while self._running:
            delay = self._current_delay
            self._log(f"Reconnecting in {delay:g}s...", "warn")
            await self._sleep(delay)
            if not self._running:
                return

            self.reconnect_attempts += 1
            try:
                await self._open()
                return
            except Exception as e:
                logger.error("Relay reconnect failed: %s (%s)", e, type(e).__name__)
                self._log(f"Reconnect failed: {type(e).__name__}: {e}", "error")

            failures += 1
            if self.max_retries >= 0 and failures >= self.max_retries:
                self._log(f"Giving up on relay after {failures} attempts", "error")
                self._running = False
                return

            if self.backoff > 1.0:
                self._current_delay = min(delay * self.backoff, self.max_reconnect_delay)

    async def _drop(self, ws: Any):
        """Forget a transport handle and close it if it is still the live one."""
        if ws is None or ws is not self.ws:
            return
        self.ws = None
        self.state = LinkState.DISCONNECTED
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing relay socket: {e}")

    async def send(self, message: dict, timeout: float = 5.0) -> bool:
        """Send a message to the relay.

        Returns False without sending when the link is not connected. A send
        that fails or blocks past the timeout drops the connection, which the
        supervisor then re-establishes.
        """
        ws = self.ws
        if not ws or self.state is not LinkState.CONNECTED:
            logger.debug("Dropping outbound %s - relay not connected", message.get("type"))
            return False

        try:
            await asyncio.wait_for(ws.send(json.dumps(message)), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Relay send timed out after {timeout}s - connection may be blocked")
        except Exception as e:
            logger.error(f"Relay send error: {e}")
        await self._drop(ws)
        return False

    async def close(self):
        """Stop reconnecting and close the connection."""
        self._running = False
        await self._drop(self.ws)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.state = LinkState.DISCONNECTED
        self._log("Disconnected from federation", "warn")
