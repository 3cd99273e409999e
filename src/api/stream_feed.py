"""
Streaming mid-price feed.

Keeps the latest mid price per asset from the venue's all-mids channel:
- Subscription to {"type": "allMids"}
- Application-level ping on a fixed interval
- Automatic reconnection with capped exponential backoff
- Per-asset timestamps so consumers can reject old data

Message format:
    {"channel": "allMids", "data": {"mids": {"HYPE": "44.85", "BTC": "97000.5"}}}
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum, auto
from typing import Dict, Optional, Any, Callable, Tuple

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from src.api.errors import RetryConfig, RetryStrategy, calculate_backoff

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """WebSocket connection states."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECTING = auto()
    CLOSED = auto()


@dataclass
class StreamConfig:
    """Stream feed configuration."""
    url: str = "wss://api.hyperliquid.xyz/ws"

    # Heartbeat
    ping_interval: float = 30.0
    ping_timeout: float = 10.0

    # Reconnection
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    reconnect_multiplier: float = 2.0
    max_reconnect_attempts: int = 0  # 0 = unlimited
    reconnect_jitter: bool = True

    # Data is considered recent if younger than this
    recent_data_seconds: float = 60.0


class MidPriceStream:
    """
    Async client for the all-mids stream.

    Usage:
        stream = MidPriceStream(StreamConfig(url=config.pricing.stream_url))
        await stream.connect()
        latest = stream.get_latest("HYPE")  # (Decimal price, unix timestamp) or None
        await stream.disconnect()
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or StreamConfig()
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._reconnect_count = 0
        self._backoff = RetryConfig(
            base_delay=self._config.reconnect_delay,
            max_delay=self._config.max_reconnect_delay,
            exponential_base=self._config.reconnect_multiplier,
            jitter=self._config.reconnect_jitter,
        )

        # asset -> (price, timestamp)
        self._mids: Dict[str, Tuple[Decimal, float]] = {}
        self._last_update: Optional[float] = None
        self._messages_received = 0
        self._invalid_prices = 0

        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._shutdown = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Stream state: {self._state.name} -> {state.name}")
            self._state = state

    # ==========================================
    # CONNECTION MANAGEMENT
    # ==========================================

    async def connect(self) -> None:
        """
        Establish the WebSocket connection and subscribe to all mids.

        Raises:
            Exception: If the connection cannot be established
        """
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED,
                               ConnectionState.RECONNECTING):
            logger.warning(f"Cannot connect in state {self._state}")
            return

        self._shutdown = False
        self._set_state(ConnectionState.CONNECTING)

        try:
            self._ws = await websockets.connect(
                self._config.url,
                ping_interval=None,  # Application-level ping instead
                ping_timeout=self._config.ping_timeout,
                close_timeout=10,
            )

            self._set_state(ConnectionState.CONNECTED)
            self._reconnect_count = 0

            self._receive_task = asyncio.create_task(self._receive_loop())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

            await self._send({"method": "subscribe", "subscription": {"type": "allMids"}})
            logger.info(f"Stream connected to {self._config.url}")

        except Exception as e:
            logger.error(f"Stream connection failed: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            raise

    async def disconnect(self) -> None:
        """Close the connection and stop background tasks."""
        self._shutdown = True

        for task in (self._receive_task, self._heartbeat_task):
            if task and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing stream: {e}")

        self._ws = None
        self._set_state(ConnectionState.CLOSED)
        logger.info("Stream disconnected")

    async def _reconnect(self) -> None:
        """Reconnect with capped exponential backoff until success or shutdown."""
        while not self._shutdown:
            self._reconnect_count += 1
            self._set_state(ConnectionState.RECONNECTING)

            if (
                self._config.max_reconnect_attempts > 0
                and self._reconnect_count > self._config.max_reconnect_attempts
            ):
                logger.error(
                    f"Max reconnection attempts ({self._config.max_reconnect_attempts}) reached"
                )
                self._set_state(ConnectionState.CLOSED)
                return

            delay = calculate_backoff(
                self._reconnect_count - 1, RetryStrategy.EXPONENTIAL_BACKOFF, self._backoff
            )
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_count})")
            await asyncio.sleep(delay)

            if self._heartbeat_task:
                self._heartbeat_task.cancel()

            try:
                await self.connect()
                return
            except Exception as e:
                logger.error(f"Reconnection failed: {e}")

    # ==========================================
    # MESSAGE HANDLING
    # ==========================================

    async def _receive_loop(self) -> None:
        """Background task to receive and process messages."""
        while not self._shutdown:
            try:
                if not self._ws:
                    break

                message = await self._ws.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8")

                self._handle_message(json.loads(message))

            except ConnectionClosedOK:
                logger.info("Stream closed normally")
                break

            except ConnectionClosedError as e:
                logger.warning(f"Stream connection lost: {e}")
                self._set_state(ConnectionState.DISCONNECTED)
                if not self._shutdown:
                    asyncio.create_task(self._reconnect())
                break

            except asyncio.CancelledError:
                break

            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON message: {e}")

            except Exception as e:
                logger.error(f"Stream receive error: {e}")

    def _handle_message(self, data: Dict[str, Any]) -> None:
        """
        Process one parsed message.

        Args:
            data: Parsed JSON message
        """
        channel = data.get("channel")

        if channel == "pong":
            return

        if channel == "subscriptionResponse":
            logger.debug(f"Subscription confirmed: {data.get('data')}")
            return

        if channel == "allMids":
            mids = (data.get("data") or {}).get("mids")
            if isinstance(mids, dict):
                self.update_mids(mids)
            return

        logger.debug(f"Ignoring stream message on channel {channel}")

    def update_mids(self, mids: Dict[str, Any]) -> int:
        """
        Store a batch of mid prices stamped with the current clock.

        Non-numeric and non-positive entries are skipped.

        Returns:
            Number of assets updated
        """
        now = self._clock()
        updated = 0

        for asset, raw in mids.items():
            try:
                price = Decimal(str(raw))
            except (InvalidOperation, ValueError):
                self._invalid_prices += 1
                continue

            if not price.is_finite() or price <= 0:
                self._invalid_prices += 1
                logger.warning(f"Invalid mid received for {asset}: {raw}")
                continue

            self._mids[asset] = (price, now)
            updated += 1

        if updated:
            self._last_update = now
            self._messages_received += 1

        return updated

    async def _heartbeat_loop(self) -> None:
        """Background task sending application pings."""
        while not self._shutdown:
            try:
                await asyncio.sleep(self._config.ping_interval)

                if self._ws and self.is_connected:
                    await self._send({"method": "ping"})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Heartbeat error: {e}")

    async def _send(self, data: Dict[str, Any]) -> None:
        if not self._ws:
            raise ConnectionError("Stream not connected")
        await self._ws.send(json.dumps(data))

    # ==========================================
    # DATA ACCESS
    # ==========================================

    def get_latest(self, asset: str) -> Optional[Tuple[Decimal, float]]:
        """
        Latest mid for an asset.

        Returns:
            (price, unix timestamp) or None if the asset was never seen
        """
        return self._mids.get(asset)

    def has_recent_data(self, max_age: Optional[float] = None) -> bool:
        """Check whether any mid arrived within max_age seconds."""
        if self._last_update is None:
            return False
        limit = max_age if max_age is not None else self._config.recent_data_seconds
        return self._clock() - self._last_update <= limit

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.name,
            "assets": len(self._mids),
            "messages_received": self._messages_received,
            "invalid_prices": self._invalid_prices,
            "last_update": self._last_update,
            "reconnect_count": self._reconnect_count,
        }
