"""
WebSocket Frame Source
======================

Frame source consuming a remote JPEG frame stream over WebSocket.

This source:
    - Connects to a frame stream endpoint (e.g. /ws/stream)
    - Receives and validates JSON frame messages
    - Decodes base64 JPEG payloads into BGR frames
    - Reports every dropped connection with StreamReset
    - Reconnects with a fixed backoff until max attempts are exceeded

Message Contract:
    {
        "frame_id": 1234,
        "timestamp": 1707321234.567,
        "fps": 30,
        "image": "<base64 JPEG>"
    }

Design Rules:
    - Logs validation warnings but continues processing
    - Undecodable frames are dropped and counted, never fatal
    - Exceeding max reconnect attempts is fatal (SourceFailed)
"""

import asyncio
import json
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
)

from vitals_stream.errors import DecodeError, ResourceUnavailable
from vitals_stream.sources.base import (
    FrameArrived,
    FrameSink,
    SourceFailed,
    SourceMetrics,
    StreamReset,
)
from vitals_stream.stream.frame import Frame
from vitals_stream.stream.image_codec import decode_frame_bgr


logger = logging.getLogger(__name__)


class WebSocketFrameSource:
    """
    WebSocket consumer for remote frame streams.

    Attributes:
        url: WebSocket URL to connect to
        reconnect_backoff_ms: Backoff between reconnect attempts
        max_reconnect_attempts: Max attempts (0 = unlimited)
        connected: Whether currently connected
        metrics: Operational metrics

    Example:
        source = WebSocketFrameSource(url="ws://localhost:8000/ws/stream")
        await source.init()
        await source.start(sink)
    """

    def __init__(
        self,
        url: str,
        reconnect_backoff_ms: int = 500,
        max_reconnect_attempts: int = 0,
        stop_timeout: float = 5.0,
    ) -> None:
        """
        Initialize WebSocket frame source.

        Args:
            url: WebSocket URL of the frame stream
            reconnect_backoff_ms: Backoff between reconnect attempts
            max_reconnect_attempts: Max attempts (0 = unlimited)
            stop_timeout: Seconds to wait for the receive loop on stop
        """
        self.url = url
        self.reconnect_backoff_ms = reconnect_backoff_ms
        self.max_reconnect_attempts = max_reconnect_attempts
        self.stop_timeout = stop_timeout

        # State
        self._websocket: Optional[Any] = None
        self._connected: bool = False
        self._running: bool = False
        self._stop_event: asyncio.Event = asyncio.Event()
        self._emit: Optional[FrameSink] = None
        self._task: Optional[asyncio.Task] = None

        # For ordering and FPS validation
        self._last_frame_id: int = -1
        self._last_timestamp: float = 0.0
        self._declared_fps: Optional[float] = None

        self.metrics = SourceMetrics()

    @property
    def connected(self) -> bool:
        """Whether currently connected to the frame stream."""
        return self._connected

    @property
    def dropped_frames(self) -> int:
        return self.metrics.dropped_frames

    async def init(self) -> None:
        """
        Validate the endpoint.

        The connection itself is opened by the receive loop.

        Raises:
            ResourceUnavailable: If the URL is not a ws:// or wss:// URL
        """
        if not self.url.startswith(("ws://", "wss://")):
            raise ResourceUnavailable(f"Not a WebSocket URL: {self.url}")

    async def start(self, emit: FrameSink) -> None:
        """Start the receive loop as a background task."""
        if self.is_processing():
            return
        self._emit = emit
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="websocket_frame_source")

    def is_processing(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def on_stream_reset(self) -> None:
        """Forget ordering state so the resumed stream is validated afresh."""
        self._last_frame_id = -1
        self._last_timestamp = 0.0
        self._declared_fps = None

    async def stop(self) -> None:
        """
        Stop consuming gracefully.

        Signals the run loop to exit and closes the connection.
        """
        logger.info("WebSocketFrameSource stopping...")
        self._running = False
        self._stop_event.set()

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except ConnectionClosed:
                pass

        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("WebSocket receive loop did not stop in time")
        self._task = None
        self._connected = False

    async def _run(self) -> None:
        """Receive loop with reconnection."""
        logger.info(f"WebSocketFrameSource starting, connecting to {self.url}")

        while self._running:
            try:
                await self._connect_and_consume()
            except (OSError, ConnectionClosed, websockets.InvalidHandshake, asyncio.TimeoutError) as e:
                if not self._running:
                    break
                logger.error(f"Connection error: {e}")
                self._connected = False

            if not self._running:
                break

            # Any drop while running interrupts the frame timeline
            self.metrics.resets += 1
            await self._emit(StreamReset("connection_lost"))

            if (
                self.max_reconnect_attempts > 0
                and self.metrics.reconnect_count >= self.max_reconnect_attempts
            ):
                logger.error(
                    f"Max reconnect attempts ({self.max_reconnect_attempts}) exceeded"
                )
                await self._emit(
                    SourceFailed(
                        ResourceUnavailable(f"Frame stream unreachable: {self.url}")
                    )
                )
                break

            self.metrics.reconnect_count += 1
            backoff_sec = self.reconnect_backoff_ms / 1000.0
            logger.info(
                f"Reconnecting in {backoff_sec:.1f}s "
                f"(attempt {self.metrics.reconnect_count})"
            )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=backoff_sec)
                # Stop event was set, exit
                break
            except asyncio.TimeoutError:
                # Backoff complete, try again
                pass

        self._running = False
        logger.info("WebSocketFrameSource stopped")

    async def _connect_and_consume(self) -> None:
        """Connect to WebSocket and consume messages until disconnect."""
        async with websockets.connect(
            self.url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
            max_size=None,
        ) as ws:
            self._websocket = ws
            self._connected = True
            logger.info(f"Connected to frame stream: {self.url}")

            try:
                async for message in ws:
                    if not self._running:
                        break

                    frame = self.parse_message(message)
                    if frame is not None:
                        self.metrics.frames_emitted += 1
                        await self._emit(FrameArrived(frame))

            except ConnectionClosedOK:
                logger.info("Connection closed normally")
            except ConnectionClosedError as e:
                logger.warning(f"Connection closed with error: {e}")
                raise
            finally:
                self._connected = False
                self._websocket = None

    def parse_message(self, raw: Any) -> Optional[Frame]:
        """
        Parse, validate and decode a raw WebSocket message.

        Performs ordering and timing validation. Logs warnings
        for violations but does not reject frames.

        Args:
            raw: Raw JSON string from WebSocket

        Returns:
            Decoded Frame, or None if the message was dropped
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            self.metrics.dropped_frames += 1
            logger.error(f"Failed to parse frame JSON: {e}")
            return None

        try:
            frame_id = int(data["frame_id"])
            timestamp = float(data["timestamp"])
            fps = float(data["fps"])
            image_b64 = str(data["image"])
        except (KeyError, ValueError, TypeError) as e:
            self.metrics.dropped_frames += 1
            logger.error(f"Invalid frame structure: {e}")
            return None

        # Validate frame_id ordering (must increase by 1)
        if self._last_frame_id >= 0:
            expected_id = self._last_frame_id + 1
            if frame_id != expected_id:
                self.metrics.validation_warnings += 1
                if frame_id < expected_id:
                    logger.warning(
                        f"Frame ID went backwards: got {frame_id}, "
                        f"expected {expected_id}"
                    )
                else:
                    logger.warning(
                        f"Frame ID gap: got {frame_id}, expected {expected_id} "
                        f"(gap of {frame_id - expected_id} frames)"
                    )

        # Validate timestamp monotonicity
        if self._last_timestamp > 0 and timestamp < self._last_timestamp:
            self.metrics.validation_warnings += 1
            logger.warning(
                f"Timestamp went backwards: got {timestamp:.3f}, "
                f"previous was {self._last_timestamp:.3f}"
            )

        # Log FPS changes
        if self._declared_fps is None:
            self._declared_fps = fps
            logger.info(f"Stream FPS declared as: {fps}")
        elif fps != self._declared_fps:
            self.metrics.validation_warnings += 1
            logger.warning(f"FPS changed: was {self._declared_fps}, now {fps}")
            self._declared_fps = fps

        self._last_frame_id = frame_id
        self._last_timestamp = timestamp

        try:
            image = decode_frame_bgr(image_b64)
        except DecodeError as e:
            self.metrics.dropped_frames += 1
            logger.warning(f"Dropped frame {frame_id}: {e.message}")
            return None

        return Frame(index=frame_id, timestamp=timestamp, image=image, fps=fps)
