"""
Camera Frame Source
===================

Live camera capture through OpenCV.

Design Rules:
    - Blocking reads run on a worker thread
    - Timestamps come from the monotonic clock at capture time
    - A run of failed reads is a disconnect and is reported with StreamReset
"""

import asyncio
import functools
import logging
import time
from typing import Optional

import cv2

from vitals_stream.errors import DecodeError, ResourceUnavailable
from vitals_stream.sources.base import (
    FrameArrived,
    FrameSink,
    SourceFailed,
    SourceMetrics,
    StreamReset,
)
from vitals_stream.stream.frame import Frame
from vitals_stream.stream.image_codec import validate_bgr


logger = logging.getLogger(__name__)


class CameraFrameSource:
    """
    Frame source for a local camera device.

    Attributes:
        device_index: OpenCV device index
        width: Requested capture width (None = device default)
        height: Requested capture height (None = device default)
        max_read_failures: Consecutive failed reads treated as a disconnect
        metrics: Operational metrics

    Example:
        source = CameraFrameSource(device_index=0)
        await source.init()
        await source.start(sink)
        ...
        await source.stop()
    """

    def __init__(
        self,
        device_index: int = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[float] = None,
        max_read_failures: int = 5,
        stop_timeout: float = 2.0,
    ) -> None:
        self.device_index = device_index
        self.width = width
        self.height = height
        self.requested_fps = fps
        self.max_read_failures = max(1, max_read_failures)
        self.stop_timeout = stop_timeout

        self._capture: Optional[cv2.VideoCapture] = None
        self._emit: Optional[FrameSink] = None
        self._task: Optional[asyncio.Task] = None
        self._pending_read: Optional[asyncio.Future] = None
        self._running: bool = False
        self._index: int = 0
        self._fps: Optional[float] = None

        self.metrics = SourceMetrics()

    @property
    def dropped_frames(self) -> int:
        return self.metrics.dropped_frames

    async def init(self) -> None:
        """
        Open the camera device.

        Raises:
            ResourceUnavailable: If the device cannot be opened
        """
        if self._capture is not None:
            return

        capture = await asyncio.to_thread(cv2.VideoCapture, self.device_index)
        if not capture.isOpened():
            capture.release()
            raise ResourceUnavailable(
                f"Camera {self.device_index} could not be opened "
                f"(missing device or permission denied)"
            )

        if self.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if self.requested_fps:
            capture.set(cv2.CAP_PROP_FPS, self.requested_fps)

        reported_fps = capture.get(cv2.CAP_PROP_FPS)
        self._fps = float(reported_fps) if reported_fps and reported_fps > 0 else None
        self._capture = capture
        self._index = 0

        logger.info(f"Camera {self.device_index} opened (fps={self._fps})")

    async def start(self, emit: FrameSink) -> None:
        """Start the capture loop as a background task."""
        if self._capture is None:
            await self.init()
        if self.is_processing():
            return

        self._emit = emit
        self._running = True
        self._task = asyncio.create_task(
            self._capture_loop(), name=f"camera_capture_{self.device_index}"
        )

    def is_processing(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Stop capturing and release the device."""
        self._running = False

        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Camera {self.device_index} capture loop did not stop in time")
        self._task = None

        if self._capture is not None:
            capture, self._capture = self._capture, None
            read = self._pending_read
            if read is not None and not read.done():
                logger.warning(
                    f"Camera {self.device_index} read still in progress, "
                    f"release deferred until it returns"
                )
                read.add_done_callback(functools.partial(self._release_after_read, capture))
                return
            await asyncio.to_thread(capture.release)
            logger.info(f"Camera {self.device_index} released")

    def _release_after_read(self, capture: cv2.VideoCapture, read: asyncio.Future) -> None:
        if not read.cancelled() and read.exception() is not None:
            logger.debug(f"Camera {self.device_index} final read failed: {read.exception()}")
        capture.release()
        logger.info(f"Camera {self.device_index} released")

    async def _capture_loop(self) -> None:
        failures = 0
        try:
            while self._running:
                self._pending_read = asyncio.get_running_loop().run_in_executor(
                    None, self._capture.read
                )
                # Shielded so stop() can still see a read that outlives this task
                ok, image = await asyncio.shield(self._pending_read)
                if not self._running:
                    break

                if not ok:
                    failures += 1
                    if failures >= self.max_read_failures:
                        logger.warning(
                            f"Camera {self.device_index} stopped delivering frames "
                            f"after {failures} failed reads"
                        )
                        self.metrics.resets += 1
                        await self._emit(StreamReset("camera_disconnected"))
                        break
                    continue
                failures = 0

                try:
                    image = validate_bgr(image)
                except DecodeError as e:
                    self.metrics.dropped_frames += 1
                    logger.debug(f"Dropped camera frame: {e}")
                    continue

                frame = Frame(
                    index=self._index,
                    timestamp=time.monotonic(),
                    image=image,
                    fps=self._fps,
                )
                self._index += 1
                self.metrics.frames_emitted += 1
                await self._emit(FrameArrived(frame))
        except cv2.error as e:
            logger.error(f"Camera {self.device_index} capture failed: {e}")
            await self._emit(SourceFailed(ResourceUnavailable(f"Camera capture failed: {e}")))
        finally:
            self._running = False
