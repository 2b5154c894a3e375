"""
Video File Frame Source
=======================

Decodes a video file into timestamped frames through OpenCV.

This source:
    - Probes fps and frame count on init
    - Optionally down-samples to a target fps
    - Optionally paces frames in real time
    - Skips frames that fail to decode (counted, not fatal)
    - Reports end of file with StreamReset("end_of_stream")

Timestamps are file-relative: frame_number / fps.
"""

import asyncio
import functools
import logging
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

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


def _release_after_read(capture: cv2.VideoCapture, read: asyncio.Future) -> None:
    if not read.cancelled() and read.exception() is not None:
        logger.debug(f"Final read failed: {read.exception()}")
    capture.release()


DEFAULT_FPS = 30.0

_EOF = "eof"
_SKIP = "skip"
_BAD = "bad"
_OK = "ok"


class VideoFileFrameSource:
    """
    Frame source for a video file.

    Attributes:
        path: Video file path
        target_fps: Down-sample to roughly this rate (None = native)
        realtime: Pace frames at their timestamps instead of as fast as possible
        fps: Native fps (after init)
        total_frames: Frame count reported by the container (after init)
        metrics: Operational metrics
    """

    def __init__(
        self,
        path: str,
        target_fps: Optional[float] = None,
        realtime: bool = False,
        stop_timeout: float = 2.0,
    ) -> None:
        self.path = Path(path)
        self.target_fps = target_fps
        self.realtime = realtime
        self.stop_timeout = stop_timeout

        self.fps: float = DEFAULT_FPS
        self.total_frames: int = 0
        self.ds_factor: int = 1

        self._capture: Optional[cv2.VideoCapture] = None
        self._emit: Optional[FrameSink] = None
        self._task: Optional[asyncio.Task] = None
        self._pending_read: Optional[asyncio.Future] = None
        self._running: bool = False
        self._position: int = 0

        self.metrics = SourceMetrics()

    @property
    def dropped_frames(self) -> int:
        return self.metrics.dropped_frames

    async def init(self) -> None:
        """
        Open and probe the file.

        Raises:
            ResourceUnavailable: If the file is missing or cannot be opened
        """
        if self._capture is not None:
            return

        if not self.path.is_file():
            raise ResourceUnavailable(f"Video file not found: {self.path}")

        capture = await asyncio.to_thread(cv2.VideoCapture, str(self.path))
        if not capture.isOpened():
            capture.release()
            raise ResourceUnavailable(f"Video file could not be opened: {self.path}")

        fps = capture.get(cv2.CAP_PROP_FPS)
        if not fps or fps <= 0:
            logger.warning(f"No fps reported for {self.path.name}, assuming {DEFAULT_FPS}")
            fps = DEFAULT_FPS
        self.fps = float(fps)
        self.total_frames = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        self.ds_factor = (
            max(int(round(self.fps / self.target_fps)), 1) if self.target_fps else 1
        )

        self._capture = capture
        self._position = 0

        logger.info(
            f"Opened {self.path.name}: fps={self.fps:.2f}, "
            f"frames={self.total_frames}, ds_factor={self.ds_factor}"
        )

    async def start(self, emit: FrameSink) -> None:
        """Start decoding as a background task."""
        if self._capture is None:
            await self.init()
        if self.is_processing():
            return

        self._emit = emit
        self._running = True
        self._task = asyncio.create_task(
            self._decode_loop(), name=f"file_decode_{self.path.name}"
        )

    def is_processing(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Stop decoding and close the file."""
        self._running = False

        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Decode loop for {self.path.name} did not stop in time")
        self._task = None

        if self._capture is not None:
            capture, self._capture = self._capture, None
            read = self._pending_read
            if read is not None and not read.done():
                logger.warning(f"Read from {self.path.name} still in progress, close deferred")
                read.add_done_callback(functools.partial(_release_after_read, capture))
                return
            await asyncio.to_thread(capture.release)

    def _read_next(self, capture: cv2.VideoCapture) -> Tuple[str, Optional[np.ndarray]]:
        """Blocking read of the next frame; runs on a worker thread."""
        if not capture.grab():
            return _EOF, None
        position = self._position
        self._position += 1
        if position % self.ds_factor != 0:
            return _SKIP, None
        ok, image = capture.retrieve()
        if not ok:
            return _BAD, None
        return _OK, image

    async def _decode_loop(self) -> None:
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        try:
            while self._running:
                self._pending_read = loop.run_in_executor(None, self._read_next, self._capture)
                status, image = await asyncio.shield(self._pending_read)
                if not self._running:
                    break

                if status == _EOF:
                    logger.info(
                        f"End of {self.path.name} after {self._position} frames "
                        f"({self.metrics.dropped_frames} dropped)"
                    )
                    self.metrics.resets += 1
                    await self._emit(StreamReset("end_of_stream"))
                    break
                if status == _SKIP:
                    continue

                number = self._position - 1
                try:
                    if status == _BAD:
                        raise DecodeError(f"Frame {number} could not be decoded")
                    image = validate_bgr(image)
                except DecodeError as e:
                    self.metrics.dropped_frames += 1
                    logger.debug(f"Dropped frame from {self.path.name}: {e}")
                    continue

                timestamp = number / self.fps
                if self.realtime:
                    delay = started_at + timestamp - loop.time()
                    if delay > 0:
                        await asyncio.sleep(delay)

                frame = Frame(
                    index=number,
                    timestamp=timestamp,
                    image=image,
                    fps=self.fps / self.ds_factor,
                )
                self.metrics.frames_emitted += 1
                await self._emit(FrameArrived(frame))
        except cv2.error as e:
            logger.error(f"Decoding {self.path.name} failed: {e}")
            await self._emit(SourceFailed(ResourceUnavailable(f"Decoding failed: {e}")))
        finally:
            self._running = False
