"""
VitalsStream
============

Streaming vital-signs estimation from live or recorded video.

This package acquires timestamped frames from a camera, a video file or a
remote frame stream, groups them into overlapping analysis windows, sends
each window to a remote estimation service, and releases per-window results
strictly in window order while tolerating out-of-order responses, timeouts
and stream resets.

Components:
    - sources: Camera, video file and WebSocket frame sources
    - stream: Frame/Window models and the WindowBuffer
    - estimation: Estimation client protocol, REST client and mock
    - pipeline: StreamProcessor, ResultSequencer and ResultChannel
    - assets: Decoder asset resolution

Example:
    from vitals_stream.pipeline import StreamProcessor
    from vitals_stream.sources import VideoFileFrameSource
    from vitals_stream.estimation import MockEstimationClient

    processor = StreamProcessor(
        VideoFileFrameSource("clip.mp4"),
        MockEstimationClient(),
        window_length=150,
    )
    await processor.start()
    async for result in processor.results():
        ...
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
