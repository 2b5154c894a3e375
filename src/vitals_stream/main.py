"""
VitalsStream Main Application
=============================

FastAPI entry point for the vitals estimation stream.

Pipeline:
    FrameSource -> StreamProcessor (windows, dispatch, ordering)
        -> drain task -> latest result + /ws/vitals subscribers

Endpoints:
    GET  /          - Service information
    GET  /health    - Liveness probe (is process alive?)
    GET  /ready     - Readiness probe (pipeline running?)
    GET  /metrics   - Pipeline, source, channel and client metrics
    GET  /output    - Latest ordered result
    WS   /ws/vitals - Real-time ordered results
"""

import asyncio
import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from vitals_stream.config import Settings, settings
from vitals_stream.errors import VitalsStreamError
from vitals_stream.estimation import MockEstimationClient, RestEstimationClient
from vitals_stream.models.estimation import EstimationResult
from vitals_stream.pipeline import PipelineState, StreamProcessor
from vitals_stream.sources import (
    CameraFrameSource,
    FrameSource,
    VideoFileFrameSource,
    WebSocketFrameSource,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Global State
# =============================================================================

# Shutdown flag
_shutdown_flag: bool = False

_processor: Optional[StreamProcessor] = None
_drain_task: Optional[asyncio.Task] = None
_subscribers: Set[asyncio.Queue] = set()

# Current state
_latest_result: Optional[EstimationResult] = None
_results_drained: int = 0
_startup_time: float = 0.0


# =============================================================================
# Getters
# =============================================================================

def get_processor() -> Optional[StreamProcessor]:
    return _processor

def get_latest_result() -> Optional[EstimationResult]:
    return _latest_result

def is_ready() -> bool:
    return _processor is not None and _processor.state == PipelineState.RUNNING


# =============================================================================
# Signal Handlers
# =============================================================================

def _handle_sigterm(signum, frame):
    """Handle SIGTERM for graceful shutdown."""
    global _shutdown_flag
    logger.info("Received SIGTERM, initiating graceful shutdown...")
    _shutdown_flag = True


# =============================================================================
# Factories
# =============================================================================

def create_frame_source(config: Settings) -> FrameSource:
    """
    Create the frame source selected by config.

    Fails fast on an unknown source kind.
    """
    kind = config.source.kind

    if kind == "camera":
        logger.info(f"Using CameraFrameSource: device={config.source.device_index}")
        return CameraFrameSource(
            device_index=config.source.device_index,
            width=config.source.width,
            height=config.source.height,
            fps=config.source.target_fps,
            max_read_failures=config.source.max_read_failures,
        )

    elif kind == "file":
        logger.info(f"Using VideoFileFrameSource: path={config.source.path}")
        return VideoFileFrameSource(
            path=config.source.path,
            target_fps=config.source.target_fps,
            realtime=config.source.realtime,
        )

    elif kind == "websocket":
        logger.info(f"Using WebSocketFrameSource: url={config.source.url}")
        return WebSocketFrameSource(
            url=config.source.url,
            reconnect_backoff_ms=config.source.reconnect_backoff_ms,
            max_reconnect_attempts=config.source.max_reconnect_attempts,
        )

    else:
        raise ValueError(f"Unknown frame source: {kind}")


def create_estimation_client(
    config: Settings,
) -> Union[MockEstimationClient, RestEstimationClient]:
    """
    Create the estimation backend selected by config.

    Fails fast if the REST backend is requested without an endpoint.
    """
    backend = config.estimation.backend

    if backend == "mock":
        logger.info("Using MockEstimationClient")
        return MockEstimationClient(
            base_heart_rate=config.estimation.mock.heart_rate,
            base_respiratory_rate=config.estimation.mock.respiratory_rate,
            latency_seconds=config.estimation.mock.latency_seconds,
        )

    elif backend == "rest":
        if not config.estimation.endpoint:
            raise ValueError("REST estimation backend requires estimation.endpoint")
        if not config.estimation.api_key:
            logger.warning("REST estimation backend configured without an API key")
        return RestEstimationClient(
            endpoint=config.estimation.endpoint,
            api_key=config.estimation.api_key,
            timeout=config.estimation.http_timeout_seconds,
            input_size=config.estimation.input_size,
            jpeg_quality=config.estimation.jpeg_quality,
            origin=config.app.name,
            model=config.estimation.model,
        )

    else:
        raise ValueError(f"Unknown estimation backend: {backend}")


def create_processor(config: Settings) -> StreamProcessor:
    """Wire source, estimation backend and dispatch policy into a processor."""

    async def _log_reset(reason: str) -> None:
        logger.info(f"Restarting frame source after reset: {reason}")

    return StreamProcessor(
        source=create_frame_source(config),
        client=create_estimation_client(config),
        window_length=config.window.length_frames,
        window_duration=config.window.duration_seconds,
        overlap=config.window.overlap,
        result_timeout=config.dispatch.result_timeout_seconds,
        max_in_flight=config.dispatch.max_in_flight,
        max_queued_frames=config.dispatch.max_queued_frames,
        max_resubmits=config.dispatch.max_resubmits,
        resubmit_backoff=config.dispatch.resubmit_backoff_seconds,
        max_consecutive_failures=config.dispatch.max_consecutive_failures,
        stop_grace=config.dispatch.stop_grace_seconds,
        output_maxsize=config.dispatch.output_queue_size,
        asset_mode=config.assets.mode,
        core_url=config.assets.core_url,
        wasm_url=config.assets.wasm_url,
        on_stream_reset=_log_reset if config.dispatch.restart_on_reset else None,
    )


# =============================================================================
# Result Drain
# =============================================================================

async def drain_results(processor: StreamProcessor) -> None:
    """Consume ordered results, keep the latest and fan out to subscribers."""
    global _latest_result, _results_drained

    logger.info("Result drain started")
    try:
        async for result in processor.results():
            _latest_result = result
            _results_drained += 1
            for queue in list(_subscribers):
                queue.put_nowait(result)
    except VitalsStreamError as e:
        logger.error(f"Pipeline failed: {e}")
    logger.info("Result drain stopped")


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager with graceful shutdown."""
    global _processor, _drain_task, _startup_time

    # Register signal handlers
    signal.signal(signal.SIGTERM, _handle_sigterm)

    # Startup
    _startup_time = time.time()
    logger.info(f"Starting {settings.app.name} {settings.app.version}")

    # Get port from env (Cloud Run compatibility)
    port = int(os.environ.get("PORT", settings.server.port))
    logger.info(f"Configured port: {port}")

    _processor = create_processor(settings)
    try:
        await _processor.start()
    except VitalsStreamError as e:
        # Reported through /ready and /metrics
        logger.error(f"Pipeline failed to start: {e}")
    else:
        _drain_task = asyncio.create_task(
            drain_results(_processor),
            name="result_drain"
        )
        logger.info("Pipeline started")

    yield

    # Shutdown
    logger.info("Shutting down gracefully...")

    global _shutdown_flag
    _shutdown_flag = True

    if _processor:
        await _processor.stop()

    if _drain_task:
        try:
            await asyncio.wait_for(_drain_task, timeout=5.0)
        except asyncio.TimeoutError:
            _drain_task.cancel()
            try:
                await _drain_task
            except asyncio.CancelledError:
                pass

    client = _processor.client if _processor else None
    if isinstance(client, RestEstimationClient):
        client.close()

    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="VitalsStream",
    description="Windowed vital-signs estimation over live and recorded video",
    version=settings.app.version,
    lifespan=lifespan,
)


# =============================================================================
# HTTP Endpoints
# =============================================================================

@app.get("/")
async def root() -> JSONResponse:
    """Service information endpoint."""
    return JSONResponse({
        "service": "VitalsStream",
        "version": settings.app.version,
        "name": settings.app.name,
        "status": "running",
        "source": settings.source.kind,
        "estimation_backend": settings.estimation.backend,
    })


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness probe - is the process alive?

    Always returns 200 if the service is running.
    """
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - _startup_time, 1),
    })


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Readiness probe - is the pipeline producing results?

    Returns 200 while the processor is Running, 503 otherwise.
    """
    processor = get_processor()
    state = processor.state.value if processor else "absent"
    assets = processor.assets.describe() if processor and processor.assets else None

    if is_ready():
        return JSONResponse({
            "status": "ready",
            "pipeline_state": state,
            "decoder_assets": assets,
            "results_emitted": _results_drained,
        })
    else:
        return JSONResponse(
            {
                "status": "not_ready",
                "pipeline_state": state,
                "error": str(processor.error) if processor and processor.error else None,
            },
            status_code=503,
        )


@app.get("/metrics")
async def metrics() -> JSONResponse:
    """Detailed metrics for observability."""
    processor = get_processor()

    return JSONResponse({
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "source_kind": settings.source.kind,
        "estimation_backend": settings.estimation.backend,
        "subscribers": len(_subscribers),
        "results_drained": _results_drained,
        "pipeline": processor.metrics() if processor else None,
    })


@app.get("/output")
async def output() -> JSONResponse:
    """Get the latest ordered result."""
    latest = get_latest_result()

    if latest is None:
        return JSONResponse(
            {"error": "No output available yet"},
            status_code=503,
        )

    return JSONResponse(latest.model_dump(mode="json"))


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@app.websocket("/ws/vitals")
async def vitals_stream(websocket: WebSocket) -> None:
    """WebSocket endpoint pushing every ordered result as it is released."""
    await websocket.accept()
    logger.info("Client connected to /ws/vitals")

    queue: asyncio.Queue = asyncio.Queue()
    _subscribers.add(queue)

    try:
        latest = get_latest_result()
        if latest is not None:
            await websocket.send_json(latest.model_dump(mode="json"))

        while not _shutdown_flag:
            try:
                result = await asyncio.wait_for(
                    queue.get(), timeout=settings.server.push_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
            await websocket.send_json(result.model_dump(mode="json"))

    except WebSocketDisconnect:
        pass
    finally:
        _subscribers.discard(queue)
        logger.info("Client disconnected from /ws/vitals")


# =============================================================================
# Main Entry Point
# =============================================================================

def run() -> None:
    """Console entry point."""
    import uvicorn

    # Cloud Run uses PORT env var
    port = int(os.environ.get("PORT", settings.server.port))

    uvicorn.run(
        "vitals_stream.main:app",
        host=settings.server.host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run()
