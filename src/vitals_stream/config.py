"""
VitalsStream Configuration
==========================

This module handles configuration loading for the vitals stream service.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    VITALS_SOURCE_KIND          -> source.kind
    VITALS_SOURCE_DEVICE        -> source.device_index
    VITALS_SOURCE_PATH          -> source.path
    VITALS_SOURCE_URL           -> source.url
    VITALS_WINDOW_LENGTH        -> window.length_frames
    VITALS_WINDOW_DURATION      -> window.duration_seconds
    VITALS_WINDOW_OVERLAP       -> window.overlap
    VITALS_ESTIMATION_BACKEND   -> estimation.backend
    VITALS_ESTIMATION_ENDPOINT  -> estimation.endpoint
    VITALS_API_KEY              -> estimation.api_key
    VITALS_RESULT_TIMEOUT       -> dispatch.result_timeout_seconds
    VITALS_MAX_IN_FLIGHT        -> dispatch.max_in_flight
    VITALS_RESTART_ON_RESET     -> dispatch.restart_on_reset
    VITALS_ASSET_MODE           -> assets.mode
    VITALS_PORT                 -> server.port
    VITALS_LOG_LEVEL            -> logging.level
    PORT                        -> server.port (Cloud Run)

Example:
    from vitals_stream.config import settings

    print(settings.source.kind)
    print(settings.window.length_frames)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from vitals_stream.assets import BuildMode


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class AppConfig(BaseModel):
    """Service identification configuration."""

    name: str = Field(default="vitals-stream", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class SourceConfig(BaseModel):
    """Frame source configuration."""

    kind: str = Field(
        default="file",
        description="Frame source: 'camera', 'file' or 'websocket'",
    )
    device_index: int = Field(default=0, ge=0, description="Camera device index")
    width: Optional[int] = Field(default=None, ge=1, description="Camera capture width")
    height: Optional[int] = Field(default=None, ge=1, description="Camera capture height")
    path: str = Field(
        default="./data/sample.mp4",
        description="Video file path (file source)",
    )
    target_fps: Optional[float] = Field(
        default=None,
        gt=0,
        description="Down-sample to roughly this fps (None = native)",
    )
    realtime: bool = Field(
        default=False,
        description="Pace file frames at their timestamps",
    )
    url: str = Field(
        default="ws://localhost:8000/ws/stream",
        description="WebSocket URL of the frame stream",
    )
    reconnect_backoff_ms: int = Field(
        default=500,
        ge=100,
        description="Backoff in milliseconds between reconnect attempts",
    )
    max_reconnect_attempts: int = Field(
        default=0,
        ge=0,
        description="Maximum reconnection attempts (0 = unlimited)",
    )
    max_read_failures: int = Field(
        default=5,
        ge=1,
        description="Consecutive failed camera reads treated as a disconnect",
    )


class WindowConfig(BaseModel):
    """Windowing configuration. Exactly one of length or duration."""

    length_frames: Optional[int] = Field(
        default=150,
        ge=1,
        description="Frames per window",
    )
    duration_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds per window (replaces length_frames)",
    )
    overlap: float = Field(
        default=0.0,
        ge=0,
        lt=1.0,
        description="Fraction of a window carried into the next [0, 1)",
    )

    @model_validator(mode="after")
    def _one_mode(self) -> "WindowConfig":
        if self.duration_seconds is not None:
            self.length_frames = None
        if self.length_frames is None and self.duration_seconds is None:
            raise ValueError("window needs length_frames or duration_seconds")
        return self


class MockEstimationConfig(BaseModel):
    """Mock estimation backend configuration."""

    heart_rate: float = Field(default=72.0, gt=0, description="Mean heart rate (bpm)")
    respiratory_rate: float = Field(default=15.0, gt=0, description="Mean respiratory rate")
    latency_seconds: float = Field(default=0.05, ge=0, description="Simulated latency")


class EstimationConfig(BaseModel):
    """Estimation backend configuration."""

    backend: str = Field(
        default="mock",
        description="Estimation backend: 'mock' or 'rest'",
    )
    endpoint: str = Field(
        default="https://api.rouast.com/vitallens-v3/file",
        description="REST endpoint windows are POSTed to",
    )
    api_key: Optional[str] = Field(default=None, description="Sent as x-api-key")
    model: Optional[str] = Field(default=None, description="Requested model name")
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request HTTP timeout",
    )
    input_size: Optional[int] = Field(
        default=40,
        ge=1,
        description="Square frame size sent to the backend (None = native)",
    )
    jpeg_quality: int = Field(default=90, ge=1, le=100, description="JPEG quality")
    mock: MockEstimationConfig = Field(default_factory=MockEstimationConfig)


class DispatchConfig(BaseModel):
    """Window dispatch and result policy."""

    result_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Time a window may take before a timeout placeholder",
    )
    max_in_flight: int = Field(
        default=4,
        ge=1,
        description="Concurrent estimation requests",
    )
    max_queued_frames: int = Field(
        default=32,
        ge=1,
        description="Frames accepted from the source before it is made to wait",
    )
    max_resubmits: int = Field(
        default=1,
        ge=0,
        description="Resubmissions after a retryable failure",
    )
    resubmit_backoff_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Base delay between resubmissions",
    )
    max_consecutive_failures: int = Field(
        default=3,
        ge=0,
        description="Failed/timed-out windows in a row before Failed (0 = never)",
    )
    stop_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time stop() waits for in-flight windows",
    )
    restart_on_reset: bool = Field(
        default=False,
        description="Restart the source on a stream reset instead of stopping",
    )
    output_queue_size: int = Field(
        default=0,
        ge=0,
        description="Result channel bound (0 = unbounded, drop-oldest otherwise)",
    )


class AssetsConfig(BaseModel):
    """Decoder asset configuration."""

    mode: BuildMode = Field(default=BuildMode.STANDARD, description="Asset build mode")
    core_url: Optional[str] = Field(default=None, description="Core runtime override")
    wasm_url: Optional[str] = Field(default=None, description="Execution module override")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8002, ge=1, le=65535, description="Bind port")
    push_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Keep-alive interval for /ws/vitals subscribers",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for VitalsStream.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    app: AppConfig = Field(default_factory=AppConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    window: WindowConfig = Field(default_factory=WindowConfig)
    estimation: EstimationConfig = Field(default_factory=EstimationConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    # Find config file
    if config_path is None:
        if env_path := os.environ.get("VITALS_CONFIG"):
            config_path = env_path
        else:
            search_paths = [
                Path("config.yaml"),
                Path("config.yml"),
                Path("/app/config.yaml"),
                Path(__file__).parent.parent.parent / "config.yaml",
            ]
            for path in search_paths:
                if path.exists():
                    config_path = str(path)
                    break

    # Load from YAML if exists
    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    # Apply environment variable overrides
    _apply_env_overrides(config_data)

    # Build settings object
    settings = Settings.model_validate(config_data)

    return settings


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Source settings
    if env_kind := os.environ.get("VITALS_SOURCE_KIND"):
        config_data.setdefault("source", {})["kind"] = env_kind
    if env_device := os.environ.get("VITALS_SOURCE_DEVICE"):
        config_data.setdefault("source", {})["device_index"] = int(env_device)
    if env_path := os.environ.get("VITALS_SOURCE_PATH"):
        config_data.setdefault("source", {})["path"] = env_path
    if env_url := os.environ.get("VITALS_SOURCE_URL"):
        config_data.setdefault("source", {})["url"] = env_url

    # Window settings
    if env_length := os.environ.get("VITALS_WINDOW_LENGTH"):
        window = config_data.setdefault("window", {})
        window["length_frames"] = int(env_length)
        window["duration_seconds"] = None
    if env_duration := os.environ.get("VITALS_WINDOW_DURATION"):
        config_data.setdefault("window", {})["duration_seconds"] = float(env_duration)
    if env_overlap := os.environ.get("VITALS_WINDOW_OVERLAP"):
        config_data.setdefault("window", {})["overlap"] = float(env_overlap)

    # Estimation settings
    if env_backend := os.environ.get("VITALS_ESTIMATION_BACKEND"):
        config_data.setdefault("estimation", {})["backend"] = env_backend
    if env_endpoint := os.environ.get("VITALS_ESTIMATION_ENDPOINT"):
        config_data.setdefault("estimation", {})["endpoint"] = env_endpoint
    if env_key := os.environ.get("VITALS_API_KEY"):
        config_data.setdefault("estimation", {})["api_key"] = env_key

    # Dispatch settings
    if env_timeout := os.environ.get("VITALS_RESULT_TIMEOUT"):
        config_data.setdefault("dispatch", {})["result_timeout_seconds"] = float(env_timeout)
    if env_in_flight := os.environ.get("VITALS_MAX_IN_FLIGHT"):
        config_data.setdefault("dispatch", {})["max_in_flight"] = int(env_in_flight)
    if env_restart := os.environ.get("VITALS_RESTART_ON_RESET"):
        config_data.setdefault("dispatch", {})["restart_on_reset"] = _env_bool(env_restart)

    # Asset settings
    if env_mode := os.environ.get("VITALS_ASSET_MODE"):
        config_data.setdefault("assets", {})["mode"] = env_mode

    # Server settings (Cloud Run uses PORT env var)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("VITALS_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("VITALS_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
