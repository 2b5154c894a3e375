"""
REST Estimation Client
======================

Production estimation client posting windows to a vitals HTTP backend.

This client:
    - Serializes a window into an EstimationRequest (base64 JPEG frames)
    - POSTs it as JSON with `requests` on a worker thread
    - Maps non-2xx responses to BackendError, network failures to TransportError
    - Aligns returned vital series to the window's frame timestamps

Design Rules:
    - Single attempt per call, never retries internally
    - Stateless between calls (safe for concurrent windows)
    - Log every failed call
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from vitals_stream.errors import BackendError, TransportError
from vitals_stream.models.estimation import (
    EstimationRequest,
    EstimationResult,
    VitalSeries,
)
from vitals_stream.stream.image_codec import encode_frame_jpeg
from vitals_stream.stream.window import Window


logger = logging.getLogger(__name__)


VITAL_CODES_TO_NAMES: Dict[str, str] = {
    "hr": "heart_rate",
    "rr": "respiratory_rate",
    "ppg": "ppg_waveform",
    "resp": "respiratory_waveform",
    "hrv_sdnn": "hrv_sdnn",
    "hrv_rmssd": "hrv_rmssd",
    "hrv_lfhf": "hrv_lfhf",
}


def build_request(
    window: Window,
    input_size: Optional[int] = None,
    jpeg_quality: int = 90,
    origin: str = "vitals-stream",
    model: Optional[str] = None,
) -> EstimationRequest:
    """
    Serialize a sealed window into the backend wire format.

    Args:
        window: Sealed window
        input_size: Square resize applied to every frame before encoding
        jpeg_quality: JPEG quality 1-100
        origin: Client identifier sent with the request
        model: Requested model name

    Returns:
        EstimationRequest ready for JSON encoding
    """
    return EstimationRequest(
        window_id=window.window_id,
        session_id=window.session_id,
        start_timestamp=window.start_timestamp,
        frame_count=window.frame_count,
        timestamps=window.timestamps,
        frames=[
            encode_frame_jpeg(frame, input_size=input_size, quality=jpeg_quality)
            for frame in window.frames
        ],
        origin=origin,
        model=model,
    )


def _as_float_list(value: Any) -> List[float]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [float(v) for v in value]
    return [float(value)]


def parse_vitals_response(window: Window, body: Dict[str, Any]) -> EstimationResult:
    """
    Convert a backend response body into an EstimationResult.

    Waveform channels (`data`) align to the last n frame timestamps of the
    window; scalar channels (`value`) align to the window's last frame.

    Args:
        window: Window the response belongs to
        body: Decoded JSON body

    Returns:
        EstimationResult with normalized channel names

    Raises:
        ValueError: If the body does not contain a vital_signs mapping
    """
    vital_signs = body.get("vital_signs")
    if not isinstance(vital_signs, dict):
        raise ValueError("response has no vital_signs mapping")

    timestamps = window.timestamps
    vitals: Dict[str, VitalSeries] = {}

    for code, channel in vital_signs.items():
        if not isinstance(channel, dict):
            logger.warning(f"Skipping malformed vital channel '{code}'")
            continue
        name = VITAL_CODES_TO_NAMES.get(code, code)

        if "data" in channel:
            values = _as_float_list(channel["data"])[-len(timestamps):]
            times = timestamps[len(timestamps) - len(values):]
        elif "value" in channel:
            values = _as_float_list(channel["value"])[-1:]
            times = [window.end_timestamp] if values else []
        else:
            logger.warning(f"Vital channel '{code}' has neither data nor value")
            continue

        confidence = _as_float_list(channel.get("confidence"))[-len(values):] if values else []

        vitals[name] = VitalSeries(
            values=values,
            timestamps=times,
            unit=channel.get("unit"),
            confidence=confidence,
            note=channel.get("note"),
        )

    return EstimationResult(
        window_id=window.window_id,
        session_id=window.session_id,
        start_timestamp=window.start_timestamp,
        end_timestamp=window.end_timestamp,
        frame_count=window.frame_count,
        vitals=vitals,
        model_used=body.get("model_used"),
        message=body.get("message"),
    )


class RestEstimationClient:
    """
    Estimation client for an HTTP vitals backend.

    Attributes:
        endpoint: URL the windows are POSTed to
        timeout: Per-request HTTP timeout in seconds
        input_size: Square frame size sent to the backend (None = native)
        jpeg_quality: JPEG quality for frame payloads

    Example:
        client = RestEstimationClient("https://api.example.com/vitals", api_key="...")
        result = await client.send(window)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        input_size: Optional[int] = 40,
        jpeg_quality: int = 90,
        origin: str = "vitals-stream",
        model: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Initialize REST estimation client.

        Args:
            endpoint: Backend URL
            api_key: Sent as `x-api-key` header when given
            timeout: HTTP timeout in seconds
            input_size: Square resize before encoding (None = no resize)
            jpeg_quality: JPEG quality 1-100
            origin: Client identifier sent with each request
            model: Requested model name
            session: Pre-configured requests session (optional)
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.input_size = input_size
        self.jpeg_quality = jpeg_quality
        self.origin = origin
        self.model = model

        self._session = session or requests.Session()
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["x-api-key"] = api_key

        self._request_count: int = 0
        self._error_count: int = 0

        logger.info(
            f"RestEstimationClient initialized: endpoint={endpoint}, "
            f"timeout={timeout}s, input_size={input_size}"
        )

    async def send(self, window: Window) -> EstimationResult:
        """
        POST a window to the backend and parse the response.

        Args:
            window: Sealed window

        Returns:
            EstimationResult for the window

        Raises:
            TransportError: No response (connection failure, timeout)
            BackendError: Non-2xx status or unparseable body
        """
        # Resizing and JPEG-encoding a full window is CPU-bound
        payload = await asyncio.to_thread(self._serialize, window)

        self._request_count += 1
        status, body = await asyncio.to_thread(self._post, payload)

        try:
            return parse_vitals_response(window, body)
        except (ValueError, TypeError) as e:
            self._error_count += 1
            logger.error(f"Invalid response for window {window.window_id}: {e}")
            raise BackendError(status, f"Invalid response body: {e}")

    def _serialize(self, window: Window) -> Dict[str, Any]:
        """Encode a window into the JSON payload; runs on a worker thread."""
        request = build_request(
            window,
            input_size=self.input_size,
            jpeg_quality=self.jpeg_quality,
            origin=self.origin,
            model=self.model,
        )
        return request.model_dump(mode="json")

    def _post(self, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Blocking POST; runs on a worker thread."""
        try:
            response = self._session.post(
                self.endpoint,
                json=payload,
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self._error_count += 1
            logger.error(
                f"Transport error for window {payload.get('window_id')}: {e}"
            )
            raise TransportError(f"Request to {self.endpoint} failed: {e}")

        if not 200 <= response.status_code < 300:
            self._error_count += 1
            logger.error(
                f"Backend error for window {payload.get('window_id')}: "
                f"HTTP {response.status_code}"
            )
            raise BackendError(response.status_code, response.text or response.reason)

        try:
            body = response.json()
        except ValueError as e:
            self._error_count += 1
            raise BackendError(response.status_code, f"Invalid JSON: {e}")

        if not isinstance(body, dict):
            self._error_count += 1
            raise BackendError(response.status_code, "Response body is not an object")

        return response.status_code, body

    def close(self) -> None:
        """Release pooled HTTP connections."""
        self._session.close()

    def metrics(self) -> dict:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
        }
