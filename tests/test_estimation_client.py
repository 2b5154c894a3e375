"""
Estimation Client Tests
=======================

REST client error mapping and response parsing, plus the mock backend.
"""

from unittest.mock import MagicMock

import pytest
import requests

from conftest import make_frame


def _window(frame_count=4, window_id=3, session_id=1):
    from vitals_stream.stream.window import Window

    return Window(
        window_id=window_id,
        session_id=session_id,
        frames=tuple(make_frame(i) for i in range(frame_count)),
    )


def _response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.reason = "reason"
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def _client(session, **kwargs):
    from vitals_stream.estimation.rest_client import RestEstimationClient

    return RestEstimationClient(
        "https://backend.test/vitals", api_key="secret", session=session, **kwargs
    )


class TestRestEstimationClient:
    """HTTP error mapping."""

    @pytest.mark.asyncio
    async def test_server_error_maps_to_retryable_backend_error(self):
        """HTTP 500 raises BackendError(status=500) and leaves the window resubmittable."""
        from vitals_stream.errors import BackendError

        session = MagicMock()
        session.post.return_value = _response(500, text="internal error")
        client = _client(session)

        with pytest.raises(BackendError) as exc_info:
            await client.send(_window())

        assert exc_info.value.status == 500
        assert exc_info.value.retryable
        assert not exc_info.value.critical
        assert "internal error" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_transport_error(self):
        from vitals_stream.errors import TransportError

        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        client = _client(session)

        with pytest.raises(TransportError) as exc_info:
            await client.send(_window())

        assert exc_info.value.retryable
        assert client.metrics()["errors"] == 1

    @pytest.mark.asyncio
    async def test_forbidden_is_critical(self):
        from vitals_stream.errors import BackendError

        session = MagicMock()
        session.post.return_value = _response(403, text="bad key")

        with pytest.raises(BackendError) as exc_info:
            await _client(session).send(_window())

        assert exc_info.value.critical
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_json_maps_to_backend_error(self):
        from vitals_stream.errors import BackendError

        session = MagicMock()
        session.post.return_value = _response(200, body=ValueError("no json"))

        with pytest.raises(BackendError):
            await _client(session).send(_window())

    @pytest.mark.asyncio
    async def test_missing_vital_signs_maps_to_backend_error(self):
        from vitals_stream.errors import BackendError

        session = MagicMock()
        session.post.return_value = _response(200, body={"message": "ok"})

        with pytest.raises(BackendError):
            await _client(session).send(_window())

    @pytest.mark.asyncio
    async def test_request_payload_and_headers(self):
        """The window is posted as JSON with the api key header."""
        session = MagicMock()
        session.post.return_value = _response(200, body={"vital_signs": {}})
        client = _client(session, input_size=16, model="vitallens-2.0")

        await client.send(_window(frame_count=3))

        _, kwargs = session.post.call_args
        payload = kwargs["json"]
        assert kwargs["headers"]["x-api-key"] == "secret"
        assert payload["window_id"] == 3
        assert payload["session_id"] == 1
        assert payload["frame_count"] == 3
        assert len(payload["frames"]) == 3
        assert payload["timestamps"] == _window(frame_count=3).timestamps
        assert payload["model"] == "vitallens-2.0"

    @pytest.mark.asyncio
    async def test_window_is_encoded_off_the_event_loop(self, monkeypatch):
        """Frame encoding runs on a worker thread, not the loop thread."""
        import threading

        from vitals_stream.estimation import rest_client

        encoded_on = []
        original = rest_client.build_request

        def recording_build_request(*args, **kwargs):
            encoded_on.append(threading.get_ident())
            return original(*args, **kwargs)

        monkeypatch.setattr(rest_client, "build_request", recording_build_request)

        session = MagicMock()
        session.post.return_value = _response(200, body={"vital_signs": {}})
        await _client(session).send(_window(frame_count=2))

        assert len(encoded_on) == 1
        assert encoded_on[0] != threading.get_ident()


class TestResponseParsing:
    """Vital channel normalization and alignment."""

    @pytest.mark.asyncio
    async def test_channels_are_normalized_and_aligned(self):
        window = _window(frame_count=4)
        session = MagicMock()
        session.post.return_value = _response(200, body={
            "vital_signs": {
                "hr": {"value": 71.5, "unit": "bpm", "confidence": 0.9},
                "ppg": {"data": [0.1, 0.2, 0.3], "unit": "unitless", "confidence": [1, 1, 0.5]},
            },
            "model_used": "vitallens-2.0",
        })

        result = await _client(session).send(window)

        heart_rate = result.vitals["heart_rate"]
        assert heart_rate.values == [71.5]
        assert heart_rate.timestamps == [window.end_timestamp]
        assert heart_rate.confidence == [0.9]

        ppg = result.vitals["ppg_waveform"]
        assert ppg.values == [0.1, 0.2, 0.3]
        assert ppg.timestamps == window.timestamps[-3:]
        assert ppg.confidence == [1.0, 1.0, 0.5]

        assert result.model_used == "vitallens-2.0"
        assert result.window_id == window.window_id

    def test_waveform_longer_than_window_is_truncated(self):
        from vitals_stream.estimation.rest_client import parse_vitals_response

        window = _window(frame_count=2)
        result = parse_vitals_response(
            window, {"vital_signs": {"resp": {"data": [1, 2, 3, 4]}}}
        )

        series = result.vitals["respiratory_waveform"]
        assert series.values == [3.0, 4.0]
        assert series.timestamps == window.timestamps

    def test_unknown_codes_pass_through(self):
        from vitals_stream.estimation.rest_client import parse_vitals_response

        result = parse_vitals_response(
            _window(), {"vital_signs": {"spo2": {"value": 98}}}
        )

        assert result.vitals["spo2"].latest == 98.0


class TestMockEstimationClient:
    """Deterministic mock."""

    @pytest.mark.asyncio
    async def test_mock_is_deterministic(self):
        from vitals_stream.estimation.base import MockEstimationClient

        client = MockEstimationClient()
        window = _window()

        first = await client.send(window)
        second = await client.send(window)

        assert first.vitals["heart_rate"].values == second.vitals["heart_rate"].values
        assert len(first.vitals["ppg_waveform"].values) == window.frame_count
        assert client.requests_served == 2
