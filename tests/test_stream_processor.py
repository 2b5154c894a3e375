"""
StreamProcessor Tests
=====================

Lifecycle, ordering, timeouts, stop/flush and reset handling.
"""

import asyncio

import pytest

from conftest import FakeFrameSource, GatedEstimationClient, settle


async def _collect(processor, timeout: float = 2.0):
    async def _drain():
        return [result async for result in processor.results()]

    return await asyncio.wait_for(_drain(), timeout=timeout)


def _processor(source, client, **kwargs):
    from vitals_stream.pipeline.processor import StreamProcessor

    options = dict(window_length=2, result_timeout=5.0, stop_grace=1.0, resubmit_backoff=0.0)
    options.update(kwargs)
    return StreamProcessor(source, client, **options)


class TestLifecycle:
    """State machine transitions."""

    @pytest.mark.asyncio
    async def test_start_from_idle_runs_init(self, fake_source, gated_client):
        """start() from Idle initializes the source and enters Running."""
        from vitals_stream.pipeline.session import PipelineState

        processor = _processor(fake_source, gated_client)
        assert processor.state == PipelineState.IDLE

        await processor.start()

        assert processor.state == PipelineState.RUNNING
        assert fake_source.init_calls == 1
        assert fake_source.start_calls == 1
        assert processor.assets is not None
        assert processor.session.session_id == 1

        await processor.stop()
        assert processor.state == PipelineState.IDLE
        assert fake_source.stop_calls >= 1

    @pytest.mark.asyncio
    async def test_stop_is_safe_twice_and_from_idle(self, fake_source, gated_client):
        from vitals_stream.pipeline.session import PipelineState

        processor = _processor(fake_source, gated_client)
        await processor.stop()

        await processor.start()
        await processor.stop()
        await processor.stop()

        assert processor.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_init_failure_enters_failed(self, gated_client):
        """ResourceUnavailable from the source is re-raised and nothing starts."""
        from vitals_stream.errors import ResourceUnavailable
        from vitals_stream.pipeline.session import PipelineState

        source = FakeFrameSource(fail_init=ResourceUnavailable("no camera"))
        processor = _processor(source, gated_client)

        with pytest.raises(ResourceUnavailable):
            await processor.start()

        assert processor.state == PipelineState.FAILED
        assert isinstance(processor.error, ResourceUnavailable)
        assert source.start_calls == 0
        with pytest.raises(ResourceUnavailable):
            await _collect(processor)
        await asyncio.wait_for(processor.wait_stopped(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_self_contained_assets_without_embedding_fail_init(self, fake_source, gated_client):
        from vitals_stream.assets import BuildMode
        from vitals_stream.errors import ResourceUnavailable
        from vitals_stream.pipeline.session import PipelineState

        processor = _processor(
            fake_source, gated_client, asset_mode=BuildMode.SELF_CONTAINED
        )

        with pytest.raises(ResourceUnavailable):
            await processor.init()

        assert processor.state == PipelineState.FAILED
        assert fake_source.init_calls == 0

    @pytest.mark.asyncio
    async def test_source_failure_while_running(self, fake_source, gated_client):
        from vitals_stream.errors import ResourceUnavailable
        from vitals_stream.pipeline.session import PipelineState

        processor = _processor(fake_source, gated_client)
        await processor.start()

        await fake_source.fail(ResourceUnavailable("camera unplugged"))
        await asyncio.wait_for(processor.wait_stopped(), timeout=1.0)

        assert processor.state == PipelineState.FAILED
        with pytest.raises(ResourceUnavailable):
            await _collect(processor)

    def test_invalid_window_config_is_rejected(self, fake_source, gated_client):
        with pytest.raises(ValueError):
            _processor(fake_source, gated_client, window_length=None)


class TestOrdering:
    """Results are released in window-id order."""

    @pytest.mark.asyncio
    async def test_out_of_order_responses_are_emitted_in_order(self, fake_source, gated_client):
        """Responses 2, 3, 1 are observed as 1, 2, 3."""
        processor = _processor(fake_source, gated_client)
        await processor.start()

        await fake_source.emit_frames(6)
        await settle()
        assert gated_client.sent == [(1, 1), (1, 2), (1, 3)]

        gated_client.release(2)
        gated_client.release(3)
        await settle()
        assert processor.stats.results_emitted == 0

        gated_client.release(1)
        await settle()
        await processor.stop()

        results = await _collect(processor)
        assert [r.window_id for r in results] == [1, 2, 3]
        assert all(not r.is_placeholder for r in results)

    @pytest.mark.asyncio
    async def test_never_resolving_window_becomes_timeout_placeholder(self, fake_source, gated_client):
        """A hung request is replaced; later results still come in order."""
        from vitals_stream.models.estimation import ResultStatus

        processor = _processor(fake_source, gated_client, result_timeout=0.2)
        await processor.start()

        await fake_source.emit_frames(4)
        await settle()
        gated_client.release(2)

        first = await asyncio.wait_for(processor._channel.get(), timeout=2.0)
        second = await asyncio.wait_for(processor._channel.get(), timeout=2.0)

        assert (first.window_id, first.status) == (1, ResultStatus.TIMEOUT)
        assert (second.window_id, second.status) == (2, ResultStatus.OK)
        assert processor.stats.timeouts == 1

        await processor.stop()

    @pytest.mark.asyncio
    async def test_max_in_flight_limits_concurrent_requests(self, fake_source, gated_client):
        """Excess windows wait for a slot instead of being dropped."""
        processor = _processor(fake_source, gated_client, window_length=1, max_in_flight=1)
        await processor.start()

        await fake_source.emit_frames(3)
        await settle()
        assert gated_client.sent == [(1, 1)]

        gated_client.release(1)
        await settle()
        assert gated_client.sent == [(1, 1), (1, 2)]

        gated_client.release(2)
        await settle()
        gated_client.release(3)
        await settle()
        await processor.stop()

        results = await _collect(processor)
        assert [r.window_id for r in results] == [1, 2, 3]


class TestStop:
    """Graceful stop."""

    @pytest.mark.asyncio
    async def test_stop_flushes_partial_window(self, fake_source):
        """Three of five frames are flushed, dispatched and emitted on stop."""
        from vitals_stream.stream.window import SealReason

        client = GatedEstimationClient(auto=True)
        processor = _processor(fake_source, client, window_length=5)
        await processor.start()

        await fake_source.emit_frames(3)
        await settle()
        assert client.sent == []

        await processor.stop()

        results = await _collect(processor)
        assert len(results) == 1
        assert results[0].frame_count == 3
        assert client.sent == [(1, 1)]
        assert processor.stats.windows_sealed == 1
        assert SealReason.FLUSH.value == "flush"

    @pytest.mark.asyncio
    async def test_stop_times_out_outstanding_windows(self, fake_source, gated_client):
        """Windows still in flight after the grace period become placeholders."""
        from vitals_stream.models.estimation import ResultStatus

        processor = _processor(fake_source, gated_client, stop_grace=0.05)
        await processor.start()

        await fake_source.emit_frames(2)
        await settle()
        await processor.stop()

        results = await _collect(processor)
        assert [(r.window_id, r.status) for r in results] == [(1, ResultStatus.TIMEOUT)]

    @pytest.mark.asyncio
    async def test_reset_without_hook_stops_pipeline(self, fake_source):
        """End of a file without a restart hook stops after flushing."""
        from vitals_stream.pipeline.session import PipelineState

        client = GatedEstimationClient(auto=True)
        processor = _processor(fake_source, client, window_length=5)
        await processor.start()

        await fake_source.emit_frames(7)
        await fake_source.reset("end_of_stream")
        await asyncio.wait_for(processor.wait_stopped(), timeout=2.0)

        assert processor.state == PipelineState.IDLE
        results = await _collect(processor)
        assert [r.frame_count for r in results] == [5, 2]


class TestReset:
    """Stream reset with a restart hook."""

    @pytest.mark.asyncio
    async def test_reset_discards_old_session_and_restarts_ids(self, fake_source, gated_client):
        from vitals_stream.pipeline.session import PipelineState

        reasons = []

        async def on_reset(reason):
            reasons.append(reason)

        processor = _processor(fake_source, gated_client, on_stream_reset=on_reset)
        await processor.start()

        await fake_source.emit_frames(2)
        await settle()
        assert gated_client.sent == [(1, 1)]

        await fake_source.reset("camera_disconnected")
        await settle()

        assert reasons == ["camera_disconnected"]
        assert fake_source.reset_calls == 1
        assert fake_source.start_calls == 2
        assert processor.state == PipelineState.RUNNING
        assert processor.session.session_id == 2

        # Late answer for the abandoned session
        gated_client.release(1, session_id=1)
        await settle()
        assert processor.stats.stale_discarded == 1

        await fake_source.emit_frames(2)
        await settle()
        assert gated_client.sent[-1] == (2, 1)

        gated_client.release(1, session_id=2)
        await settle()
        await processor.stop()

        results = await _collect(processor)
        assert [(r.session_id, r.window_id) for r in results] == [(2, 1)]


class TestFailurePolicy:
    """Resubmission and failure escalation."""

    @pytest.mark.asyncio
    async def test_retryable_error_is_resubmitted(self, fake_source):
        from vitals_stream.errors import BackendError
        from vitals_stream.estimation.base import MockEstimationClient

        class FlakyClient:
            def __init__(self):
                self.calls = 0

            async def send(self, window):
                self.calls += 1
                if self.calls == 1:
                    raise BackendError(503, "busy")
                return await MockEstimationClient().send(window)

        client = FlakyClient()
        processor = _processor(fake_source, client, max_resubmits=1)
        await processor.start()

        await fake_source.emit_frames(2)
        await settle(20)
        await processor.stop()

        results = await _collect(processor)
        assert [r.status.value for r in results] == ["ok"]
        assert client.calls == 2
        assert processor.stats.resubmits == 1

    @pytest.mark.asyncio
    async def test_failed_window_becomes_gap(self, fake_source, gated_client):
        from vitals_stream.errors import TransportError
        from vitals_stream.models.estimation import ResultStatus

        processor = _processor(fake_source, gated_client, max_resubmits=0)
        await processor.start()

        await fake_source.emit_frames(4)
        await settle()
        gated_client.fail(1, TransportError("connection refused"))
        gated_client.release(2)
        await settle()
        await processor.stop()

        results = await _collect(processor)
        assert [(r.window_id, r.status) for r in results] == [
            (1, ResultStatus.FAILED),
            (2, ResultStatus.OK),
        ]
        assert "connection refused" in results[0].error

    @pytest.mark.asyncio
    async def test_authorization_failure_is_fatal(self, fake_source, gated_client):
        from vitals_stream.errors import BackendError
        from vitals_stream.pipeline.session import PipelineState

        processor = _processor(fake_source, gated_client)
        await processor.start()

        await fake_source.emit_frames(2)
        await settle()
        gated_client.fail(1, BackendError(403, "invalid api key"))
        await asyncio.wait_for(processor.wait_stopped(), timeout=1.0)

        assert processor.state == PipelineState.FAILED
        assert processor.error.status == 403
        with pytest.raises(BackendError):
            await _collect(processor)

    @pytest.mark.asyncio
    async def test_consecutive_failures_enter_failed(self, fake_source):
        from vitals_stream.errors import TransportError, VitalsStreamError
        from vitals_stream.models.estimation import ResultStatus
        from vitals_stream.pipeline.session import PipelineState

        class DownClient:
            async def send(self, window):
                raise TransportError("backend unreachable")

        processor = _processor(
            fake_source,
            DownClient(),
            window_length=1,
            max_resubmits=0,
            max_consecutive_failures=2,
        )
        await processor.start()

        await fake_source.emit_frames(2)
        await asyncio.wait_for(processor.wait_stopped(), timeout=1.0)

        assert processor.state == PipelineState.FAILED
        received = []
        with pytest.raises(VitalsStreamError):
            async for result in processor.results():
                received.append(result.status)
        assert received == [ResultStatus.FAILED, ResultStatus.FAILED]

    @pytest.mark.asyncio
    async def test_failed_pipeline_can_be_reinitialized(self, gated_client):
        from vitals_stream.errors import ResourceUnavailable
        from vitals_stream.pipeline.session import PipelineState

        source = FakeFrameSource(fail_init=ResourceUnavailable("busy"))
        processor = _processor(source, gated_client)
        with pytest.raises(ResourceUnavailable):
            await processor.start()

        source.fail_init = None
        await processor.init()
        await processor.start()

        assert processor.state == PipelineState.RUNNING
        await processor.stop()

    @pytest.mark.asyncio
    async def test_metrics_snapshot(self, fake_source, gated_client):
        processor = _processor(fake_source, gated_client)
        await processor.start()
        await fake_source.emit_frames(3)
        await settle()

        metrics = processor.metrics()

        assert metrics["state"] == "running"
        assert metrics["processor"]["frames_received"] == 3
        assert metrics["processor"]["windows_sealed"] == 1
        assert metrics["session"]["in_flight"] == 1
        assert metrics["window_buffer"]["size"] == 1
        assert metrics["source"] == {"dropped_frames": 0}
        assert metrics["backpressure"]["queued_frames"] == 0
        assert metrics["backpressure"]["accepting_frames"]

        gated_client.release(1)
        await processor.stop()


class TestBackpressure:
    """A source faster than the backend is paced, not buffered without bound."""

    @pytest.mark.asyncio
    async def test_fast_source_slow_backend_loses_no_windows(self, fake_source):
        """Forty frames against a 50 ms backend all come back as results."""
        from vitals_stream.estimation.base import MockEstimationClient
        from vitals_stream.models.estimation import ResultStatus

        processor = _processor(
            fake_source,
            MockEstimationClient(latency_seconds=0.05),
            window_length=2,
            max_in_flight=1,
            max_queued_frames=2,
            stop_grace=0.3,
        )
        await processor.start()

        peak_frames = 0
        peak_windows = 0
        for _ in range(40):
            await fake_source.emit_frames(1)
            backlog = processor.metrics()["backpressure"]
            peak_frames = max(peak_frames, backlog["queued_frames"])
            peak_windows = max(peak_windows, backlog["queued_windows"])

        await fake_source.reset("end_of_stream")
        await asyncio.wait_for(processor.wait_stopped(), timeout=5.0)

        results = await _collect(processor)
        assert [r.window_id for r in results] == list(range(1, 21))
        assert all(r.status == ResultStatus.OK for r in results)
        assert processor.stats.timeouts == 0
        assert peak_frames <= 2
        assert peak_windows <= 2

    @pytest.mark.asyncio
    async def test_queued_windows_are_sent_before_the_grace_period(self, fake_source, gated_client):
        """Windows still waiting for a slot at stop() are dispatched, not timed out."""
        from vitals_stream.models.estimation import ResultStatus

        processor = _processor(
            fake_source, gated_client, window_length=1, max_in_flight=1, stop_grace=0.15
        )
        await processor.start()

        await fake_source.emit_frames(3)
        await settle()
        assert gated_client.sent == [(1, 1)]

        stopping = asyncio.create_task(processor.stop())
        for window_id in (1, 2, 3):
            while (1, window_id) not in gated_client.sent:
                await asyncio.sleep(0.01)
            # Together the three requests outlast the grace period
            await asyncio.sleep(0.08)
            gated_client.release(window_id)
        await asyncio.wait_for(stopping, timeout=2.0)

        results = await _collect(processor)
        assert [(r.window_id, r.status) for r in results] == [
            (1, ResultStatus.OK),
            (2, ResultStatus.OK),
            (3, ResultStatus.OK),
        ]


class TestStopDuringRestart:
    """stop() while a reset restart is still awaiting the source."""

    @pytest.mark.asyncio
    async def test_stop_wins_over_slow_reinitialization(self, gated_client):
        from vitals_stream.pipeline.session import PipelineState

        class SlowRestartSource(FakeFrameSource):
            async def init(self):
                await super().init()
                if self.init_calls > 1:
                    await asyncio.sleep(0.2)

        async def on_reset(reason):
            pass

        source = SlowRestartSource()
        processor = _processor(source, gated_client, on_stream_reset=on_reset)
        await processor.start()

        await source.reset("camera_disconnected")
        await asyncio.sleep(0.05)
        assert processor.state == PipelineState.INITIALIZING

        await asyncio.wait_for(processor.stop(), timeout=2.0)

        assert processor.state == PipelineState.IDLE
        assert not source.is_processing()
        assert source.start_calls == 1
        assert source.stop_calls >= 2


class TestLateEvents:
    """Events for windows that were already resolved."""

    @pytest.mark.asyncio
    async def test_late_events_for_timed_out_window_are_ignored(self, fake_source, gated_client):
        from conftest import make_frame
        from vitals_stream.errors import TransportError
        from vitals_stream.estimation.base import MockEstimationClient
        from vitals_stream.models.estimation import ResultStatus
        from vitals_stream.pipeline.events import ForceTimeout, WindowFailed, WindowResolved
        from vitals_stream.pipeline.session import PipelineState
        from vitals_stream.stream.window import Window

        processor = _processor(fake_source, gated_client, max_consecutive_failures=1)
        await processor.start()

        await fake_source.emit_frames(2)
        await settle()
        await processor._request(ForceTimeout)
        session = processor.session
        assert not session.sequencer.is_outstanding(1)

        # A failure that was already queued must not count against the session
        processor._post(1, WindowFailed(1, TransportError("late failure")))
        await settle()
        assert processor.state == PipelineState.RUNNING
        assert processor.stats.failures == 0
        assert session.consecutive_failures == 0

        # A late success must not clear an ongoing failure streak
        session.consecutive_failures = 1
        window = Window(window_id=1, session_id=1, frames=(make_frame(0), make_frame(1)))
        processor._post(1, WindowResolved(await MockEstimationClient().send(window)))
        await settle()
        assert session.consecutive_failures == 1
        assert processor.stats.stale_discarded == 1

        session.consecutive_failures = 0
        await processor.stop()

        results = await _collect(processor)
        assert [(r.window_id, r.status) for r in results] == [(1, ResultStatus.TIMEOUT)]
