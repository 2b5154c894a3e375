"""
ResultSequencer and ResultChannel Tests
=======================================

In-order release of window results and the output channel.
"""

import asyncio

import pytest

from conftest import make_frame


def _window(window_id, session_id=1):
    from vitals_stream.stream.window import Window

    return Window(
        window_id=window_id,
        session_id=session_id,
        frames=(make_frame(window_id * 2), make_frame(window_id * 2 + 1)),
    )


def _result(window):
    from vitals_stream.models.estimation import EstimationResult

    return EstimationResult(
        window_id=window.window_id,
        session_id=window.session_id,
        start_timestamp=window.start_timestamp,
        end_timestamp=window.end_timestamp,
        frame_count=window.frame_count,
    )


class TestResultSequencer:
    """Ordering and watermark."""

    def test_out_of_order_results_are_released_in_order(self):
        """Responses 2, 3, 1 are released as 1, 2, 3."""
        from vitals_stream.pipeline.sequencer import ResultSequencer

        sequencer = ResultSequencer(session_id=1)
        windows = [_window(i) for i in (1, 2, 3)]
        for window in windows:
            sequencer.expect(window)

        assert sequencer.resolve(_result(windows[1])) == []
        assert sequencer.resolve(_result(windows[2])) == []
        assert sequencer.pending == 2
        assert sequencer.in_flight == 1

        released = sequencer.resolve(_result(windows[0]))

        assert [r.window_id for r in released] == [1, 2, 3]
        assert sequencer.watermark == 3
        assert sequencer.idle

    def test_placeholder_advances_watermark(self):
        """A timeout placeholder lets held results through."""
        from vitals_stream.models.estimation import ResultStatus
        from vitals_stream.pipeline.sequencer import ResultSequencer

        sequencer = ResultSequencer(session_id=1)
        windows = [_window(i) for i in (1, 2)]
        for window in windows:
            sequencer.expect(window)
        sequencer.resolve(_result(windows[1]))

        released = sequencer.resolve_placeholder(1, ResultStatus.TIMEOUT, error="late")

        assert [r.window_id for r in released] == [1, 2]
        assert released[0].status == ResultStatus.TIMEOUT
        assert released[0].is_placeholder
        assert released[0].vitals == {}
        assert released[0].frame_count == windows[0].frame_count
        assert not released[1].is_placeholder

    def test_late_result_after_placeholder_is_discarded(self):
        from vitals_stream.models.estimation import ResultStatus
        from vitals_stream.pipeline.sequencer import ResultSequencer

        sequencer = ResultSequencer(session_id=1)
        window = _window(1)
        sequencer.expect(window)
        sequencer.resolve_placeholder(1, ResultStatus.TIMEOUT)

        assert sequencer.resolve(_result(window)) == []
        assert sequencer.discarded == 1

    def test_duplicate_registration_is_rejected(self):
        from vitals_stream.pipeline.sequencer import ResultSequencer

        sequencer = ResultSequencer()
        sequencer.expect(_window(1))

        with pytest.raises(ValueError):
            sequencer.expect(_window(1))

    def test_outstanding_lists_unresolved_ids(self):
        from vitals_stream.pipeline.sequencer import ResultSequencer

        sequencer = ResultSequencer(session_id=1)
        windows = [_window(i) for i in (1, 2, 3)]
        for window in windows:
            sequencer.expect(window)
        sequencer.resolve(_result(windows[1]))

        assert sequencer.outstanding() == [1, 3]


class TestResultChannel:
    """Output channel."""

    @pytest.mark.asyncio
    async def test_iteration_ends_on_close(self):
        from vitals_stream.pipeline.channel import ResultChannel

        channel = ResultChannel()
        channel.put(_result(_window(1)))
        channel.put(_result(_window(2)))
        channel.close()

        received = [r.window_id async for r in channel]

        assert received == [1, 2]
        assert channel.size == 0

    @pytest.mark.asyncio
    async def test_bounded_channel_drops_oldest(self):
        from vitals_stream.pipeline.channel import ResultChannel

        channel = ResultChannel(maxsize=2)
        assert channel.put(_result(_window(1)))
        assert channel.put(_result(_window(2)))
        assert not channel.put(_result(_window(3)))
        channel.close()

        received = [r.window_id async for r in channel]

        assert received == [2, 3]
        assert channel.metrics()["dropped_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_channel_raises_after_drain(self):
        from vitals_stream.errors import ResourceUnavailable
        from vitals_stream.pipeline.channel import ResultChannel

        channel = ResultChannel()
        channel.put(_result(_window(1)))
        channel.close(ResourceUnavailable("camera gone"))

        received = []
        with pytest.raises(ResourceUnavailable):
            async for result in channel:
                received.append(result.window_id)

        assert received == [1]

    @pytest.mark.asyncio
    async def test_consumer_waits_for_results(self):
        from vitals_stream.pipeline.channel import ResultChannel

        channel = ResultChannel()
        getter = asyncio.create_task(channel.get())
        await asyncio.sleep(0)
        assert not getter.done()

        channel.put(_result(_window(1)))
        result = await asyncio.wait_for(getter, timeout=1.0)

        assert result.window_id == 1
