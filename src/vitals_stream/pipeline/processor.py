"""
Stream Processor
================

Owns the acquisition-and-estimation pipeline for one frame source.

Data flow:
    FrameSource -> (session_id, event) queue -> WindowBuffer -> dispatch tasks
        -> EstimationClient -> (session_id, event) queue -> ResultSequencer
        -> ResultChannel

Lifecycle:
    Idle -> Initializing -> Running -> Stopping -> Idle, plus Failed.

Design Rules:
    - A single event task is the only mutator of session state
    - Windows are dispatched as independent tasks, bounded by max_in_flight
    - The source waits while frames or sealed windows back up (backpressure)
    - Results are released strictly in window-id order
    - Late results from an abandoned session are discarded by session id
    - Recoverable errors become placeholders; they never break ordering
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set

from vitals_stream.assets import BuildMode, DecoderAssets, resolve_decoder_assets
from vitals_stream.errors import (
    BackendError,
    TransportError,
    VitalsStreamError,
)
from vitals_stream.estimation.base import EstimationClient
from vitals_stream.models.estimation import EstimationResult, ResultStatus
from vitals_stream.pipeline.channel import ResultChannel
from vitals_stream.pipeline.events import (
    FlushRequested,
    ForceTimeout,
    PipelineEvent,
    WindowFailed,
    WindowResolved,
    WindowTimedOut,
)
from vitals_stream.pipeline.sequencer import ResultSequencer
from vitals_stream.pipeline.session import PipelineState, StreamSession
from vitals_stream.sources.base import (
    FrameArrived,
    FrameSink,
    FrameSource,
    SourceEvent,
    SourceFailed,
    StreamReset,
)
from vitals_stream.stream.window import Window
from vitals_stream.stream.window_buffer import WindowBuffer


logger = logging.getLogger(__name__)


ResetHook = Callable[[str], Awaitable[None]]

_SHUTDOWN = object()


class ProcessorMetrics:
    """Pipeline counters across sessions."""

    __slots__ = (
        "frames_received",
        "windows_sealed",
        "windows_dispatched",
        "results_emitted",
        "timeouts",
        "failures",
        "resubmits",
        "stale_discarded",
        "resets",
        "sessions",
    )

    def __init__(self) -> None:
        self.frames_received: int = 0
        self.windows_sealed: int = 0
        self.windows_dispatched: int = 0
        self.results_emitted: int = 0
        self.timeouts: int = 0
        self.failures: int = 0
        self.resubmits: int = 0
        self.stale_discarded: int = 0
        self.resets: int = 0
        self.sessions: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}


class StreamProcessor:
    """
    Windowed vitals estimation over a live or recorded frame stream.

    Attributes:
        source: Frame source (any FrameSource)
        client: Estimation backend (any EstimationClient)
        on_stream_reset: Optional hook; when set, a stream reset restarts the
            source under a fresh session instead of stopping the pipeline
        state: Current PipelineState
        error: Error that put the pipeline into Failed, if any

    Example:
        processor = StreamProcessor(source, client, window_length=150)
        await processor.start()

        async for result in processor.results():
            print(result.window_id, result.vitals)
    """

    def __init__(
        self,
        source: FrameSource,
        client: EstimationClient,
        window_length: Optional[int] = None,
        window_duration: Optional[float] = None,
        overlap: float = 0.0,
        result_timeout: float = 10.0,
        max_in_flight: int = 4,
        max_queued_frames: int = 32,
        max_resubmits: int = 1,
        resubmit_backoff: float = 0.5,
        max_consecutive_failures: int = 3,
        stop_grace: float = 5.0,
        output_maxsize: int = 0,
        asset_mode: BuildMode = BuildMode.STANDARD,
        core_url: Optional[str] = None,
        wasm_url: Optional[str] = None,
        on_stream_reset: Optional[ResetHook] = None,
    ) -> None:
        """
        Initialize stream processor.

        Args:
            source: Frame source
            client: Estimation client
            window_length: Frames per window (frame mode)
            window_duration: Seconds per window (duration mode)
            overlap: Carry-over fraction between windows
            result_timeout: Seconds a dispatched window may take, resubmits included
            max_in_flight: Concurrent estimation requests
            max_queued_frames: Unhandled frames before the source is made to wait
            max_resubmits: Resubmissions of a window after a retryable failure
            resubmit_backoff: Base delay between resubmissions
            max_consecutive_failures: Failed/timed-out windows in a row before
                Failed (0 = never)
            stop_grace: Seconds stop() waits for in-flight windows
            output_maxsize: Result channel bound (0 = unbounded)
            asset_mode: Decoder asset build mode
            core_url: Decoder core locator override
            wasm_url: Decoder execution module locator override
            on_stream_reset: Restart hook, awaited with the reset reason
        """
        # Fail fast on an invalid window configuration
        WindowBuffer(window_length=window_length, window_duration=window_duration, overlap=overlap)
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if max_queued_frames < 1:
            raise ValueError("max_queued_frames must be >= 1")
        if result_timeout <= 0:
            raise ValueError("result_timeout must be > 0")

        self.source = source
        self.client = client
        self.window_length = window_length
        self.window_duration = window_duration
        self.overlap = overlap
        self.result_timeout = result_timeout
        self.max_in_flight = max_in_flight
        self.max_queued_frames = max_queued_frames
        self.max_resubmits = max(0, max_resubmits)
        self.resubmit_backoff = resubmit_backoff
        self.max_consecutive_failures = max(0, max_consecutive_failures)
        self.stop_grace = stop_grace
        self.output_maxsize = output_maxsize
        self.asset_mode = BuildMode(asset_mode)
        self.core_url = core_url
        self.wasm_url = wasm_url
        self.on_stream_reset = on_stream_reset

        self._state = PipelineState.IDLE
        self._error: Optional[BaseException] = None
        self._assets: Optional[DecoderAssets] = None
        self._channel: Optional[ResultChannel] = None

        self._session: Optional[StreamSession] = None
        self._session_counter: int = 0
        self._events: Optional[asyncio.Queue] = None
        self._event_task: Optional[asyncio.Task] = None
        self._slots: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()

        # Backpressure bookkeeping
        self._frame_backlog: int = 0
        self._queued_windows: int = 0
        self._room = asyncio.Event()
        self._room.set()
        self._dispatch_idle = asyncio.Event()
        self._dispatch_idle.set()

        self._drained = asyncio.Event()
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._stop_lock = asyncio.Lock()

        self.stats = ProcessorMetrics()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def assets(self) -> Optional[DecoderAssets]:
        """Decoder assets resolved by init()."""
        return self._assets

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    async def init(self) -> None:
        """
        Prepare the pipeline: output channel, decoder assets, source.

        Raises:
            RuntimeError: If called outside Idle or Failed
            ResourceUnavailable: If the source or assets are unavailable
                (the pipeline enters Failed)
        """
        if self._state not in (PipelineState.IDLE, PipelineState.FAILED):
            raise RuntimeError(f"init() not allowed in state {self._state.value}")

        self._set_state(PipelineState.INITIALIZING)
        self._error = None
        self._channel = ResultChannel(maxsize=self.output_maxsize)
        self._stopped.clear()

        try:
            self._assets = resolve_decoder_assets(
                self.asset_mode, core_url=self.core_url, wasm_url=self.wasm_url
            )
            logger.info(f"Decoder assets: {self._assets.describe()}")
            await self.source.init()
        except Exception as e:
            self._enter_failed(e)
            self._stopped.set()
            raise

    async def start(self) -> None:
        """
        Start capturing and estimating.

        Calls init() first when Idle. No-op when already Running.

        Raises:
            RuntimeError: If called while Stopping or Failed
        """
        if self._state == PipelineState.IDLE:
            await self.init()
        if self._state == PipelineState.RUNNING:
            return
        if self._state != PipelineState.INITIALIZING:
            raise RuntimeError(f"start() not allowed in state {self._state.value}")

        self._events = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.max_in_flight)
        self._frame_backlog = 0
        self._queued_windows = 0
        self._dispatch_idle.set()
        self._drained.set()
        self._event_task = asyncio.create_task(self._event_loop(), name="stream_processor_events")

        try:
            await self._start_session()
        except Exception as e:
            self._enter_failed(e)
            await self._teardown(stop_source=True)
            raise

        if self._state != PipelineState.INITIALIZING:
            # stop() ran while the source was starting
            await self.source.stop()
            return
        self._set_state(PipelineState.RUNNING)

    async def stop(self) -> None:
        """
        Stop gracefully. Safe to call from any state.

        The source is stopped, queued frames are processed, the open window is
        flushed and every sealed window is dispatched. Dispatched windows then
        get `stop_grace` seconds to resolve before they are replaced with
        timeout placeholders.
        """
        async with self._stop_lock:
            if self._state == PipelineState.IDLE:
                return
            if self._state == PipelineState.FAILED:
                await self._teardown(stop_source=True)
                return

            logger.info("StreamProcessor stopping...")
            self._set_state(PipelineState.STOPPING)
            await self.source.stop()

            if self._event_task is not None and not self._event_task.done():
                await self._request(FlushRequested)
                # Windows waiting for a slot are sent; each is bounded by result_timeout
                await self._wait_until(self._dispatch_idle)
                if not await self._wait_until(self._drained, timeout=self.stop_grace):
                    logger.warning(
                        f"Windows still outstanding after {self.stop_grace}s, "
                        f"emitting timeout placeholders"
                    )
                    await self._request(ForceTimeout)

            await self._teardown(stop_source=False)
            logger.info("StreamProcessor stopped")

    async def wait_stopped(self) -> None:
        """Wait until the pipeline is Idle or Failed."""
        await self._stopped.wait()

    def results(self) -> AsyncIterator[EstimationResult]:
        """
        Ordered results of the current run.

        Iteration ends when the pipeline stops; raises the error if it failed.
        """
        if self._channel is None:
            raise RuntimeError("results() requires init()")
        return self._channel.__aiter__()

    def metrics(self) -> dict:
        """
        Get pipeline metrics for observability.

        Returns:
            Dict with state, processor counters, session, channel and source metrics
        """
        source_metrics = getattr(self.source, "metrics", None)
        client_metrics = getattr(self.client, "metrics", None)
        return {
            "state": self._state.value,
            "error": str(self._error) if self._error else None,
            "processor": self.stats.to_dict(),
            "backpressure": {
                "queued_frames": self._frame_backlog,
                "queued_windows": self._queued_windows,
                "accepting_frames": self._room.is_set(),
            },
            "session": self._session.to_dict() if self._session else None,
            "window_buffer": self._session.buffer.metrics() if self._session else None,
            "channel": self._channel.metrics() if self._channel else None,
            "source": source_metrics.to_dict() if source_metrics is not None else {
                "dropped_frames": self.source.dropped_frames
            },
            "client": client_metrics() if callable(client_metrics) else None,
        }

    # =========================================================================
    # Session management
    # =========================================================================

    async def _start_session(self) -> None:
        self._session_counter += 1
        session_id = self._session_counter
        self._session = StreamSession(
            session_id=session_id,
            buffer=WindowBuffer(
                window_length=self.window_length,
                window_duration=self.window_duration,
                overlap=self.overlap,
                on_window=self._dispatch,
                session_id=session_id,
            ),
            sequencer=ResultSequencer(session_id=session_id),
        )
        self.stats.sessions += 1
        self._drained.set()
        logger.info(f"Session {session_id} started")

        await self.source.start(self._make_sink(session_id))

    def _make_sink(self, session_id: int) -> FrameSink:
        async def sink(event: SourceEvent) -> None:
            if isinstance(event, FrameArrived):
                await self._admit_frame()
            self._post(session_id, event)

        return sink

    async def _admit_frame(self) -> None:
        """Hold the source while frames or sealed windows are backed up."""
        while self._state == PipelineState.RUNNING and not self._has_room():
            await self._room.wait()
        if self._events is not None:
            self._frame_backlog += 1
            self._update_room()

    def _has_room(self) -> bool:
        return (
            self._frame_backlog < self.max_queued_frames
            and self._queued_windows < self.max_in_flight
        )

    def _update_room(self) -> None:
        # Outside Running nothing waits, so stop and restart can drain the source
        if self._state != PipelineState.RUNNING or self._has_room():
            self._room.set()
        else:
            self._room.clear()

    async def _restart(self, reason: str) -> None:
        """Abandon the current session and restart the source under a new one."""
        old = self._session
        self._set_state(PipelineState.INITIALIZING)
        self._session = None
        self._drained.set()

        if old is not None:
            cleared = old.buffer.clear()
            logger.info(
                f"Session {old.session_id} abandoned ({reason}): "
                f"{cleared} buffered frames cleared, "
                f"{old.sequencer.in_flight} windows left in flight"
            )

        try:
            await self.on_stream_reset(reason)
            if await self._restart_abandoned():
                return
            source_hook = getattr(self.source, "on_stream_reset", None)
            if source_hook is not None:
                await source_hook()
            await self.source.stop()
            await self.source.init()
            if await self._restart_abandoned():
                return
            await self._start_session()
            if await self._restart_abandoned():
                return
        except Exception as e:
            logger.error(f"Restart after stream reset failed: {e}")
            self._fail(e)
            return

        self._set_state(PipelineState.RUNNING)

    async def _restart_abandoned(self) -> bool:
        """True once stop() or a failure took over a restart in progress."""
        if self._state == PipelineState.INITIALIZING:
            return False
        # Release what the restart opened after stop() stopped the source
        logger.info(f"Restart abandoned, pipeline is {self._state.value}")
        await self.source.stop()
        return True

    # =========================================================================
    # Event task
    # =========================================================================

    def _post(self, session_id: Optional[int], event: object) -> None:
        if self._events is None:
            logger.debug(f"Event {type(event).__name__} dropped, pipeline not running")
            return
        self._events.put_nowait((session_id, event))

    async def _event_loop(self) -> None:
        queue = self._events
        while True:
            session_id, event = await queue.get()
            if event is _SHUTDOWN:
                break
            if isinstance(event, FrameArrived):
                self._frame_backlog = max(0, self._frame_backlog - 1)
                self._update_room()
            try:
                await self._handle(session_id, event)
            except Exception as e:
                logger.exception(f"Event {type(event).__name__} handling failed")
                self._fail(e)

            session = self._session
            if session is None or session.drained:
                self._drained.set()
            else:
                self._drained.clear()

    async def _handle(self, session_id: Optional[int], event: PipelineEvent) -> None:
        if self._state == PipelineState.FAILED:
            if isinstance(event, (FlushRequested, ForceTimeout)):
                self._complete(event.done)
            return

        session = self._session
        if session is None or session_id != session.session_id:
            self._handle_stale(session_id, event)
            return

        if isinstance(event, FrameArrived):
            session.frames_received += 1
            self.stats.frames_received += 1
            session.buffer.push(event.frame)

        elif isinstance(event, WindowResolved):
            if not session.sequencer.is_outstanding(event.result.window_id):
                # Already replaced by a placeholder
                self.stats.stale_discarded += 1
                session.sequencer.resolve(event.result)
                return
            session.consecutive_failures = 0
            self._emit(session.sequencer.resolve(event.result))

        elif isinstance(event, WindowFailed):
            if not session.sequencer.is_outstanding(event.window_id):
                logger.debug(
                    f"Ignoring failure of already resolved window {event.window_id}: "
                    f"{event.error.message}"
                )
                return
            self.stats.failures += 1
            if event.error.critical:
                self._fail(event.error)
                return
            self._emit(
                session.sequencer.resolve_placeholder(
                    event.window_id, ResultStatus.FAILED, error=event.error.message
                )
            )
            self._count_failure(session, event.error)

        elif isinstance(event, WindowTimedOut):
            if not session.sequencer.is_outstanding(event.window_id):
                return
            self.stats.timeouts += 1
            self._emit(
                session.sequencer.resolve_placeholder(
                    event.window_id,
                    ResultStatus.TIMEOUT,
                    error=f"No result within {self.result_timeout}s",
                )
            )
            self._count_failure(
                session,
                TransportError(f"Window {event.window_id} timed out"),
            )

        elif isinstance(event, FlushRequested):
            window = session.buffer.flush()
            if window is not None:
                logger.info(f"Flushed partial window {window!r}")
            self._complete(event.done)

        elif isinstance(event, ForceTimeout):
            for window_id in session.sequencer.outstanding():
                task = session.tasks.get(window_id)
                if task is not None:
                    task.cancel()
                self.stats.timeouts += 1
                self._emit(
                    session.sequencer.resolve_placeholder(
                        window_id, ResultStatus.TIMEOUT, error="Pipeline stopped"
                    )
                )
            self._complete(event.done)

        elif isinstance(event, StreamReset):
            self.stats.resets += 1
            if self._state in (PipelineState.STOPPING, PipelineState.FAILED):
                logger.info(f"Stream reset ({event.reason}) ignored while {self._state.value}")
            elif self.on_stream_reset is not None:
                logger.info(f"Stream reset ({event.reason}), restarting session")
                await self._restart(event.reason)
            else:
                logger.info(f"Stream reset ({event.reason}), stopping pipeline")
                self._spawn(self.stop(), name="stream_processor_stop")

        elif isinstance(event, SourceFailed):
            logger.error(f"Frame source failed: {event.error}")
            self._fail(event.error)

    def _handle_stale(self, session_id: Optional[int], event: object) -> None:
        if isinstance(event, WindowResolved):
            self.stats.stale_discarded += 1
            logger.debug(
                f"Discarding late result for window {event.result.window_id} "
                f"of session {session_id}"
            )
        elif isinstance(event, (FlushRequested, ForceTimeout)):
            self._complete(event.done)
        elif isinstance(event, SourceFailed):
            # The source itself is shared across sessions
            self._fail(event.error)

    def _count_failure(self, session: StreamSession, error: VitalsStreamError) -> None:
        session.consecutive_failures += 1
        if (
            self.max_consecutive_failures
            and session.consecutive_failures >= self.max_consecutive_failures
        ):
            self._fail(
                VitalsStreamError(
                    f"{session.consecutive_failures} consecutive windows failed, "
                    f"last error: {error.message}",
                    critical=True,
                )
            )

    def _emit(self, released: List[EstimationResult]) -> None:
        for result in released:
            self.stats.results_emitted += 1
            if result.is_placeholder:
                logger.warning(
                    f"Window {result.window_id} resolved as {result.status.value} placeholder"
                )
            if self._channel is not None:
                self._channel.put(result)

    @staticmethod
    def _complete(done: Optional[asyncio.Future]) -> None:
        if done is not None and not done.done():
            done.set_result(None)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(self, window: Window) -> None:
        """WindowBuffer callback; runs inside the event task."""
        session = self._session
        session.sequencer.expect(window)
        self._drained.clear()
        self.stats.windows_sealed += 1
        self._queued_windows += 1
        self._dispatch_idle.clear()
        self._update_room()

        task = asyncio.create_task(
            self._run_window(session.session_id, window),
            name=f"window_{session.session_id}_{window.window_id}",
        )
        session.tasks[window.window_id] = task
        self._tasks.add(task)

        def _done(t: asyncio.Task, window_id: int = window.window_id) -> None:
            self._tasks.discard(t)
            session.tasks.pop(window_id, None)

        task.add_done_callback(_done)

    async def _run_window(self, session_id: int, window: Window) -> None:
        try:
            await self._slots.acquire()
        finally:
            self._window_left_queue()

        try:
            self.stats.windows_dispatched += 1
            result = await asyncio.wait_for(
                self._send_with_resubmits(window), timeout=self.result_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Window {window.window_id} timed out after {self.result_timeout}s"
            )
            self._post(session_id, WindowTimedOut(window.window_id))
        except VitalsStreamError as e:
            self._post(session_id, WindowFailed(window.window_id, e))
        except Exception as e:
            logger.exception(f"Estimation client crashed on window {window.window_id}")
            self._post(
                session_id,
                WindowFailed(window.window_id, VitalsStreamError(f"Client error: {e}")),
            )
        else:
            self._post(session_id, WindowResolved(result))
        finally:
            self._slots.release()

    def _window_left_queue(self) -> None:
        self._queued_windows = max(0, self._queued_windows - 1)
        if self._queued_windows == 0:
            self._dispatch_idle.set()
        self._update_room()

    async def _send_with_resubmits(self, window: Window) -> EstimationResult:
        attempt = 0
        while True:
            try:
                return await self.client.send(window)
            except (TransportError, BackendError) as e:
                if e.critical or not e.retryable or attempt >= self.max_resubmits:
                    logger.error(f"Window {window.window_id} failed: {e.message}")
                    raise
                attempt += 1
                self.stats.resubmits += 1
                delay = self.resubmit_backoff * attempt
                logger.warning(
                    f"Resubmitting window {window.window_id} in {delay:.2f}s "
                    f"(attempt {attempt}/{self.max_resubmits}): {e.message}"
                )
                await asyncio.sleep(delay)

    # =========================================================================
    # Stop and failure
    # =========================================================================

    async def _request(self, event_type) -> None:
        """Post a FlushRequested/ForceTimeout and wait until it was handled."""
        done = asyncio.get_running_loop().create_future()
        session_id = self._session.session_id if self._session else None
        self._post(session_id, event_type(done))
        if self._event_task is None:
            return
        await asyncio.wait({done, self._event_task}, return_when=asyncio.FIRST_COMPLETED)

    async def _wait_until(self, flag: asyncio.Event, timeout: Optional[float] = None) -> bool:
        """Wait for `flag`; returns early if the event task ends."""
        waiter = asyncio.create_task(flag.wait())
        watched = {waiter}
        if self._event_task is not None:
            watched.add(self._event_task)
        try:
            done, _ = await asyncio.wait(
                watched,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        return bool(done)

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _enter_failed(self, error: BaseException) -> None:
        logger.error(f"Pipeline failed: {error}")
        self._error = error
        self._set_state(PipelineState.FAILED)
        if self._channel is not None:
            self._channel.close(error)

    def _fail(self, error: BaseException) -> None:
        """Enter Failed from inside the event task and tear down in the background."""
        if self._state == PipelineState.FAILED:
            return
        self._enter_failed(error)
        self._spawn(self._teardown(stop_source=True), name="stream_processor_teardown")

    async def _teardown(self, stop_source: bool) -> None:
        if stop_source:
            await self.source.stop()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        # Tasks cancelled before their first step never left the queue
        self._queued_windows = 0
        self._dispatch_idle.set()

        event_task = self._event_task
        if event_task is not None and not event_task.done():
            self._post(None, _SHUTDOWN)
            await event_task
        self._event_task = None
        self._events = None
        self._session = None

        if self._channel is not None:
            self._channel.close(self._error)
        if self._state != PipelineState.FAILED:
            self._set_state(PipelineState.IDLE)
        self._stopped.set()

    def _set_state(self, state: PipelineState) -> None:
        if state != self._state:
            logger.info(f"StreamProcessor state: {self._state.value} -> {state.value}")
            self._state = state
            self._update_room()
