import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

from lofiradio import LOGGER_NAME
from lofiradio.config import FRAME_DELTA
from lofiradio.control import Command, CommandKind, ControlBus, PlaybackState
from lofiradio.errors import TRACK_ERRORS, CatalogUnavailable, FetchCancelled, OutputDeviceError
from lofiradio.models import BufferedTrack, PipelineState, Track

FAILURE_DELAY = 1.0
PREFETCH_WORKERS = 2


@dataclass(frozen=True)
class TrackFinished:
    binding: int
    track: Track
    next_binding: Optional[int] = None


@dataclass(frozen=True)
class PrefetchDone:
    job: "PrefetchJob"


@dataclass(frozen=True)
class DeviceLost:
    error: OutputDeviceError


class PrefetchJob:
    """Resolve, fetch and decode one track in the background.

    The future is the one-shot handoff of the finished ``BufferedTrack`` to
    the driver; nothing else reads it.
    """

    _ids = itertools.count(1)

    def __init__(self, delay: float = 0.0):
        self.id = next(self._ids)
        self.delay = delay
        self.cancel = threading.Event()
        self.future: Optional[Future] = None

    def done(self) -> bool:
        return self.future is not None and self.future.done()

    def ready(self) -> bool:
        return self.done() and not self.future.cancelled() and self.future.exception() is None

    def abort(self) -> None:
        self.cancel.set()
        if self.future is not None:
            self.future.cancel()

    def __repr__(self) -> str:
        return f"<PrefetchJob {self.id}>"


class PlaybackPipeline:
    def __init__(self, resolver, fetcher, decoder, sink, bus: ControlBus, state: PlaybackState,
                 failure_delay: float = FAILURE_DELAY, tick_interval: float = FRAME_DELTA,
                 workers: int = PREFETCH_WORKERS, volume_step: float = 0.1,
                 logger: Optional[logging.Logger] = None):
        self.resolver = resolver
        self.fetcher = fetcher
        self.decoder = decoder
        self.sink = sink
        self.bus = bus
        self.state = state
        self.failure_delay = failure_delay
        self.tick_interval = tick_interval
        self.volume_step = volume_step
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.pipeline")

        self.sink.on_finished = self._on_sink_finished
        self.sink.on_device_error = self._on_device_error

        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Prefetch")
        self.current: Optional[BufferedTrack] = None
        self.binding = 0
        self.next_job: Optional[PrefetchJob] = None
        # (binding, job) already handed to the sink to follow the current track
        self.queued: Optional[Tuple[int, PrefetchJob]] = None
        self.awaiting = False
        self.skipping = False
        self.absorb_skip = False
        self.fatal: Optional[BaseException] = None

        self._stop = threading.Event()
        self.driver_thread: Optional[threading.Thread] = None
        self.ticker_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_state(self, new_state: PipelineState) -> None:
        old_state = self.state.pipeline_state.set(new_state)
        if old_state != new_state:
            self.logger.debug(f"Pipeline state changed: {old_state.name} -> {new_state.name}")

    def get_state(self) -> PipelineState:
        return self.state.pipeline_state.get()

    def start(self) -> None:
        if self.driver_thread is not None:
            return

        self.state.volume.set(self.sink.set_volume(self.state.volume.get()))
        self.set_state(PipelineState.PREFETCHING)
        self.awaiting = True
        self.next_job = self._submit()

        self.driver_thread = threading.Thread(target=self._drive, daemon=True, name="PipelineDriver")
        self.driver_thread.start()
        self.ticker_thread = threading.Thread(target=self._tick, daemon=True, name="StatusTicker")
        self.ticker_thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the pipeline terminates; re-raises a fatal device error."""
        if self.driver_thread is not None:
            self.driver_thread.join(timeout)
            if self.driver_thread.is_alive():
                return False
        if self.fatal is not None:
            raise self.fatal
        return True

    def run(self) -> None:
        self.start()
        self.wait()

    def submit(self, command: Command) -> bool:
        return self.bus.submit(command)

    def stop(self) -> None:
        if not self.bus.submit(Command.quit()) and not self._stop.is_set():
            self.bus.post(Command.quit())

    @property
    def running(self) -> bool:
        return self.driver_thread is not None and self.driver_thread.is_alive()

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _drive(self) -> None:
        self.logger.info("Pipeline driver started")
        try:
            while not self._stop.is_set():
                message = self.bus.get()
                try:
                    self._dispatch(message)
                finally:
                    if isinstance(message, Command):
                        self.bus.command_done()
        except Exception as e:
            self.logger.exception(f"Pipeline driver crashed: {e}")
            self.fatal = e
            self._shutdown()
        self.logger.info("Pipeline driver stopped")

    def _dispatch(self, message) -> None:
        if isinstance(message, Command):
            self._handle_command(message)
        elif isinstance(message, TrackFinished):
            self._handle_finished(message)
        elif isinstance(message, PrefetchDone):
            self._handle_prefetch(message.job)
        elif isinstance(message, DeviceLost):
            self.logger.error(f"Output device lost: {message.error}")
            self.fatal = message.error
            self._shutdown()
        else:
            self.logger.warning(f"Ignoring unknown message: {message!r}")

    def _handle_command(self, command: Command) -> None:
        kind = command.kind
        if kind is CommandKind.QUIT:
            self.logger.info("Quit requested")
            self._shutdown()
        elif kind is CommandKind.SKIP:
            self._skip()
        elif kind is CommandKind.PAUSE:
            self._toggle_pause()
        elif kind is CommandKind.VOLUME_UP:
            self._set_volume(self.sink.volume() + self.volume_step)
        elif kind is CommandKind.VOLUME_DOWN:
            self._set_volume(self.sink.volume() - self.volume_step)
        elif kind is CommandKind.VOLUME_CHANGE:
            self._set_volume(self.sink.volume() + (command.value or 0.0))
        elif kind is CommandKind.VOLUME_SET:
            self._set_volume(command.value if command.value is not None else self.sink.volume())

    def _set_volume(self, volume: float) -> None:
        applied = self.sink.set_volume(volume)
        self.state.volume.set(applied)
        self.logger.debug(f"Volume set to {applied:.2f}")

    def _toggle_pause(self) -> None:
        if self.current is None:
            self.logger.debug("Nothing playing, ignoring pause")
            return
        if self.get_state() == PipelineState.PAUSED:
            self.sink.resume()
            self.state.paused.set(False)
            self.set_state(PipelineState.PLAYING)
            self.logger.info("Resumed")
        else:
            self.sink.pause()
            self.state.paused.set(True)
            self.set_state(PipelineState.PAUSED)
            self.logger.info("Paused")

    def _skip(self) -> None:
        if self.absorb_skip:
            # The queued track already took over when this skip was pending.
            self.absorb_skip = False
            self.logger.debug("Skip already satisfied by the queued track")
            return

        self.skipping = True
        if self.current is not None:
            self.logger.info(f"Skipping {self.current.track.title}")
            self.sink.stop()
            self.queued = None
            self.current = None
            self.state.paused.set(False)
        elif self.awaiting:
            self.logger.debug("Skip while waiting for a track, the incoming track completes it")

        self.awaiting = True
        if self.next_job is not None and self.next_job.ready():
            self._promote()
            return

        self.set_state(PipelineState.PREFETCHING)
        if self.next_job is None:
            self.next_job = self._submit()

    def _handle_finished(self, event: TrackFinished) -> None:
        if self.current is None or event.binding != self.binding:
            self.logger.debug(f"Ignoring stale finish of {event.track.title}")
            return
        if self.queued is not None and event.next_binding == self.queued[0]:
            self._rolled_over(event)
            return
        if self.state.skip_pending.get():
            # A queued Skip will advance instead.
            self.logger.debug(f"Finish of {event.track.title} superseded by skip")
            return

        self.logger.info(f"Finished {event.track.title}")
        self.current = None
        self.awaiting = True
        self.set_state(PipelineState.FINISHING)

        if self.next_job is not None and self.next_job.ready():
            self._promote()
        elif self.next_job is None:
            self.next_job = self._submit()
        else:
            self.logger.warning("Next track not ready yet, waiting for it")

    def _rolled_over(self, event: TrackFinished) -> None:
        binding, job = self.queued
        self.queued = None
        self.logger.info(f"Finished {event.track.title}")
        self.set_state(PipelineState.FINISHING)
        if self.state.skip_pending.get():
            # The pending skip would otherwise skip the track that just started.
            self.skipping = True
            self.absorb_skip = True

        buffered = job.future.result()
        if self.next_job is job:
            self.next_job = None
        self._adopt(buffered, binding)
        self.next_job = self._submit()

    def _handle_prefetch(self, job: PrefetchJob) -> None:
        if job is not self.next_job or job.future.cancelled():
            self.logger.debug(f"Discarding result of {job}")
            return

        error = job.future.exception()
        if error is not None:
            if isinstance(error, FetchCancelled):
                self.logger.debug(f"{job} cancelled")
                self.next_job = None
                return
            if not isinstance(error, TRACK_ERRORS):
                raise error
            self._track_failed(error)
            return

        buffered = job.future.result()
        if self.awaiting:
            self._promote()
        else:
            self.logger.info(f"Next track buffered: {buffered.track.title}")
            self._queue_next(job, buffered)

    def _queue_next(self, job: PrefetchJob, buffered: BufferedTrack) -> None:
        if self.current is None or self.queued is not None or buffered.audio is None:
            return
        binding = self.sink.queue_next(buffered.track, buffered.audio)
        if binding is not None:
            self.queued = (binding, job)

    def _track_failed(self, error: BaseException) -> None:
        self.logger.warning(f"Dropping track: {error}")
        if isinstance(error, CatalogUnavailable):
            self.state.flash("catalog unavailable, retrying")
        else:
            self.state.flash("track unavailable, picking another")
        self.next_job = self._submit(delay=self.failure_delay)

    def _promote(self) -> None:
        buffered = self.next_job.future.result()
        self.next_job = None
        self._bind(buffered)
        self.next_job = self._submit()

    def _bind(self, buffered: BufferedTrack) -> None:
        self.sink.stop()
        self.queued = None
        binding = self.sink.bind(buffered.track, buffered.audio)
        self.sink.play()
        self._adopt(buffered, binding)

    def _adopt(self, buffered: BufferedTrack, binding: int) -> None:
        track = buffered.track
        if buffered.audio is not None:
            track.duration = buffered.audio.duration

        self.binding = binding
        self.current = buffered
        self.awaiting = False

        self.state.track.set(track)
        self.state.elapsed.set(0.0)
        self.state.paused.set(False)
        self.state.tracks_played.update(lambda count: count + 1)
        if self.skipping:
            self.skipping = False
            self.state.skip_pending.set(False)
        self.set_state(PipelineState.PLAYING)
        self.logger.info(f"Playing: {track.title}")

    # ------------------------------------------------------------------
    # Prefetching
    # ------------------------------------------------------------------

    def _submit(self, delay: float = 0.0) -> PrefetchJob:
        job = PrefetchJob(delay=delay)
        job.future = self.executor.submit(self._prefetch, job)
        job.future.add_done_callback(lambda _: self.bus.post(PrefetchDone(job)))
        self.logger.debug(f"Submitted {job}")
        return job

    def _prefetch(self, job: PrefetchJob) -> BufferedTrack:
        if job.delay and job.cancel.wait(job.delay):
            raise FetchCancelled("<prefetch>")

        identifier = self.resolver.resolve(cancel=job.cancel)
        track = self.resolver.describe(identifier)
        if job.cancel.is_set():
            raise FetchCancelled(identifier)

        data = self.fetcher.fetch(identifier, cancel=job.cancel)
        if job.cancel.is_set():
            raise FetchCancelled(identifier)

        audio = self.decoder.decode(data, identifier)
        track.duration = audio.duration
        return BufferedTrack(track=track, data=data, audio=audio)

    # ------------------------------------------------------------------
    # Callbacks from other threads
    # ------------------------------------------------------------------

    def _on_sink_finished(self, track: Track, binding: int, next_binding: Optional[int] = None) -> None:
        self.bus.post(TrackFinished(binding=binding, track=track, next_binding=next_binding))

    def _on_device_error(self, error: OutputDeviceError) -> None:
        self.bus.post(DeviceLost(error=error))

    def _tick(self) -> None:
        while not self._stop.is_set():
            if self.current is not None:
                self.state.elapsed.set(self.sink.position())
            self._stop.wait(self.tick_interval)

    def _shutdown(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        self.bus.close()

        if self.next_job is not None:
            self.next_job.abort()
            self.next_job = None
        self.executor.shutdown(wait=False, cancel_futures=True)

        try:
            self.sink.close()
        except Exception as e:
            self.logger.error(f"Error releasing output device: {e}")
        self.current = None
        self.queued = None
        self.awaiting = False
        self.state.track.set(None)
        self.set_state(PipelineState.TERMINATED)
