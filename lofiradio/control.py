import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

from lofiradio import LOGGER_NAME
from lofiradio.models import PipelineState, Track

T = TypeVar("T")

SUBMIT_TIMEOUT = 0.5


class AtomicCell(Generic[T]):
    """One independently locked value of the playback state."""

    def __init__(self, value: T):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> T:
        with self._lock:
            old = self._value
            self._value = value
            return old

    def update(self, func: Callable[[T], T]) -> T:
        with self._lock:
            self._value = func(self._value)
            return self._value

    def compare_and_set(self, expected: T, value: T) -> bool:
        with self._lock:
            if self._value != expected:
                return False
            self._value = value
            return True


class CommandKind(Enum):
    PAUSE = auto()
    SKIP = auto()
    VOLUME_UP = auto()
    VOLUME_DOWN = auto()
    VOLUME_SET = auto()
    VOLUME_CHANGE = auto()
    QUIT = auto()


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    value: Optional[float] = None

    @classmethod
    def pause(cls) -> "Command":
        return cls(CommandKind.PAUSE)

    @classmethod
    def skip(cls) -> "Command":
        return cls(CommandKind.SKIP)

    @classmethod
    def volume_up(cls) -> "Command":
        return cls(CommandKind.VOLUME_UP)

    @classmethod
    def volume_down(cls) -> "Command":
        return cls(CommandKind.VOLUME_DOWN)

    @classmethod
    def volume_set(cls, value: float) -> "Command":
        return cls(CommandKind.VOLUME_SET, float(value))

    @classmethod
    def volume_change(cls, delta: float) -> "Command":
        return cls(CommandKind.VOLUME_CHANGE, float(delta))

    @classmethod
    def quit(cls) -> "Command":
        return cls(CommandKind.QUIT)


@dataclass(frozen=True)
class StatusSnapshot:
    title: Optional[str]
    elapsed: float
    duration: Optional[float]
    paused: bool
    volume: float
    state: PipelineState
    tracks_played: int
    message: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.title is None


class PlaybackState:
    def __init__(self, volume: float = 1.0, message_ttl: float = 4.0):
        self.track: AtomicCell[Optional[Track]] = AtomicCell(None)
        self.pipeline_state: AtomicCell[PipelineState] = AtomicCell(PipelineState.IDLE)
        self.paused = AtomicCell(False)
        self.volume = AtomicCell(float(volume))
        self.elapsed = AtomicCell(0.0)
        self.tracks_played = AtomicCell(0)
        self.skip_pending = AtomicCell(False)
        self.message: AtomicCell[Optional[Tuple[str, float]]] = AtomicCell(None)
        self.message_ttl = message_ttl

    def flash(self, text: str, ttl: Optional[float] = None) -> None:
        expires = time.monotonic() + (self.message_ttl if ttl is None else ttl)
        self.message.set((text, expires))

    def current_message(self) -> Optional[str]:
        value = self.message.get()
        if value is None:
            return None
        text, expires = value
        if time.monotonic() >= expires:
            self.message.compare_and_set(value, None)
            return None
        return text

    def snapshot(self) -> StatusSnapshot:
        track = self.track.get()
        return StatusSnapshot(
            title=track.title if track else None,
            elapsed=self.elapsed.get(),
            duration=track.duration if track else None,
            paused=self.paused.get(),
            volume=self.volume.get(),
            state=self.pipeline_state.get(),
            tracks_played=self.tracks_played.get(),
            message=self.current_message(),
        )


class ControlBus:
    """Carries commands from the UI into the pipeline driver.

    User commands share one FIFO inbox with the pipeline's internal events.
    Only user commands count against ``queue_size``; internal events are
    never dropped.
    """

    def __init__(self, state: PlaybackState, queue_size: int = 64, logger: Optional[logging.Logger] = None):
        self.state = state
        self.inbox: "queue.Queue[Any]" = queue.Queue()
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.control")
        self._slots = threading.BoundedSemaphore(max(1, queue_size))
        self._closed = threading.Event()

    def submit(self, command: Command) -> bool:
        if self._closed.is_set():
            self.logger.debug(f"Bus closed, dropping {command.kind.name}")
            return False

        if command.kind is CommandKind.SKIP:
            if not self.state.skip_pending.compare_and_set(False, True):
                self.logger.debug("Skip already in flight, ignoring")
                return False

        if not self._slots.acquire(timeout=SUBMIT_TIMEOUT):
            self.logger.warning(f"Command queue full, dropping {command.kind.name}")
            if command.kind is CommandKind.SKIP:
                self.state.skip_pending.set(False)
            return False

        self.inbox.put(command)
        return True

    def post(self, event: Any) -> None:
        self.inbox.put(event)

    def get(self, timeout: Optional[float] = None) -> Any:
        return self.inbox.get(timeout=timeout)

    def command_done(self) -> None:
        try:
            self._slots.release()
        except ValueError:
            self.logger.debug("Command slot released twice")

    def close(self) -> None:
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def snapshot(self) -> StatusSnapshot:
        return self.state.snapshot()
