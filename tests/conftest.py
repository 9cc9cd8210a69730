import itertools
import threading
import time
from typing import Dict, Iterable, List, Optional
from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

from lofiradio.control import Command, ControlBus, PlaybackState
from lofiradio.errors import DecodeFailed, FetchCancelled
from lofiradio.models import DecodedAudio, Track
from lofiradio.pipeline import PlaybackPipeline

SAMPLE_RATE = 44100


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def settle(bus, sink, timeout: float = 3.0) -> bool:
    """Wait until the driver has handled every message queued so far."""
    seen = sink.volume_calls
    bus.submit(Command.volume_set(sink.volume()))
    return wait_for(lambda: sink.volume_calls > seen, timeout)


def make_audio(seconds: float = 2.0, value: int = 0) -> DecodedAudio:
    samples = np.full((int(SAMPLE_RATE * seconds), 2), value, dtype=np.int16)
    return DecodedAudio(samples=samples, sample_rate=SAMPLE_RATE)


def make_response(chunks: Iterable[bytes] = (b"audio",), status: int = 200, text: str = ""):
    response = MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.status_code = status
    response.text = text
    response.iter_content.return_value = list(chunks)
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
    else:
        response.raise_for_status.return_value = None
    return response


class FakeResolver:
    def __init__(self, sequence: List):
        self.sequence = list(sequence)
        self.calls = 0
        self.lock = threading.Lock()

    def resolve(self, cancel: Optional[threading.Event] = None) -> str:
        with self.lock:
            index = min(self.calls, len(self.sequence) - 1)
            self.calls += 1
            item = self.sequence[index]
        if isinstance(item, BaseException):
            raise item
        return item

    def describe(self, identifier: str) -> Track:
        return Track.from_identifier(identifier)


class FakeFetcher:
    def __init__(self, failures: Optional[Dict[str, BaseException]] = None,
                 gates: Optional[Dict[str, threading.Event]] = None):
        self.failures = failures or {}
        self.gates = gates or {}
        self.calls: List[str] = []
        self.cancels: Dict[str, threading.Event] = {}

    def fetch(self, identifier: str, cancel: Optional[threading.Event] = None) -> bytes:
        self.calls.append(identifier)
        cancel = cancel or threading.Event()
        self.cancels[identifier] = cancel
        gate = self.gates.get(identifier)
        if gate is not None:
            while not gate.wait(0.01):
                if cancel.is_set():
                    raise FetchCancelled(identifier)
        if identifier in self.failures:
            raise self.failures[identifier]
        return f"bytes:{identifier}".encode()


class FakeDecoder:
    def __init__(self, broken: Iterable[str] = (), seconds: float = 2.0):
        self.broken = set(broken)
        self.seconds = seconds

    def decode(self, data: bytes, identifier: str = "") -> DecodedAudio:
        if identifier in self.broken:
            raise DecodeFailed(identifier, "invalid data found when processing input")
        return make_audio(self.seconds)


class FakeSink:
    """Records every binding change; refuses to bind over a live binding.

    With ``rollover`` set it accepts a queued track and switches to it when
    ``finish`` plays the bound one out, like the device callback does.
    """

    def __init__(self, max_volume: float = 1.0, rollover: bool = False):
        self.on_finished = None
        self.on_device_error = None
        self.max_volume = max_volume
        self.rollover = rollover
        self.bound: Optional[Track] = None
        self.binding = 0
        self.queued: Optional[tuple] = None
        self.paused = False
        self.closed = False
        self._volume = 1.0
        self._ids = itertools.count(1)
        self.volume_gate: Optional[threading.Event] = None
        self.volume_calls = 0
        self.events: List[tuple] = []
        self.lock = threading.Lock()

    def bind(self, track: Track, audio: DecodedAudio) -> int:
        with self.lock:
            assert self.bound is None, "bound a track over a live binding"
            self.binding = next(self._ids)
            self.bound = track
            self.queued = None
            self.paused = False
            self.events.append(("bind", track.identifier))
            return self.binding

    def queue_next(self, track: Track, audio: DecodedAudio) -> Optional[int]:
        with self.lock:
            if not self.rollover or self.bound is None:
                return None
            binding = next(self._ids)
            self.queued = (track, binding)
            self.events.append(("queue", track.identifier))
            return binding

    def stop(self) -> Optional[Track]:
        with self.lock:
            previous = self.bound
            self.bound = None
            self.queued = None
            if previous is not None:
                self.events.append(("stop", previous.identifier))
            return previous

    def play(self) -> None:
        self.paused = False

    def resume(self) -> None:
        self.paused = False

    def pause(self) -> None:
        self.paused = True

    def set_volume(self, volume: float) -> float:
        if self.volume_gate is not None:
            self.volume_gate.wait(5)
        self._volume = min(max(volume, 0.0), self.max_volume)
        self.volume_calls += 1
        return self._volume

    def volume(self) -> float:
        return self._volume

    def position(self) -> float:
        return 0.5 if self.bound else 0.0

    def is_paused(self) -> bool:
        return self.paused

    def close(self) -> None:
        self.stop()
        self.closed = True

    def finish(self) -> None:
        """Play the bound track to its end, as the device thread would."""
        next_binding = None
        with self.lock:
            track, binding = self.bound, self.binding
            self.bound = None
            self.events.append(("finish", track.identifier))
            if self.queued is not None:
                self.bound, next_binding = self.queued
                self.binding = next_binding
                self.queued = None
                self.events.append(("roll", self.bound.identifier))
        self.on_finished(track, binding, next_binding)

    def bound_ids(self) -> List[str]:
        return [ident for kind, ident in self.events if kind == "bind"]


@pytest.fixture
def state():
    return PlaybackState(volume=1.0, message_ttl=60.0)


@pytest.fixture
def bus(state):
    return ControlBus(state, queue_size=16)


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def make_pipeline(bus, state, sink):
    created = []

    def factory(resolver, fetcher=None, decoder=None, **kwargs):
        kwargs.setdefault("failure_delay", 0.01)
        kwargs.setdefault("tick_interval", 0.01)
        pipeline = PlaybackPipeline(
            resolver,
            fetcher or FakeFetcher(),
            decoder or FakeDecoder(),
            sink,
            bus,
            state,
            **kwargs,
        )
        created.append(pipeline)
        return pipeline

    yield factory

    for pipeline in created:
        pipeline.stop()
        try:
            pipeline.wait(2)
        except Exception:
            pass
