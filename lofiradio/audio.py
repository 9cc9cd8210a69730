import logging
import shutil
import subprocess
import threading
from typing import Callable, Optional, Tuple

import numpy as np

from lofiradio import LOGGER_NAME
from lofiradio.errors import DecodeFailed, OutputDeviceError, StartupError
from lofiradio.models import DecodedAudio, Track

SAMPLE_RATE = 44100
CHANNELS = 2
BLOCK_FRAMES = 1024
DECODE_TIMEOUT = 60
INT16_SCALE = 1.0 / 32768.0


class FFmpegDecoder:
    """Decodes a complete audio payload to 16-bit PCM by piping it through ffmpeg."""

    def __init__(self, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS,
                 timeout: float = DECODE_TIMEOUT, binary: str = "ffmpeg",
                 logger: Optional[logging.Logger] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.timeout = timeout
        self.binary = binary
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.decoder")

    def check_available(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise StartupError(f"{self.binary} not found on PATH; it is needed to decode audio")
        return path

    def _command(self):
        return [
            self.binary,
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-f", "s16le",
            "-acodec", "pcm_s16le",
            "-ac", str(self.channels),
            "-ar", str(self.sample_rate),
            "pipe:1",
        ]

    def decode(self, data: bytes, identifier: str = "<payload>") -> DecodedAudio:
        if not data:
            raise DecodeFailed(identifier, "empty payload")

        cmd = self._command()
        self.logger.debug(f"Decoding {identifier}: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                input=data,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise DecodeFailed(identifier, f"ffmpeg timed out after {self.timeout}s") from e
        except OSError as e:
            raise DecodeFailed(identifier, f"cannot run {self.binary}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise DecodeFailed(identifier, stderr[-300:] or f"ffmpeg exited with {result.returncode}")

        frame_bytes = 2 * self.channels
        usable = len(result.stdout) - len(result.stdout) % frame_bytes
        if usable == 0:
            raise DecodeFailed(identifier, "no audio frames in payload")

        samples = np.frombuffer(result.stdout[:usable], dtype=np.int16).reshape(-1, self.channels)
        audio = DecodedAudio(samples=samples, sample_rate=self.sample_rate)
        self.logger.debug(f"Decoded {identifier}: {audio.frames} frames, {audio.duration:.1f}s")
        return audio


class AudioSink:
    """Exclusive owner of the output device.

    The device callback runs on the audio driver's own thread and reads the
    bound track under ``_lock``; every binding change happens under the same
    lock so at most one track ever feeds the device. A track queued with
    ``queue_next`` takes over inside the same device block the bound track
    runs out in.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS,
                 block_frames: int = BLOCK_FRAMES, volume: float = 1.0, max_volume: float = 1.0,
                 device=None, stream_factory: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_frames = block_frames
        self.max_volume = max_volume
        self.device = device
        self.stream_factory = stream_factory
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.sink")

        # on_finished(track, binding, next_binding); next_binding is the
        # queued binding that took over, or None when the device fell silent.
        self.on_finished: Optional[Callable[[Track, int, Optional[int]], None]] = None
        self.on_device_error: Optional[Callable[[OutputDeviceError], None]] = None

        self.stream = None
        self._lock = threading.Lock()
        self._samples: Optional[np.ndarray] = None
        self._track: Optional[Track] = None
        self._binding = 0
        self._last_binding = 0
        self._queued: Optional[Tuple[Track, np.ndarray, int]] = None
        self._cursor = 0
        self._paused = False
        self._volume = self._clamp(volume)
        self._closing = False
        self.underflows = 0

    def _clamp(self, volume: float) -> float:
        return min(max(float(volume), 0.0), self.max_volume)

    def open(self) -> None:
        factory = self.stream_factory
        if factory is None:
            try:
                import sounddevice as sd
            except OSError as e:
                raise StartupError(f"Audio output unavailable: {e}") from e
            factory = sd.OutputStream

        try:
            self.stream = factory(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self.block_frames,
                device=self.device,
                callback=self._callback,
                finished_callback=self._stream_finished,
            )
            self.stream.start()
        except Exception as e:
            self.stream = None
            raise StartupError(f"Cannot open audio output device: {e}") from e

        self.logger.info(f"Opened output device={self.device} sr={self.sample_rate} "
                         f"ch={self.channels} block={self.block_frames}")

    def close(self) -> None:
        self._closing = True
        self.stop()
        if self.stream is None:
            return
        try:
            self.stream.stop()
            self.stream.close()
        except Exception as e:
            self.logger.error(f"Error closing output stream: {e}")
        finally:
            self.stream = None
        self.logger.info("Output device released")

    def _prepare(self, audio: DecodedAudio) -> np.ndarray:
        samples = audio.samples
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        if samples.shape[1] != self.channels:
            samples = self._match_channels(samples)
        return samples

    def bind(self, track: Track, audio: DecodedAudio) -> int:
        samples = self._prepare(audio)

        with self._lock:
            previous = self._track
            self._last_binding += 1
            self._binding = self._last_binding
            self._samples = samples
            self._track = track
            self._queued = None
            self._cursor = 0
            self._paused = False
            binding = self._binding

        if previous is not None:
            self.logger.debug(f"Unbound {previous.title}")
        self.logger.debug(f"Bound {track.title} as binding {binding}")
        return binding

    def queue_next(self, track: Track, audio: DecodedAudio) -> Optional[int]:
        """Hand over the track that follows the bound one.

        The device switches to it in the same block the bound track ends in,
        so there is no silence between them. Returns the binding it will play
        under, or None when nothing is bound to follow.
        """
        samples = self._prepare(audio)

        with self._lock:
            if self._samples is None:
                return None
            self._last_binding += 1
            binding = self._last_binding
            self._queued = (track, samples, binding)

        self.logger.debug(f"Queued {track.title} as binding {binding}")
        return binding

    def _match_channels(self, samples: np.ndarray) -> np.ndarray:
        if samples.shape[1] == 1:
            return np.repeat(samples, self.channels, axis=1)
        return samples[:, : self.channels] if samples.shape[1] > self.channels else \
            np.pad(samples, ((0, 0), (0, self.channels - samples.shape[1])))

    def stop(self) -> Optional[Track]:
        with self._lock:
            previous = self._track
            self._samples = None
            self._track = None
            self._queued = None
            self._cursor = 0
        if previous is not None:
            self.logger.debug(f"Stopped {previous.title}")
        return previous

    def play(self) -> None:
        with self._lock:
            self._paused = False

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        self.play()

    def set_volume(self, volume: float) -> float:
        volume = self._clamp(volume)
        with self._lock:
            self._volume = volume
        return volume

    def volume(self) -> float:
        with self._lock:
            return self._volume

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def is_bound(self) -> bool:
        with self._lock:
            return self._samples is not None

    def current(self) -> Optional[Track]:
        with self._lock:
            return self._track

    def position(self) -> float:
        with self._lock:
            return self._cursor / float(self.sample_rate)

    def _callback(self, outdata, frames, time_info, status) -> None:
        # Runs on the device thread: no logging, no blocking beyond _lock.
        if status and getattr(status, "output_underflow", False):
            self.underflows += 1

        finished = []
        with self._lock:
            if self._samples is None or self._paused:
                outdata.fill(0.0)
                return

            written = 0
            while written < frames and self._samples is not None:
                start = self._cursor
                chunk = self._samples[start:start + frames - written]
                count = chunk.shape[0]
                outdata[written:written + count] = chunk * (self._volume * INT16_SCALE)
                written += count
                self._cursor = start + count

                if self._cursor < self._samples.shape[0]:
                    break
                ended = (self._track, self._binding)
                if self._queued is not None:
                    self._track, self._samples, self._binding = self._queued
                    self._queued = None
                    finished.append(ended + (self._binding,))
                else:
                    self._samples = None
                    self._track = None
                    finished.append(ended + (None,))
                self._cursor = 0

            if written < frames:
                outdata[written:] = 0.0

        if self.on_finished is not None:
            for track, binding, next_binding in finished:
                self.on_finished(track, binding, next_binding)

    def _stream_finished(self) -> None:
        if self._closing:
            return
        error = OutputDeviceError("Audio output stream stopped unexpectedly")
        if self.on_device_error is not None:
            self.on_device_error(error)
