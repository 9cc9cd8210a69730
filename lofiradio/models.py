import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional
from urllib.parse import unquote, urlparse

import numpy as np

AUDIO_EXTENSIONS = (".mp3", ".ogg", ".flac", ".wav", ".m4a", ".opus")


def format_title(identifier: str) -> str:
    """Human readable title from a track URL or path."""
    path = urlparse(identifier).path or identifier
    name = unquote(path.rstrip("/").split("/")[-1])

    stem = name
    for ext in AUDIO_EXTENSIONS:
        if stem.lower().endswith(ext):
            stem = stem[: -len(ext)]
            break

    words = re.sub(r"[_\-]+", " ", stem).split()
    title = " ".join(word[:1].upper() + word[1:].lower() for word in words)

    # Catalog file names usually lead with a track number
    title = title.lstrip("0123456789").lstrip(" .")
    return title or stem or identifier


@dataclass
class Track:
    identifier: str
    title: str
    duration: Optional[float] = None

    @classmethod
    def from_identifier(cls, identifier: str) -> "Track":
        return cls(identifier=identifier, title=format_title(identifier))


@dataclass
class DecodedAudio:
    samples: np.ndarray  # int16, shape (frames, channels)
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1]) if self.samples.ndim > 1 else 1

    @property
    def duration(self) -> float:
        if not self.sample_rate:
            return 0.0
        return self.frames / float(self.sample_rate)


@dataclass
class BufferedTrack:
    track: Track
    data: bytes = field(repr=False)
    audio: Optional[DecodedAudio] = field(default=None, repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


class PipelineState(Enum):
    IDLE = auto()
    PREFETCHING = auto()
    PLAYING = auto()
    PAUSED = auto()
    FINISHING = auto()
    TERMINATED = auto()
