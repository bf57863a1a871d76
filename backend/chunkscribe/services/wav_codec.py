"""Minimal 16-bit mono PCM WAV container codec."""

from __future__ import annotations

import io
import struct
import wave
from pathlib import Path


SAMPLE_WIDTH = 2  # int16
CHANNELS = 1

_DATA_TAG = b"data"


class MalformedContainer(ValueError):
    """Raised when a WAV payload has no ``data`` sub-chunk."""


def encode(pcm: bytes, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def decode(container: bytes) -> bytes:
    """Return the PCM payload of a WAV container.

    The ``data`` tag is located by scanning rather than assuming a 44-byte
    header, so containers with extra sub-chunks (LIST, fact, ...) decode too.
    """
    pos = container.find(_DATA_TAG)
    if pos < 0 or pos + 8 > len(container):
        raise MalformedContainer("Invalid WAV file: no data chunk found")
    (length,) = struct.unpack_from("<I", container, pos + 4)
    start = pos + 8
    return container[start:start + length]


def write_file(path: Path, pcm: bytes, sample_rate: int) -> int:
    """Encode ``pcm`` into ``path``; returns the number of bytes written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = encode(pcm, sample_rate)
    path.write_bytes(data)
    return len(data)


def read_pcm(path: Path) -> bytes:
    return decode(Path(path).read_bytes())


def duration_ms(pcm_len: int, sample_rate: int) -> int:
    return int(pcm_len * 1000 // (sample_rate * SAMPLE_WIDTH * CHANNELS))
