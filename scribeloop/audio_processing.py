"""
Audio format utilities.

Helpers for turning hardware audio into the canonical buffer (16kHz,
mono, little-endian int16 PCM), framing it as WAV, and producing waveform
summaries for display. StreamConverter is the one stateful piece: it
carries resampler history across capture blocks.

Usage:
    pcm = convert(raw, AudioFormat(48000, 2, 32), CANONICAL_FORMAT)
    wav = frame_as_wav(pcm)
    bars = generate_waveform(pcm, sample_count=100)
"""

import os
import struct
import tempfile
import time
from math import gcd
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from .errors import ConversionFailed
from .types import AudioFormat, CANONICAL_FORMAT


SUPPORTED_BIT_DEPTHS = (16, 32)
WAV_HEADER_SIZE = 44
INT16_SCALE = 32767.0

# Level meter defaults
LEVEL_WINDOW_SAMPLES = 512
LEVEL_GAIN = 10.0


def _validate_format(fmt: AudioFormat) -> None:
    if fmt.bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise ConversionFailed(f"Unsupported bit depth: {fmt.bit_depth}")
    if fmt.channels < 1 or fmt.sample_rate <= 0:
        raise ConversionFailed(f"Invalid audio format: {fmt}")


def _decode(data: bytes, fmt: AudioFormat) -> np.ndarray:
    """Decode raw bytes into float32 frames shaped (frames, channels)."""
    if len(data) % fmt.bytes_per_frame != 0:
        raise ConversionFailed(
            f"{len(data)} bytes is not a whole number of {fmt.bytes_per_frame}-byte frames"
        )

    if fmt.bit_depth == 16:
        samples = np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0
    else:
        samples = np.frombuffer(data, dtype="<f4").astype(np.float32)

    return samples.reshape(-1, fmt.channels)


def _encode(frames: np.ndarray, fmt: AudioFormat) -> bytes:
    """Encode float frames (frames, channels) into raw bytes."""
    interleaved = frames.reshape(-1)
    if fmt.bit_depth == 16:
        clipped = np.clip(interleaved, -1.0, 1.0)
        return np.round(clipped * INT16_SCALE).astype("<i2").tobytes()
    return interleaved.astype("<f4").tobytes()


def _remix(frames: np.ndarray, channels: int) -> np.ndarray:
    current = frames.shape[1]
    if current == channels:
        return frames
    if channels == 1:
        return frames.mean(axis=1, keepdims=True)
    if current == 1:
        return np.repeat(frames, channels, axis=1)
    raise ConversionFailed(f"Cannot map {current} channels to {channels}")


def _ratio(from_rate: int, to_rate: int) -> Tuple[int, int]:
    divisor = gcd(from_rate, to_rate)
    return to_rate // divisor, from_rate // divisor


def _resample(frames: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    if from_rate == to_rate or len(frames) == 0:
        return frames

    from scipy.signal import resample_poly

    up, down = _ratio(from_rate, to_rate)
    return resample_poly(frames, up, down, axis=0).astype(np.float32)


class StreamResampler:
    """
    Polyphase resampler for audio that arrives in blocks.

    Uses the same anti-aliasing filter as scipy's resample_poly and keeps
    the input history between blocks, so resampling a stream block by
    block gives the same samples as resampling it in one piece. Output
    lags input by half the filter length until flush() pads the end.
    """

    def __init__(self, from_rate: int, to_rate: int, channels: int = 1):
        from scipy.signal import firwin

        self.up, self.down = _ratio(from_rate, to_rate)
        max_rate = max(self.up, self.down)
        self.half_len = 10 * max_rate
        taps = firwin(2 * self.half_len + 1, 1.0 / max_rate, window=("kaiser", 5.0)) * self.up

        # _phases[p, m] weights input sample (last - m) for an output of phase p
        self._width = (len(taps) - 1) // self.up + 1
        padded = np.zeros(self._width * self.up)
        padded[:len(taps)] = taps
        self._phases = padded.reshape(self._width, self.up).T

        self._buffer = np.zeros((self._width - 1, channels))
        self._offset = -(self._width - 1)  # stream index of _buffer[0]
        self._consumed = 0
        self._produced = 0

    def _last_input(self, n: int) -> int:
        return (n * self.down + self.half_len) // self.up

    def _compute(self, end: int) -> np.ndarray:
        n = np.arange(self._produced, end)
        position = n * self.down + self.half_len
        index = (position // self.up)[:, None] - np.arange(self._width)[None, :] - self._offset
        out = np.einsum("nw,nwc->nc", self._phases[position % self.up], self._buffer[index])
        self._produced = end

        # Drop history that no later output reads
        drop = min(self._last_input(end) - (self._width - 1) - self._offset, len(self._buffer))
        if drop > 0:
            self._buffer = self._buffer[drop:]
            self._offset += drop
        return out

    def process(self, frames: np.ndarray) -> np.ndarray:
        """Feed (frames, channels) input; returns every output sample now computable."""
        self._buffer = np.concatenate((self._buffer, np.asarray(frames, dtype=np.float64)))
        self._consumed += len(frames)
        # Outputs whose last contributing input has arrived
        ready = -((self.half_len - self._consumed * self.up) // self.down)
        return self._compute(max(ready, self._produced))

    def flush(self) -> np.ndarray:
        """Finish the stream: zero-pad the end and return the remaining output."""
        total = -((-self._consumed * self.up) // self.down)
        if total <= self._produced:
            return np.zeros((0, self._buffer.shape[1]))
        needed = self._last_input(total - 1) + 1 - self._offset
        if needed > len(self._buffer):
            padding = np.zeros((needed - len(self._buffer), self._buffer.shape[1]))
            self._buffer = np.concatenate((self._buffer, padding))
        return self._compute(total)


class StreamConverter:
    """
    convert() for a stream of blocks: one instance per capture session.

    Usage:
        converter = StreamConverter(AudioFormat(48000, 1, 32))
        pcm = b"".join(converter.process(block) for block in blocks) + converter.flush()
    """

    def __init__(self, from_format: AudioFormat, to_format: AudioFormat = CANONICAL_FORMAT):
        _validate_format(from_format)
        _validate_format(to_format)
        self.from_format = from_format
        self.to_format = to_format
        self._resampler: Optional[StreamResampler] = None
        if from_format.sample_rate != to_format.sample_rate:
            self._resampler = StreamResampler(from_format.sample_rate, to_format.sample_rate, to_format.channels)

    def process(self, data: bytes) -> bytes:
        """
        Raises:
            ConversionFailed: a partial frame or an unsupported channel mapping
        """
        frames = _remix(_decode(data, self.from_format), self.to_format.channels)
        if self._resampler is not None:
            frames = self._resampler.process(frames)
        return _encode(frames, self.to_format)

    def flush(self) -> bytes:
        if self._resampler is None:
            return b""
        return _encode(self._resampler.flush(), self.to_format)


def convert(data: bytes, from_format: AudioFormat, to_format: AudioFormat = CANONICAL_FORMAT) -> bytes:
    """
    Reformat PCM between layouts (rate, channels, bit depth).

    Args:
        data: Raw interleaved PCM in from_format
        from_format: Layout of data
        to_format: Target layout (canonical 16kHz mono int16 by default)

    Returns:
        Raw PCM bytes in to_format

    Raises:
        ConversionFailed: unsupported layout or a partial frame
    """
    _validate_format(from_format)
    _validate_format(to_format)

    if from_format == to_format:
        if len(data) % from_format.bytes_per_frame != 0:
            raise ConversionFailed(
                f"{len(data)} bytes is not a whole number of {from_format.bytes_per_frame}-byte frames"
            )
        return bytes(data)

    frames = _decode(data, from_format)
    frames = _remix(frames, to_format.channels)
    frames = _resample(frames, from_format.sample_rate, to_format.sample_rate)
    return _encode(frames, to_format)


def pcm16_samples(pcm: bytes) -> np.ndarray:
    """View PCM16 bytes as an int16 array, ignoring a trailing odd byte."""
    usable = len(pcm) - (len(pcm) % 2)
    return np.frombuffer(pcm[:usable], dtype="<i2")


def generate_waveform(pcm: bytes, sample_count: int = 100) -> List[float]:
    """
    Summarize PCM16 audio as up to sample_count bars in [0, 1].

    Each bar is the RMS of one bucket, normalized by the loudest bucket.
    Silent audio yields all zeros; empty audio yields an empty list.
    """
    samples = pcm16_samples(pcm)
    total = len(samples)
    if total == 0 or sample_count <= 0:
        return []

    per_bucket = max(1, total // sample_count)
    values: List[float] = []

    for i in range(sample_count):
        start = i * per_bucket
        end = min(start + per_bucket, total)
        if start >= end:
            break
        bucket = samples[start:end].astype(np.float64) / INT16_SCALE
        values.append(float(np.sqrt(np.mean(bucket ** 2))))

    peak = max(values)
    if peak > 0:
        values = [min(1.0, v / peak) for v in values]

    return values


def rms_level(samples: np.ndarray, window: int = LEVEL_WINDOW_SAMPLES, gain: float = LEVEL_GAIN) -> float:
    """
    Loudness of the last `window` float samples (range -1..1), scaled by
    gain and clamped to [0, 1].
    """
    tail = np.asarray(samples, dtype=np.float64)[-window:]
    if len(tail) == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(tail ** 2)))
    return max(0.0, min(1.0, rms * gain))


def frame_as_wav(pcm: bytes) -> bytes:
    """Prefix canonical PCM16 with a 44-byte RIFF/WAVE header."""
    fmt = CANONICAL_FORMAT
    block_align = fmt.bytes_per_frame
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,                                 # fmt chunk size
        1,                                  # PCM
        fmt.channels,
        fmt.sample_rate,
        fmt.sample_rate * block_align,      # byte rate
        block_align,
        fmt.bit_depth,
        b"data",
        len(pcm),
    )
    return header + pcm


def unwrap_wav(data: bytes) -> bytes:
    """
    Strip a WAV header if present.

    Assumes the canonical 44-byte header; files with extra chunks before
    `data` are not parsed.
    """
    if data[:4] == b"RIFF":
        return data[WAV_HEADER_SIZE:]
    return data


def save_to_temporary_file(pcm: bytes, filename: Optional[str] = None) -> Path:
    """Write PCM16 as a WAV file in the temp directory and return its path."""
    name = filename or f"scribeloop_{int(time.time() * 1000)}.wav"
    path = Path(tempfile.gettempdir()) / name
    with open(path, "wb") as f:
        f.write(frame_as_wav(pcm))
    return path


def load_from_file(path: Union[str, Path]) -> bytes:
    """Read a canonical WAV (or raw PCM) file and return the PCM payload."""
    with open(path, "rb") as f:
        return unwrap_wav(f.read())


def delete_temporary_file(path: Union[str, Path]) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def read_audio_file(path: Union[str, Path]) -> bytes:
    """
    Decode any soundfile-readable file into canonical PCM16.

    Raises:
        ConversionFailed: file cannot be decoded
    """
    import soundfile as sf

    try:
        audio, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
    except RuntimeError as e:
        raise ConversionFailed(f"Could not read {path}: {e}") from e

    source = AudioFormat(sample_rate=int(sample_rate), channels=audio.shape[1], bit_depth=32)
    return convert(audio.astype("<f4").tobytes(), source, CANONICAL_FORMAT)
