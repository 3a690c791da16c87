"""
Local speech-to-text via faster-whisper.

A TranscriptionEngine owns one loaded model. Calls on a handle are
serialized; load once and transcribe many times.

Usage:
    with TranscriptionEngine("~/models/whisper-base.en") as engine:
        result = engine.transcribe(pcm, language="en")
        print(result.text)
"""

import threading
import time
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .audio_processing import pcm16_samples
from .errors import ModelLoadFailed, ModelNotLoaded, TranscriptionFailed
from .types import TranscriptionRequest, TranscriptionResult, CANONICAL_FORMAT


class TranscriptionEngine:
    """
    Handle around a faster-whisper model.

    Thread-safe: concurrent transcribe() calls are serialized on an
    internal lock. close() releases the model; afterwards every call
    raises ModelNotLoaded.
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        device: str = "cpu",
        compute_type: str = "int8",
    ):
        """
        Load the model.

        Raises:
            ModelLoadFailed: path missing or not a valid model
        """
        self.model_path = Path(model_path).expanduser()
        self.device = device
        self.compute_type = compute_type
        self._lock = threading.Lock()
        self.model = None

        if not str(model_path) or not self.model_path.exists():
            raise ModelLoadFailed(f"Model not found at {self.model_path}")

        try:
            from faster_whisper import WhisperModel

            start = time.time()
            self.model = WhisperModel(
                str(self.model_path),
                device=device,
                compute_type=compute_type,
            )
            print(f"[Whisper] Loaded {self.model_path.name} on {device} in {time.time() - start:.1f}s")
        except Exception as e:
            raise ModelLoadFailed(f"Could not load model at {self.model_path}: {e}") from e

    def is_valid(self) -> bool:
        return self.model is not None

    def transcribe(
        self,
        buffer: bytes,
        language: str = "auto",
        translate: bool = False,
        initial_prompt: Optional[str] = None,
    ) -> TranscriptionResult:
        """
        Transcribe a canonical PCM16 buffer. Blocking.

        Args:
            buffer: 16kHz mono int16 PCM
            language: ISO code, or "auto" to detect
            translate: translate to English instead of transcribing
            initial_prompt: vocabulary/context hint passed through to the model

        Raises:
            ModelNotLoaded: handle was closed
            TranscriptionFailed: malformed buffer or model error
        """
        if len(buffer) % CANONICAL_FORMAT.bytes_per_frame != 0:
            raise TranscriptionFailed(f"Buffer of {len(buffer)} bytes is not whole int16 samples")

        audio = pcm16_samples(buffer).astype(np.float32) / 32768.0

        with self._lock:
            if self.model is None:
                raise ModelNotLoaded()

            start = time.time()
            try:
                segments, info = self.model.transcribe(
                    audio,
                    language=None if language in ("", "auto") else language,
                    task="translate" if translate else "transcribe",
                    initial_prompt=initial_prompt or None,
                    beam_size=5,
                )
                # segments is a lazy generator; decoding happens here
                text = " ".join(s.text.strip() for s in segments if s.text.strip())
            except Exception as e:
                raise TranscriptionFailed(str(e)) from e

            elapsed = time.time() - start

        detected = getattr(info, "language", None)
        print(f"[Whisper] {len(audio) / CANONICAL_FORMAT.sample_rate:.1f}s audio -> {elapsed:.2f}s ({detected})")

        return TranscriptionResult(
            text=text.strip(),
            detected_language=detected,
            processing_time_s=elapsed,
        )

    def transcribe_request(self, request: TranscriptionRequest) -> TranscriptionResult:
        return self.transcribe(
            request.buffer,
            language=request.language,
            translate=request.translate,
            initial_prompt=request.initial_prompt,
        )

    def close(self) -> None:
        """Release the model. Safe to call more than once."""
        with self._lock:
            if self.model is not None:
                self.model = None
                print("[Whisper] Model released")

    def __enter__(self) -> "TranscriptionEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
