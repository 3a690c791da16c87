"""
End-to-end dictation: capture -> transcribe -> classify -> enhance.

One session at a time. The pipeline owns no hardware itself; the
capture, engine, classifier and orchestrator are injected so they can
be shared or mocked.

Usage:
    pipeline = DictationPipeline(snapshot, capture, engine, classifier, orchestrator)
    pipeline.start()
    ...
    result = pipeline.stop()
    print(result.text)
"""

import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING
from uuid import UUID, uuid4

from .commands import VoiceCommand, parse_voice_command
from .errors import ClassificationError, ModelNotLoaded
from .metrics import log_transcription
from .types import (
    CANONICAL_FORMAT, ConfigSnapshot, DocumentType, EnhancedText,
    EnhancementDecision, TranscriptionResult,
)

if TYPE_CHECKING:
    from .audio import AudioCapture
    from .bridge import LearningFeed
    from .classify import Classifier
    from .enhance import EnhancementOrchestrator
    from .metrics import MetricsWriter
    from .transcription import TranscriptionEngine


@dataclass
class DictationResult:
    """Everything produced by one dictation."""
    session_id: UUID
    transcription: TranscriptionResult
    document_type: DocumentType
    enhanced: EnhancedText
    audio_duration_s: float
    timings_ms: dict = field(default_factory=dict)
    command: Optional[VoiceCommand] = None

    @property
    def text(self) -> str:
        return self.enhanced.enhanced_text


def audio_duration(pcm: bytes) -> float:
    return len(pcm) / (CANONICAL_FORMAT.sample_rate * CANONICAL_FORMAT.bytes_per_frame)


class DictationPipeline:
    """
    Runs dictation sessions. start() while a session is active raises
    AlreadyCapturing (from the capture layer).
    """

    def __init__(
        self,
        config: ConfigSnapshot,
        capture: Optional["AudioCapture"],
        engine: "TranscriptionEngine",
        classifier: Optional["Classifier"],
        orchestrator: "EnhancementOrchestrator",
        metrics: Optional["MetricsWriter"] = None,
        learning_feed: Optional["LearningFeed"] = None,
    ):
        self.config = config
        self.capture = capture
        self.engine = engine
        self.classifier = classifier
        self.orchestrator = orchestrator
        self.metrics = metrics
        self.learning_feed = learning_feed
        self.history: List[DictationResult] = []
        self._lock = threading.Lock()

    # Capture

    def start(self, device_id: Optional[str] = None) -> None:
        if self.capture is None:
            raise RuntimeError("No audio capture configured")
        self.capture.start_capture(device_id if device_id is not None else self.config.input_device)

    def stop(self) -> DictationResult:
        if self.capture is None:
            raise RuntimeError("No audio capture configured")
        pcm = self.capture.stop_capture()
        return self.process_audio(pcm)

    # Processing

    def classify(self, text: str) -> DocumentType:
        """Classification never fails a dictation; problems map to unknown."""
        if self.classifier is None or not text.strip():
            return DocumentType.UNKNOWN
        try:
            return self.classifier.classify(text)
        except (ClassificationError, ModelNotLoaded) as e:
            print(f"[Pipeline] Classification failed, using unknown: {e}")
            return DocumentType.UNKNOWN

    def process_audio(self, pcm: bytes, document_type: Optional[DocumentType] = None) -> DictationResult:
        """
        Transcribe and enhance a canonical PCM buffer.

        Transcription errors propagate; classification and learning
        problems do not.
        """
        with self._lock:
            session_id = uuid4()
            duration = audio_duration(pcm)
            timings = {}

            start = time.perf_counter()
            transcription = self.engine.transcribe(
                pcm,
                language=self.config.language,
                translate=self.config.translate,
                initial_prompt=self.config.initial_prompt or None,
            )
            timings["transcribe"] = (time.perf_counter() - start) * 1000
            log_transcription(self.metrics, transcription, duration)
            print(f"[Pipeline] {duration:.1f}s audio -> {len(transcription.text.split())} words "
                  f"in {timings['transcribe'] / 1000:.2f}s")

            result = self._finish(session_id, transcription, duration, document_type, timings)
            self.history.append(result)
            return result

    def process_text(self, text: str, document_type: Optional[DocumentType] = None) -> DictationResult:
        """Classify and enhance text that was transcribed elsewhere."""
        with self._lock:
            transcription = TranscriptionResult(text=text)
            result = self._finish(uuid4(), transcription, 0.0, document_type, {})
            self.history.append(result)
            return result

    def _finish(
        self,
        session_id: UUID,
        transcription: TranscriptionResult,
        duration: float,
        document_type: Optional[DocumentType],
        timings: dict,
    ) -> DictationResult:
        text = transcription.text.strip()

        if not text:
            doc_type = document_type or DocumentType.UNKNOWN
            decision = EnhancementDecision(doc_type, False, "default", False)
            enhanced = EnhancedText("", "", doc_type, decision)
            print("[Pipeline] No speech detected")
            return DictationResult(session_id, transcription, doc_type, enhanced, duration, timings)

        # A spoken "BV ..." command names the type itself and is stripped from the text
        command = parse_voice_command(text)
        if command is not None:
            print(f"[Pipeline] Voice command: {command.instruction} -> {command.document_type.value}")
            text = command.content

        start = time.perf_counter()
        if command is not None:
            doc_type = command.document_type
        else:
            doc_type = document_type or self.classify(text)
        timings["classify"] = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        enhanced = self.orchestrator.enhance_detailed(text, doc_type, command=command)
        timings["enhance"] = (time.perf_counter() - start) * 1000

        return DictationResult(session_id, transcription, doc_type, enhanced, duration, timings, command)

    # Learning

    def record_edit(self, result: DictationResult, edited_text: str) -> bool:
        """
        Queue a user correction of a dictation's output for learning.

        The pattern is keyed on the text the enhancer was given (the raw
        transcription, or a voice command's content), which is what it
        looks up on the next dictation.

        Returns False when learning is off or nothing changed.
        """
        if self.learning_feed is None or not self.config.learning_enabled:
            return False
        if edited_text == result.text:
            return False
        return self.learning_feed.submit(
            result.enhanced.original_text.strip(),
            edited_text,
            document_type=result.document_type,
        )
