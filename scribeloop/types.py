"""
Shared type definitions for ScribeLoop.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import json


# Type aliases
AudioBuffer = bytes  # little-endian int16 PCM, 16kHz, mono


@dataclass(frozen=True)
class AudioFormat:
    """PCM layout: sample rate, channel count and bit depth (16 = int16, 32 = float32)."""
    sample_rate: int
    channels: int
    bit_depth: int

    @property
    def bytes_per_frame(self) -> int:
        return self.channels * (self.bit_depth // 8)


CANONICAL_FORMAT = AudioFormat(sample_rate=16000, channels=1, bit_depth=16)


class CaptureState(Enum):
    IDLE = "idle"
    PRE_WARMED = "pre_warmed"
    CAPTURING = "capturing"


class DocumentType(str, Enum):
    """Closed set of document categories. Values are storage keys."""
    EMAIL = "email"
    MESSAGE = "message"
    DOCUMENT = "document"
    SOCIAL = "social"
    CODE = "code"
    SEARCH = "search"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: str) -> "DocumentType":
        """Map a model label to a type. Unrecognized labels become MESSAGE."""
        try:
            return cls(label.strip().lower())
        except ValueError:
            return cls.MESSAGE


@dataclass
class TranscriptionRequest:
    buffer: AudioBuffer
    language: str = "auto"
    translate: bool = False
    initial_prompt: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionResult:
    """Text produced for one buffer."""
    text: str
    detected_language: Optional[str] = None
    processing_time_s: float = 0.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class TextFeatures:
    """
    Lexical snapshot of a text, used by the dominant-characteristic override.
    Counts are clamped to >= 0 and scores to [0, 1] on construction.
    """
    sentence_count: int
    word_count: int
    average_sentence_length: float
    has_complete_sentences: bool
    formality_score: float
    technical_term_count: int
    punctuation_density: float
    has_greeting: bool
    has_signature: bool

    def __post_init__(self):
        object.__setattr__(self, "sentence_count", max(0, self.sentence_count))
        object.__setattr__(self, "word_count", max(0, self.word_count))
        object.__setattr__(self, "average_sentence_length", max(0.0, self.average_sentence_length))
        object.__setattr__(self, "technical_term_count", max(0, self.technical_term_count))
        object.__setattr__(self, "formality_score", _clamp(self.formality_score))
        object.__setattr__(self, "punctuation_density", _clamp(self.punctuation_density))

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


# Confidence at or above this marks a pattern as reliable
TRUSTED_CONFIDENCE = 0.7
# Minimum relative length change for an edit to count as significant
SIGNIFICANT_EDIT_RATIO = 0.1


@dataclass
class LearningPattern:
    """One learned correction: original text -> edited text for a document type."""
    id: Optional[int]
    document_type: DocumentType
    original_text: str
    edited_text: str
    frequency: int = 1
    last_seen: datetime = field(default_factory=datetime.now)
    confidence: float = 1.0

    @property
    def is_trusted(self) -> bool:
        return self.confidence >= TRUSTED_CONFIDENCE

    @property
    def is_significant_edit(self) -> bool:
        original_length = len(self.original_text)
        if original_length == 0:
            return len(self.edited_text) > 0
        change = abs(len(self.edited_text) - original_length) / original_length
        return change >= SIGNIFICANT_EDIT_RATIO


@dataclass(frozen=True)
class EnhancementDecision:
    """Outcome of one enhancement call. Logged, never persisted."""
    document_type: DocumentType
    used_cloud: bool
    prompt_source: str          # "default" | "custom"
    fell_back_to_default: bool

    def to_dict(self) -> Dict:
        return {
            "document_type": self.document_type.value,
            "used_cloud": self.used_cloud,
            "prompt_source": self.prompt_source,
            "fell_back_to_default": self.fell_back_to_default,
        }


@dataclass
class EnhancedText:
    """Enhancement result with the rules that produced it."""
    original_text: str
    enhanced_text: str
    document_type: DocumentType
    decision: EnhancementDecision
    applied_rules: List[str] = field(default_factory=list)
    learned_pattern_applied: bool = False


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable snapshot of configuration for a session.
    Ensures config changes mid-session don't cause inconsistency.
    """
    # Audio
    input_device: Optional[str]
    level_gain: float
    level_hz: float

    # Transcription
    model_path: str
    language: str
    translate: bool
    initial_prompt: str
    compute_type: str

    # Learning
    learning_enabled: bool
    learning_db: str
    learning_threshold: float
    retention_days: int
    apply_learned_patterns: bool

    # Enhancement
    llm_provider: str
    llm_enabled: bool
    llm_model: str
    timeout_seconds: float
    cloud_types: Dict[str, bool]
    custom_prompts: Dict[str, str]
    remove_fillers: bool = True
    auto_punctuate: bool = True
    auto_capitalize: bool = True

    # Paths
    classifier_model: str = ""
    metrics_file: str = ""
