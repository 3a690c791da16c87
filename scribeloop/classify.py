"""
Document type classification.

A categorical model gives a primary prediction; lexical features can
override it when one category is clearly dominant.

Usage:
    classifier = Classifier(NaiveBayesModel.load(path))
    doc_type = classifier.classify("hi sam, running late, see you at 5")
"""

import json
import threading
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from queue import Queue, Empty, Full
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union, TYPE_CHECKING

import numpy as np

from .errors import EmptyText, InferenceFailed, ModelNotLoaded, LearningStoreError
from .features import extract_features, words
from .types import DocumentType, TextFeatures

if TYPE_CHECKING:
    from .learning import LearningStore
    from .metrics import MetricsWriter


class CategoryModel(Protocol):
    """Anything that maps text to a category label."""

    def predict(self, text: str) -> Optional[str]:
        ...


# Small built-in corpus so a fresh install classifies sensibly before training
SEED_SAMPLES: List[Tuple[str, str]] = [
    ("Hi John, I hope this email finds you well. Please find the report attached. Best regards, Anna", "email"),
    ("Dear team, following our meeting I am sending the agenda for next week. Kind regards", "email"),
    ("Hello Sarah, thank you for your quick reply. I will review the proposal and get back to you. Thanks", "email"),
    ("hey are you coming tonight", "message"),
    ("running late be there in ten", "message"),
    ("ok sounds good see you soon", "message"),
    ("can you grab milk on the way home", "message"),
    ("The quarterly results indicate a steady increase in revenue. Furthermore, operating costs declined. "
     "This section summarizes the methodology used in the analysis.", "document"),
    ("Introduction. This document describes the architecture of the system and the reasoning behind it.", "document"),
    ("just shipped my new project so excited!!! check it out", "social"),
    ("what a game tonight, absolutely unreal #finals", "social"),
    ("loving the weather today, beach time", "social"),
    ("def parse(self, text): return text.split()", "code"),
    ("const result = await fetch(url); if (result.ok) return result.json()", "code"),
    ("for item in items if item is None continue", "code"),
    ("public static func init() throws", "code"),
    ("best pizza near me", "search"),
    ("python list comprehension examples", "search"),
    ("weather tomorrow boston", "search"),
    ("how to reset router", "search"),
]


class NaiveBayesModel:
    """
    Multinomial naive Bayes over lowercase word tokens.

    Label order is fixed (sorted) so equal scores resolve the same way
    every time.
    """

    def __init__(
        self,
        labels: List[str],
        vocabulary: Dict[str, int],
        class_counts: np.ndarray,
        word_counts: np.ndarray,
    ):
        self.labels = labels
        self.vocabulary = vocabulary
        self.class_counts = np.asarray(class_counts, dtype=np.float64)
        self.word_counts = np.asarray(word_counts, dtype=np.float64)

        # Laplace-smoothed log probabilities
        total = self.class_counts.sum()
        self._log_prior = np.log(self.class_counts / total) if total else np.zeros(len(labels))
        smoothed = self.word_counts + 1.0
        self._log_likelihood = np.log(smoothed / smoothed.sum(axis=1, keepdims=True))

    @staticmethod
    def _tokens(text: str) -> List[str]:
        return [w.lower() for w in words(text)]

    @classmethod
    def fit(cls, samples: Iterable[Tuple[str, str]]) -> "NaiveBayesModel":
        samples = list(samples)
        if not samples:
            raise ValueError("Cannot fit a classifier without samples")

        labels = sorted({label for _, label in samples})
        label_index = {label: i for i, label in enumerate(labels)}

        vocabulary: Dict[str, int] = {}
        for text, _ in samples:
            for token in cls._tokens(text):
                vocabulary.setdefault(token, len(vocabulary))

        class_counts = np.zeros(len(labels))
        word_counts = np.zeros((len(labels), len(vocabulary)))
        for text, label in samples:
            row = label_index[label]
            class_counts[row] += 1
            for token, n in Counter(cls._tokens(text)).items():
                word_counts[row, vocabulary[token]] += n

        return cls(labels, vocabulary, class_counts, word_counts)

    @classmethod
    def seeded(cls) -> "NaiveBayesModel":
        return cls.fit(SEED_SAMPLES)

    def predict(self, text: str) -> Optional[str]:
        if not self.labels:
            return None

        counts = np.zeros(len(self.vocabulary))
        for token in self._tokens(text):
            index = self.vocabulary.get(token)
            if index is not None:
                counts[index] += 1

        scores = self._log_prior + self._log_likelihood @ counts
        return self.labels[int(np.argmax(scores))]

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump({
                "labels": self.labels,
                "vocabulary": self.vocabulary,
                "class_counts": self.class_counts.tolist(),
                "word_counts": self.word_counts.tolist(),
            }, f)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "NaiveBayesModel":
        """
        Raises:
            ModelNotLoaded: file missing or unreadable
        """
        try:
            with open(path) as f:
                data = json.load(f)
            return cls(
                data["labels"],
                data["vocabulary"],
                np.array(data["class_counts"]),
                np.array(data["word_counts"]).reshape(len(data["labels"]), -1),
            )
        except (OSError, ValueError, KeyError) as e:
            raise ModelNotLoaded(f"Could not load classifier model {path}: {e}") from e


class DominantCharacteristicAnalyzer:
    """
    Votes for each category from lexical features. A single clear winner
    overrides the model; any tie keeps the model's prediction.
    """

    def scores(self, f: TextFeatures) -> Dict[DocumentType, int]:
        scores = {t: 0 for t in (
            DocumentType.EMAIL, DocumentType.MESSAGE, DocumentType.DOCUMENT,
            DocumentType.SOCIAL, DocumentType.CODE, DocumentType.SEARCH,
        )}

        # Email
        if f.has_greeting and f.formality_score > 0.6:
            scores[DocumentType.EMAIL] += 3
        if f.has_signature:
            scores[DocumentType.EMAIL] += 2
        if f.formality_score > 0.7 and f.average_sentence_length > 15:
            scores[DocumentType.EMAIL] += 2

        # Message
        if f.has_greeting and f.formality_score < 0.5:
            scores[DocumentType.MESSAGE] += 3
        if f.word_count < 30 and f.has_greeting:
            scores[DocumentType.MESSAGE] += 2
        if not f.has_complete_sentences and f.word_count < 20:
            scores[DocumentType.MESSAGE] += 2

        # Document
        if f.word_count > 100:
            scores[DocumentType.DOCUMENT] += 2
        if f.formality_score > 0.8:
            scores[DocumentType.DOCUMENT] += 3
        if f.has_complete_sentences and f.average_sentence_length > 20:
            scores[DocumentType.DOCUMENT] += 2
        if f.sentence_count > 5:
            scores[DocumentType.DOCUMENT] += 1

        # Social
        if f.word_count < 50 and not f.has_greeting and not f.has_signature:
            scores[DocumentType.SOCIAL] += 2
        if f.punctuation_density > 0.15:
            scores[DocumentType.SOCIAL] += 2
        if f.formality_score < 0.3 and f.word_count < 40:
            scores[DocumentType.SOCIAL] += 2

        # Code
        scores[DocumentType.CODE] += f.technical_term_count
        if f.punctuation_density > 0.2 and f.technical_term_count > 0:
            scores[DocumentType.CODE] += 2
        if not f.has_complete_sentences and f.technical_term_count > 2:
            scores[DocumentType.CODE] += 3

        # Search
        if f.word_count <= 10 and not f.has_complete_sentences:
            scores[DocumentType.SEARCH] += 3
        if not f.has_greeting and not f.has_signature and f.word_count < 15:
            scores[DocumentType.SEARCH] += 2
        if f.punctuation_density < 0.05 and f.word_count < 10:
            scores[DocumentType.SEARCH] += 2

        return scores

    def analyze(self, features: TextFeatures, prediction: DocumentType) -> DocumentType:
        scores = self.scores(features)
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        if ranked[0][1] > ranked[1][1]:
            return ranked[0][0]
        return prediction


class ClassificationLogger:
    """
    Records classifications into the learning store without blocking.

    Writes happen on a background thread through a bounded queue; when
    the queue is full the entry is dropped.
    """

    MAX_QUEUE_SIZE = 100

    def __init__(self, store: "LearningStore"):
        self.store = store
        self._queue: Queue[tuple] = Queue(maxsize=self.MAX_QUEUE_SIZE)
        self._shutdown = threading.Event()
        self._dropped_count = 0
        self._writer_thread = threading.Thread(target=self._writer_loop, daemon=True)
        self._writer_thread.start()

    def log(self, text: str, category: DocumentType, features: Optional[TextFeatures]) -> bool:
        if not text.strip():
            return False
        entry = (
            str(uuid.uuid4()),
            text,
            category.value,
            datetime.now(),
            features.to_json() if features else None,
        )
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _write(self, entry: tuple) -> None:
        try:
            self.store.log_classification(*entry)
        except LearningStoreError as e:
            print(f"[Classifier] Failed to log classification: {e}")

    def _writer_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                self._write(self._queue.get(timeout=1.0))
            except Empty:
                continue

    def flush(self) -> None:
        while True:
            try:
                self._write(self._queue.get_nowait())
            except Empty:
                break

    def shutdown(self) -> None:
        self._shutdown.set()
        self.flush()
        self._writer_thread.join(timeout=2.0)
        if self._dropped_count > 0:
            print(f"[Classifier] Dropped {self._dropped_count} log entries")


class Classifier:
    """
    Model prediction plus dominant-characteristic override.

    Deterministic for a given text and model.
    """

    def __init__(
        self,
        model: Optional[CategoryModel],
        analyzer: Optional[DominantCharacteristicAnalyzer] = None,
        logger: Optional[ClassificationLogger] = None,
        metrics: Optional["MetricsWriter"] = None,
    ):
        self.model = model
        self.analyzer = analyzer or DominantCharacteristicAnalyzer()
        self.logger = logger
        self.metrics = metrics

    def classify(self, text: str) -> DocumentType:
        """
        Raises:
            EmptyText: text is blank
            ModelNotLoaded: no model configured
            InferenceFailed: model returned nothing or raised
        """
        if not text or not text.strip():
            raise EmptyText()
        if self.model is None:
            raise ModelNotLoaded("Classifier model is not loaded")

        try:
            label = self.model.predict(text)
        except Exception as e:
            raise InferenceFailed(f"Classifier model error: {e}") from e
        if label is None:
            raise InferenceFailed()

        prediction = DocumentType.from_label(label)
        features = extract_features(text)
        result = self.analyzer.analyze(features, prediction)

        if result != prediction:
            print(f"[Classifier] Override {prediction.value} -> {result.value}")

        if self.logger:
            self.logger.log(text, result, features)
        if self.metrics:
            self.metrics.log(
                "classification",
                model_prediction=prediction.value,
                document_type=result.value,
                overridden=result != prediction,
                word_count=features.word_count,
            )

        return result
