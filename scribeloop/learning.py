"""
Persistent store of learned edit patterns.

Every user correction (original text -> edited text) is recorded per
document type. Repeated corrections raise a pattern's frequency and
confidence; confident patterns are reused by the enhancer.

All writes go through one connection under one lock. Reads use
per-thread connections in WAL mode, so readers only ever see committed
rows.

Usage:
    store = LearningStore(config.learning_db)
    store.record(DocumentType.EMAIL, "thanks for your email", "Thanks for your email!")
    pattern = store.find_similar("Thanks For Your Email", DocumentType.EMAIL, 0.5)
"""

import math
import re
import sqlite3
import string
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from .errors import LearningStoreError
from .types import DocumentType, LearningPattern, TRUSTED_CONFIDENCE

if TYPE_CHECKING:
    from .metrics import MetricsWriter


# Patterns seen fewer times than this are eligible for sweeping
SWEEP_MIN_FREQUENCY = 3

# Guards against corrupted pattern data in apply_learned()
MAX_REPLACEMENTS = 100
MAX_REPLACEMENT_LENGTH = 50
MIN_REPLACED_WORD_LENGTH = 3
SUSPICIOUS_CHARS = ("▐", "█", "▛")

SCHEMA = """
CREATE TABLE IF NOT EXISTS learning_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    documentType TEXT NOT NULL,
    originalText TEXT NOT NULL,
    editedText TEXT NOT NULL,
    frequency INTEGER NOT NULL DEFAULT 1,
    lastSeen TIMESTAMP NOT NULL,
    confidence REAL NOT NULL DEFAULT 1.0
);
CREATE INDEX IF NOT EXISTS idx_learning_patterns_documentType ON learning_patterns(documentType);
CREATE INDEX IF NOT EXISTS idx_learning_patterns_originalText ON learning_patterns(originalText);
CREATE INDEX IF NOT EXISTS idx_learning_patterns_confidence ON learning_patterns(confidence);

CREATE TABLE IF NOT EXISTS classification_log (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    category TEXT NOT NULL,
    timestamp TIMESTAMP NOT NULL,
    textLength INTEGER NOT NULL,
    extractedFeatures TEXT
);
CREATE INDEX IF NOT EXISTS idx_classification_log_category ON classification_log(category);
"""

_COLUMNS = "id, documentType, originalText, editedText, frequency, lastSeen, confidence"


def reinforced_confidence(current: float, frequency: int) -> float:
    """
    Confidence after a pattern has been seen `frequency` times.

    Grows with log(frequency), reaching 1.0 at 10 sightings, and never
    drops below the current value.
    """
    grown = math.log10(frequency + 1) / math.log10(11)
    return min(1.0, max(current, grown))


def update_confidence(pattern: LearningPattern) -> float:
    """Confidence for a pattern whose frequency was just incremented."""
    return reinforced_confidence(pattern.confidence, pattern.frequency)


def _format_ts(ts: datetime) -> str:
    return ts.isoformat(sep=" ", timespec="microseconds")


def _fold(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


def extract_token_replacements(original: str, edited: str) -> List[Tuple[str, str]]:
    """Word-level substitutions between position-aligned words."""
    original_words = original.split()
    edited_words = edited.split()

    replacements = []
    for orig_word, edit_word in zip(original_words, edited_words):
        orig_word = orig_word.strip(string.punctuation)
        edit_word = edit_word.strip(string.punctuation)
        if orig_word.lower() != edit_word.lower() and len(orig_word) >= MIN_REPLACED_WORD_LENGTH:
            replacements.append((orig_word, edit_word))

    return replacements


def _is_suspicious(source: str, target: str) -> bool:
    combined = source + target
    if any(ch in combined for ch in SUSPICIOUS_CHARS):
        return True
    # Control characters mean binary garbage leaked into a pattern
    if any(ord(ch) < 32 for ch in combined):
        return True
    return len(target) > MAX_REPLACEMENT_LENGTH


class LearningStore:
    """
    SQLite-backed pattern store. Thread-safe.

    The database path must be a file; WAL mode needs one.
    """

    def __init__(self, db_path: Union[str, Path], metrics: Optional["MetricsWriter"] = None):
        self.db_path = Path(db_path)
        self.metrics = metrics
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = self._connect()
            self._writer.execute("PRAGMA journal_mode=WAL")
            self._writer.executescript(SCHEMA)
            self._writer.commit()
        except sqlite3.Error as e:
            raise LearningStoreError(f"Could not open learning database {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.create_function("fold", 1, _fold, deterministic=True)
        return conn

    def _reader(self) -> sqlite3.Connection:
        if self._closed:
            raise LearningStoreError("Learning store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    @staticmethod
    def _to_pattern(row: sqlite3.Row) -> LearningPattern:
        return LearningPattern(
            id=row["id"],
            document_type=DocumentType(row["documentType"]),
            original_text=row["originalText"],
            edited_text=row["editedText"],
            frequency=row["frequency"],
            last_seen=datetime.fromisoformat(row["lastSeen"]),
            confidence=row["confidence"],
        )

    # Writes

    def record(self, document_type: DocumentType, original_text: str, edited_text: str) -> LearningPattern:
        """
        Insert a new pattern or reinforce the matching one.

        Matching is on document type plus case-insensitive equal original text.

        Raises:
            LearningStoreError: empty original text or database failure
        """
        if not original_text.strip():
            raise LearningStoreError("Cannot learn from empty text")
        if self._closed:
            raise LearningStoreError("Learning store is closed")

        now = datetime.now()
        try:
            with self._write_lock, self._writer:
                row = self._writer.execute(
                    f"SELECT {_COLUMNS} FROM learning_patterns "
                    "WHERE documentType = ? AND fold(originalText) = ? "
                    "ORDER BY confidence DESC, frequency DESC LIMIT 1",
                    (document_type.value, original_text.lower()),
                ).fetchone()

                if row is None:
                    cursor = self._writer.execute(
                        "INSERT INTO learning_patterns "
                        "(documentType, originalText, editedText, frequency, lastSeen, confidence) "
                        "VALUES (?, ?, ?, 1, ?, 1.0)",
                        (document_type.value, original_text, edited_text, _format_ts(now)),
                    )
                    pattern = LearningPattern(
                        id=cursor.lastrowid,
                        document_type=document_type,
                        original_text=original_text,
                        edited_text=edited_text,
                        frequency=1,
                        last_seen=now,
                        confidence=1.0,
                    )
                else:
                    pattern = self._to_pattern(row)
                    pattern.frequency += 1
                    pattern.last_seen = now
                    pattern.confidence = update_confidence(pattern)
                    pattern.edited_text = edited_text
                    self._writer.execute(
                        "UPDATE learning_patterns "
                        "SET frequency = ?, lastSeen = ?, confidence = ?, editedText = ? WHERE id = ?",
                        (pattern.frequency, _format_ts(now), pattern.confidence, edited_text, pattern.id),
                    )
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to record pattern: {e}") from e

        print(f"[Learning] {document_type.value}: pattern #{pattern.id} seen {pattern.frequency}x")
        if self.metrics:
            self.metrics.log(
                "learning_recorded",
                document_type=document_type.value,
                pattern_id=pattern.id,
                frequency=pattern.frequency,
                confidence=pattern.confidence,
                significant=pattern.is_significant_edit,
            )
        return pattern

    def sweep(self, older_than_days: int) -> int:
        """Delete rarely-seen patterns not seen within the window. Returns rows deleted."""
        cutoff = datetime.now() - timedelta(days=older_than_days)
        try:
            with self._write_lock, self._writer:
                cursor = self._writer.execute(
                    "DELETE FROM learning_patterns WHERE lastSeen < ? AND frequency < ?",
                    (_format_ts(cutoff), SWEEP_MIN_FREQUENCY),
                )
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to sweep patterns: {e}") from e

        print(f"[Learning] Swept {deleted} stale pattern(s)")
        if self.metrics:
            self.metrics.log("learning_sweep", older_than_days=older_than_days, deleted=deleted)
        return deleted

    def clear(self) -> None:
        try:
            with self._write_lock, self._writer:
                self._writer.execute("DELETE FROM learning_patterns")
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to clear patterns: {e}") from e

    def log_classification(
        self,
        entry_id: str,
        text: str,
        category: str,
        timestamp: datetime,
        features_json: Optional[str],
    ) -> None:
        try:
            with self._write_lock, self._writer:
                self._writer.execute(
                    "INSERT INTO classification_log "
                    "(id, text, category, timestamp, textLength, extractedFeatures) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (entry_id, text, category, _format_ts(timestamp), len(text), features_json),
                )
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to log classification: {e}") from e

    # Reads

    def find_similar(
        self,
        original_text: str,
        document_type: DocumentType,
        threshold: float = TRUSTED_CONFIDENCE,
    ) -> Optional[LearningPattern]:
        """Best pattern with case-insensitive equal original text and confidence >= threshold."""
        try:
            row = self._reader().execute(
                f"SELECT {_COLUMNS} FROM learning_patterns "
                "WHERE documentType = ? AND fold(originalText) = ? AND confidence >= ? "
                "ORDER BY confidence DESC, frequency DESC LIMIT 1",
                (document_type.value, original_text.lower(), threshold),
            ).fetchone()
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to query patterns: {e}") from e
        return self._to_pattern(row) if row else None

    def fetch(
        self,
        document_type: DocumentType,
        minimum_confidence: float = TRUSTED_CONFIDENCE,
    ) -> List[LearningPattern]:
        try:
            rows = self._reader().execute(
                f"SELECT {_COLUMNS} FROM learning_patterns "
                "WHERE documentType = ? AND confidence >= ? "
                "ORDER BY confidence DESC, frequency DESC",
                (document_type.value, minimum_confidence),
            ).fetchall()
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to query patterns: {e}") from e
        return [self._to_pattern(row) for row in rows]

    def statistics(self) -> Dict[str, int]:
        try:
            conn = self._reader()
            total = conn.execute("SELECT COUNT(*) FROM learning_patterns").fetchone()[0]
            trusted = conn.execute(
                "SELECT COUNT(*) FROM learning_patterns WHERE confidence >= ?",
                (TRUSTED_CONFIDENCE,),
            ).fetchone()[0]
        except sqlite3.Error as e:
            raise LearningStoreError(f"Failed to read statistics: {e}") from e

        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {"total_patterns": total, "trusted_patterns": trusted, "db_size_bytes": size}

    def apply_learned(self, text: str, document_type: DocumentType) -> str:
        """
        Apply word-level substitutions mined from trusted patterns.

        Returns the text unchanged when the mined replacements look
        corrupted (too many, or containing garbage).
        """
        replacements: List[Tuple[str, str]] = []
        for pattern in self.fetch(document_type, TRUSTED_CONFIDENCE):
            replacements.extend(extract_token_replacements(pattern.original_text, pattern.edited_text))

        if not replacements:
            return text

        if len(replacements) > MAX_REPLACEMENTS:
            print(f"[Learning] {len(replacements)} replacements looks corrupted; skipping. Clear the learning database to fix.")
            return text

        suspicious = [r for r in replacements if _is_suspicious(*r)]
        if suspicious:
            print(f"[Learning] {len(suspicious)} suspicious replacement(s); skipping. Clear the learning database to fix.")
            return text

        improved = text
        for source, target in replacements:
            pattern = re.compile(r"\b" + re.escape(source) + r"\b", re.IGNORECASE)
            improved = pattern.sub(lambda _m, t=target: t, improved)

        if improved != text:
            print(f"[Learning] Applied {len(replacements)} learned replacement(s)")
        return improved

    def close(self) -> None:
        self._closed = True
        with self._readers_lock:
            readers, self._readers = self._readers, []
        for conn in readers:
            conn.close()
        with self._write_lock:
            self._writer.close()

    def __enter__(self) -> "LearningStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
