"""
JSONL event log for captures, transcriptions, enhancements and learning.

Callers on any thread (including the audio callback) hand events to
log(), which only enqueues; a daemon thread appends them to the file in
batches. Write failures are reported on stderr and the batch is dropped.

Usage:
    metrics = MetricsWriter(config.metrics_file)
    metrics.log("classification", document_type="email", latency_ms=12)
    ...
    metrics.shutdown()
"""

import json
import sys
import time
import threading
from queue import Queue, Empty
from pathlib import Path
from typing import Any, List, Optional

from .types import EnhancementDecision, TranscriptionResult


class MetricsWriter:
    """Appends one JSON object per event to metrics_file."""

    def __init__(self, metrics_file: Path, poll_interval: float = 1.0):
        self.metrics_file = Path(metrics_file)
        self.poll_interval = poll_interval
        self._pending: Queue = Queue()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name="scribeloop-metrics", daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def log(self, event: str, **fields: Any) -> None:
        """Record an event with a timestamp. Events after shutdown() are dropped."""
        if self.closed:
            return
        self._pending.put({"ts": time.time(), "event": event, **fields})

    def _take_pending(self, first: Optional[dict] = None) -> List[dict]:
        batch = [first] if first is not None else []
        while True:
            try:
                batch.append(self._pending.get_nowait())
            except Empty:
                return batch

    def _append(self, batch: List[dict]) -> None:
        if not batch:
            return
        lines = "".join(json.dumps(entry, default=str) + "\n" for entry in batch)
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.metrics_file, "a", encoding="utf-8") as f:
                f.write(lines)
        except OSError as e:
            # stderr: stdout may be a native messaging channel
            print(f"[Metrics] Dropped {len(batch)} event(s): {e}", file=sys.stderr)

    def _run(self) -> None:
        while not self._closed.is_set():
            try:
                first = self._pending.get(timeout=self.poll_interval)
            except Empty:
                continue
            self._append(self._take_pending(first))

    def flush(self) -> None:
        """Write whatever is queued now, on the calling thread."""
        self._append(self._take_pending())

    def shutdown(self) -> None:
        self._closed.set()
        self._thread.join(timeout=2.0)
        self.flush()


# Event helpers; a None writer means metrics are off

def log_transcription(
    metrics: Optional[MetricsWriter],
    result: TranscriptionResult,
    audio_duration_s: float,
) -> None:
    if metrics is None:
        return
    metrics.log(
        "transcription",
        text=result.text[:200],
        detected_language=result.detected_language,
        processing_time_s=result.processing_time_s,
        audio_duration_s=audio_duration_s,
    )


def log_enhancement(
    metrics: Optional[MetricsWriter],
    decision: EnhancementDecision,
    latency_ms: float,
    learned_pattern_applied: bool = False,
) -> None:
    if metrics is None:
        return
    metrics.log(
        "enhancement",
        latency_ms=latency_ms,
        learned_pattern_applied=learned_pattern_applied,
        **decision.to_dict(),
    )


def log_learning_event(
    metrics: Optional[MetricsWriter],
    event: str,
    **fields: Any,
) -> None:
    """learning_recorded, learning_failed or learning_sweep."""
    if metrics is None:
        return
    metrics.log(event, **fields)
