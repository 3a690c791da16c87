"""
Edit-delta bridge: receives user edits from a browser extension and feeds
them into the learning store.

Browser native messaging frames every message as a 4-byte little-endian
length followed by UTF-8 JSON. The extension debounces typing itself and
sends one EDIT_DETECTED per settled edit. stdout is the message channel,
so nothing in this module prints to it; diagnostics go to stderr and the
event log.

Usage:
    feed = LearningFeed(store, classifier, metrics)
    host = NativeMessagingHost(sys.stdin.buffer, on_edit=feed.submit)
    host.serve_forever()
"""

import json
import struct
import sys
import threading
from queue import Queue, Empty
from typing import BinaryIO, Callable, Optional, TYPE_CHECKING

from .errors import ClassificationError, LearningStoreError, ModelNotLoaded
from .metrics import log_learning_event
from .types import DocumentType

if TYPE_CHECKING:
    from .classify import Classifier
    from .learning import LearningStore
    from .metrics import MetricsWriter


HEADER = struct.Struct("<I")
MAX_MESSAGE_BYTES = 4 * 1024 * 1024

EditCallback = Callable[..., None]


def _log(message: str) -> None:
    print(f"[Bridge] {message}", file=sys.stderr, flush=True)


class ProtocolError(ValueError):
    """Malformed native-messaging frame."""


class InvalidPayload(ProtocolError):
    """A complete frame whose body is not a JSON object."""


# Framing

def encode_message(message: dict) -> bytes:
    payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
    return HEADER.pack(len(payload)) + payload


def read_message(stream: BinaryIO) -> Optional[dict]:
    """
    Read one framed message. Returns None at end of stream.

    Raises:
        ProtocolError: truncated frame, oversized frame or invalid JSON
    """
    header = stream.read(HEADER.size)
    if not header:
        return None
    if len(header) < HEADER.size:
        raise ProtocolError("Truncated length header")

    (length,) = HEADER.unpack(header)
    if length > MAX_MESSAGE_BYTES:
        raise ProtocolError(f"Message of {length} bytes exceeds limit")

    payload = stream.read(length)
    if len(payload) != length:
        raise ProtocolError(f"Incomplete message: expected {length} bytes, got {len(payload)}")

    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidPayload(f"Invalid message JSON: {e}") from e
    if not isinstance(message, dict):
        raise InvalidPayload("Message is not a JSON object")
    return message


class LearningFeed:
    """
    Records observed edits on a background thread.

    The document type is taken from the caller when known, otherwise
    the original text is classified; failures fall back to unknown.
    Learning failures are logged and never raised.
    """

    def __init__(
        self,
        store: "LearningStore",
        classifier: Optional["Classifier"] = None,
        metrics: Optional["MetricsWriter"] = None,
    ):
        self.store = store
        self.classifier = classifier
        self.metrics = metrics
        self._queue: Queue = Queue()
        self._shutdown = threading.Event()
        self._worker = threading.Thread(target=self._worker_loop, daemon=True)
        self._worker.start()

    def submit(
        self,
        original: str,
        edited: str,
        url: Optional[str] = None,
        document_type: Optional[DocumentType] = None,
    ) -> bool:
        if not original.strip() or original == edited:
            return False
        self._queue.put((original, edited, url, document_type))
        return True

    def _classify(self, text: str) -> DocumentType:
        if self.classifier is None:
            return DocumentType.UNKNOWN
        try:
            return self.classifier.classify(text)
        except (ClassificationError, ModelNotLoaded) as e:
            _log(f"Classification failed, recording as unknown: {e}")
            return DocumentType.UNKNOWN

    def _process(self, item: tuple) -> None:
        original, edited, url, document_type = item
        if document_type is None:
            document_type = self._classify(original)
        try:
            self.store.record(document_type, original, edited)
        except LearningStoreError as e:
            _log(f"Failed to record edit: {e}")
            log_learning_event(
                self.metrics,
                "learning_failed",
                document_type=document_type.value,
                source_url=url,
                error=str(e),
            )

    def _worker_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                item = self._queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                self._process(item)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every submitted edit has been processed."""
        self._queue.join()

    def shutdown(self) -> None:
        self.flush()
        self._shutdown.set()
        self._worker.join(timeout=2.0)


class NativeMessagingHost:
    """
    Reads framed messages from the extension and dispatches them.

    EDIT_DETECTED messages carry original, edited and url (sourceURL is
    accepted as well) and are passed to on_edit(original, edited, url).
    """

    def __init__(self, input_stream: BinaryIO, on_edit: EditCallback):
        self.input_stream = input_stream
        self.on_edit = on_edit
        self.messages_handled = 0

    def handle(self, message: dict) -> None:
        kind = message.get("type")
        if kind == "EDIT_DETECTED":
            original = message.get("original")
            edited = message.get("edited")
            url = message.get("url") or message.get("sourceURL")
            if not isinstance(original, str) or not isinstance(edited, str):
                _log("Invalid EDIT_DETECTED message: missing original/edited")
                return
            _log(f"Edit detected from {url or 'unknown page'}")
            self.on_edit(original, edited, url)
        elif kind == "CONTENT_SCRIPT_READY":
            _log("Content script ready")
        else:
            _log(f"Unknown message type: {kind!r}")

    def serve_forever(self) -> int:
        """
        Process messages until the stream closes or a frame is broken.

        Frames with an unreadable body are skipped. Returns the number
        of messages handled.
        """
        _log("Native messaging host started")
        while True:
            try:
                message = read_message(self.input_stream)
            except InvalidPayload as e:
                _log(f"Skipping message: {e}")
                continue
            except ProtocolError as e:
                _log(f"Protocol error, stopping: {e}")
                break
            if message is None:
                break
            self.handle(message)
            self.messages_handled += 1

        _log(f"Native messaging host stopped after {self.messages_handled} message(s)")
        return self.messages_handled
