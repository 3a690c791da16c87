"""
Microphone capture producing canonical 16kHz mono PCM16 buffers.

Opens a sounddevice input stream (16kHz when the device allows it, the
device rate otherwise) and converts each block to canonical PCM as it
arrives. A level meter thread publishes loudness at ~60 Hz while capturing.
"""

import threading
import time
from queue import Queue, Empty, Full
from typing import Callable, List, Optional, Set, Union

import numpy as np

from .audio_processing import StreamConverter, pcm16_samples, rms_level, LEVEL_WINDOW_SAMPLES, LEVEL_GAIN
from .errors import AudioError, AlreadyCapturing, NotCapturing, DeviceNotFound, PermissionDenied
from .metrics import MetricsWriter
from .types import AudioFormat, CaptureState, CANONICAL_FORMAT


# Constants
DEFAULT_BLOCKSIZE = 4096
DEFAULT_LEVEL_HZ = 60.0
LEVEL_QUEUE_SIZE = 120  # ~2 seconds of levels at 60 Hz

DeviceId = Union[int, str, None]


class LevelSubscription:
    """
    Bounded queue of level readings. When full, the oldest reading is dropped.

    Usage:
        with capture.levels.subscribe() as sub:
            for level in sub:
                draw(level)
    """

    def __init__(self, stream: "LevelStream", maxsize: int):
        self._stream = stream
        self._queue: Queue[float] = Queue(maxsize=maxsize)
        self.closed = False

    def _push(self, level: float) -> None:
        try:
            self._queue.put_nowait(level)
        except Full:
            try:
                self._queue.get_nowait()
            except Empty:
                pass
            try:
                self._queue.put_nowait(level)
            except Full:
                pass

    def get(self, timeout: Optional[float] = None) -> Optional[float]:
        """Next level, or None if nothing arrives within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def __iter__(self):
        while not self.closed:
            level = self.get(timeout=0.1)
            if level is not None:
                yield level

    def close(self) -> None:
        self.closed = True
        self._stream._unsubscribe(self)

    def __enter__(self) -> "LevelSubscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class LevelStream:
    """Latest level plus fan-out to bounded subscriptions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = 0.0
        self._subscribers: Set[LevelSubscription] = set()

    @property
    def latest(self) -> float:
        with self._lock:
            return self._latest

    def subscribe(self, maxsize: int = LEVEL_QUEUE_SIZE) -> LevelSubscription:
        subscription = LevelSubscription(self, maxsize)
        with self._lock:
            self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: LevelSubscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, level: float) -> None:
        with self._lock:
            self._latest = level
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._push(level)


class AudioCapture:
    """
    Single-session microphone capture.

    Thread-safe: start/stop may be called from any thread. At most one
    capture is active at a time.

    Usage:
        capture = AudioCapture(metrics=metrics)
        capture.start_capture("MacBook Pro Microphone")
        # ... user speaks ...
        pcm = capture.stop_capture()  # 16kHz mono int16 bytes
    """

    def __init__(
        self,
        permission_check: Optional[Callable[[], bool]] = None,
        level_gain: float = LEVEL_GAIN,
        level_hz: float = DEFAULT_LEVEL_HZ,
        metrics: Optional[MetricsWriter] = None,
    ):
        self.permission_check = permission_check or (lambda: True)
        self.level_gain = level_gain
        self.level_hz = level_hz
        self.metrics = metrics
        self.levels = LevelStream()

        # State
        self.state = CaptureState.IDLE
        self._control_lock = threading.Lock()  # serializes start/stop
        self._lock = threading.Lock()          # guards buffers; taken by the audio callback
        self._stream = None
        self._chunks: List[bytes] = []
        self._tail = np.zeros(0, dtype=np.float32)  # last canonical samples, for the level meter
        self._converter: Optional[StreamConverter] = None
        self._device: DeviceId = None
        self._stream_format: Optional[AudioFormat] = None

        # Level meter
        self._level_stop = threading.Event()
        self._level_thread: Optional[threading.Thread] = None

    @property
    def is_capturing(self) -> bool:
        return self.state == CaptureState.CAPTURING

    def _find_device(self, device_id: DeviceId) -> tuple:
        """
        Resolve a device by index or name (fuzzy matching).

        Returns:
            (device index or None for the system default, native sample rate)
        """
        import sounddevice as sd

        if device_id is None or device_id == "":
            info = sd.query_devices(kind="input")
            return None, int(info["default_samplerate"])

        devices = sd.query_devices()

        if isinstance(device_id, int) or str(device_id).isdigit():
            index = int(device_id)
            if 0 <= index < len(devices) and devices[index]["max_input_channels"] > 0:
                return index, int(devices[index]["default_samplerate"])
            raise DeviceNotFound(f"No input device with index {index}")

        name = str(device_id).lower()
        matchers = (
            lambda d: d["name"].lower() == name,      # exact
            lambda d: name in d["name"].lower(),      # substring
            lambda d: d["name"].lower() in name,      # reverse substring
        )
        for matches in matchers:
            for i, d in enumerate(devices):
                if d["max_input_channels"] > 0 and matches(d):
                    return i, int(d["default_samplerate"])

        raise DeviceNotFound(f"Microphone not found: {device_id}")

    def _resolve_stream_format(self, device_id: DeviceId) -> None:
        """Pick the device and the rate to open it at (16kHz if supported)."""
        import sounddevice as sd

        index, native_rate = self._find_device(device_id)
        rate = CANONICAL_FORMAT.sample_rate
        try:
            sd.check_input_settings(device=index, samplerate=rate, channels=1, dtype="float32")
        except sd.PortAudioError:
            rate = native_rate

        self._device = index
        self._stream_format = AudioFormat(sample_rate=rate, channels=1, bit_depth=32)

    def prewarm(self, device_id: DeviceId = None) -> None:
        """Resolve the device and converter format ahead of start_capture()."""
        with self._control_lock:
            if self.state == CaptureState.CAPTURING:
                return
            self._resolve_stream_format(device_id)
            self.state = CaptureState.PRE_WARMED
            print(f"[Audio] Pre-warmed {device_id or 'default device'} at {self._stream_format.sample_rate} Hz")

    def start_capture(self, device_id: DeviceId = None) -> None:
        """
        Begin capturing.

        Raises:
            AlreadyCapturing: a capture is active
            PermissionDenied: microphone access not granted
            DeviceNotFound: device_id matches no input device
            AudioError: the stream could not be opened
        """
        import sounddevice as sd

        with self._control_lock:
            if self.state == CaptureState.CAPTURING:
                raise AlreadyCapturing()

            if not self.permission_check():
                raise PermissionDenied()

            if self.state != CaptureState.PRE_WARMED or device_id is not None:
                self._resolve_stream_format(device_id)

            with self._lock:
                self._chunks = []
                self._tail = np.zeros(0, dtype=np.float32)
                self._converter = StreamConverter(self._stream_format, CANONICAL_FORMAT)
                self.state = CaptureState.CAPTURING

            try:
                stream = sd.InputStream(
                    device=self._device,
                    samplerate=self._stream_format.sample_rate,
                    channels=1,
                    dtype=np.float32,
                    blocksize=DEFAULT_BLOCKSIZE,
                    callback=self._audio_callback,
                )
                stream.start()
            except sd.PortAudioError as e:
                with self._lock:
                    self.state = CaptureState.IDLE
                raise AudioError(f"Could not open input stream: {e}") from e

            self._stream = stream
            self._start_level_loop()

        print(f"[Audio] Capturing from {device_id or 'default device'}")
        if self.metrics:
            self.metrics.log(
                "capture_started",
                device=str(device_id) if device_id is not None else None,
                sample_rate=self._stream_format.sample_rate,
            )

    def stop_capture(self) -> bytes:
        """
        Stop capturing and return the take as canonical PCM16.

        Raises:
            NotCapturing: no capture is active
        """
        with self._control_lock:
            with self._lock:
                if self.state != CaptureState.CAPTURING:
                    raise NotCapturing()
                self.state = CaptureState.IDLE
                if self._converter is not None:
                    self._chunks.append(self._converter.flush())
                pcm = b"".join(self._chunks)
                self._chunks = []
                self._tail = np.zeros(0, dtype=np.float32)
                self._converter = None

            stream = self._stream
            self._stream = None
            self._stop_level_loop()

            # Close stream outside the buffer lock to avoid deadlock with the callback
            if stream is not None:
                try:
                    stream.stop()
                    stream.close()
                except Exception as e:
                    print(f"[Audio] Error closing stream: {e}")

        duration_s = len(pcm) / (CANONICAL_FORMAT.sample_rate * CANONICAL_FORMAT.bytes_per_frame)
        print(f"[Audio] Captured {duration_s:.2f}s")
        if self.metrics:
            self.metrics.log("capture_stopped", duration_s=duration_s, bytes=len(pcm))

        return pcm

    def close(self) -> None:
        """Force-stop any active capture and discard its audio."""
        if self.state == CaptureState.CAPTURING:
            try:
                self.stop_capture()
            except NotCapturing:
                pass

    def __enter__(self) -> "AudioCapture":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """Called by sounddevice for each audio block. No I/O here."""
        if status:
            print(f"[Audio] Callback status: {status}")

        audio = indata[:, 0] if indata.ndim > 1 else indata
        raw = audio.astype("<f4").tobytes()

        # The converter carries state between blocks; stop_capture() flushes it under this lock
        with self._lock:
            if self.state != CaptureState.CAPTURING:
                return
            pcm = self._converter.process(raw)
            self._chunks.append(pcm)
            samples = pcm16_samples(pcm).astype(np.float32) / 32768.0
            self._tail = np.concatenate((self._tail, samples))[-LEVEL_WINDOW_SAMPLES:]

    def current_level(self) -> float:
        """Loudness of the most recent window, in [0, 1]."""
        with self._lock:
            tail = self._tail
        return rms_level(tail, LEVEL_WINDOW_SAMPLES, self.level_gain)

    def _start_level_loop(self) -> None:
        self._level_stop.clear()
        self._level_thread = threading.Thread(target=self._level_loop, daemon=True)
        self._level_thread.start()

    def _stop_level_loop(self) -> None:
        self._level_stop.set()
        thread = self._level_thread
        self._level_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self.levels.publish(0.0)

    def _level_loop(self) -> None:
        interval = 1.0 / self.level_hz
        while not self._level_stop.wait(interval):
            self.levels.publish(self.current_level())


def wait_for_permission(
    check: Callable[[], bool],
    interval: float = 0.5,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """
    Poll check() until it returns True.

    Returns:
        True once granted; False on timeout or cancellation
    """
    cancel = cancel or threading.Event()
    deadline = time.monotonic() + timeout if timeout is not None else None

    while not cancel.is_set():
        if check():
            return True
        if deadline is not None and time.monotonic() >= deadline:
            return False
        cancel.wait(interval)

    return False


def list_input_devices() -> List[dict]:
    """Input-capable devices as {index, name, sample_rate, is_default}."""
    import sounddevice as sd

    default_input = sd.default.device[0]
    result = []
    for i, d in enumerate(sd.query_devices()):
        if d["max_input_channels"] > 0:
            result.append({
                "index": i,
                "name": d["name"],
                "sample_rate": int(d["default_samplerate"]),
                "is_default": i == default_input,
            })
    return result
