import asyncio
import inspect
import logging
import threading
from typing import Any, Callable

import numpy as np

from app.config import settings
from app.errors import CaptureError, HardwareUnavailable, PermissionDenied
from app.models import AudioSegment
from app.recording.audio_utils import take_chunks

logger = logging.getLogger(__name__)

SegmentConsumer = Callable[[AudioSegment], Any]
FailureHandler = Callable[[CaptureError], None]

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def _classify_portaudio_error(error: Exception) -> CaptureError:
    message = str(error)
    if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
        return PermissionDenied(f"Microphone access was denied: {message}")
    return HardwareUnavailable(f"Audio input unavailable: {message}")


def open_input_stream(**stream_kwargs):  # noqa: ANN201
    """Open and start a ``sounddevice.InputStream``.

    PortAudio is loaded on first use, so a host without it only fails when
    capture is requested. Every PortAudio failure comes out as a
    ``CaptureError``.
    """
    try:
        import sounddevice as sd
    except OSError as e:  # PortAudio shared library missing
        raise HardwareUnavailable(f"Audio input is not supported here: {e}") from e

    try:
        sd.query_devices(kind="input")
        stream = sd.InputStream(**stream_kwargs)
    except (sd.PortAudioError, ValueError) as e:
        raise _classify_portaudio_error(e) from e
    try:
        stream.start()
    except sd.PortAudioError as e:
        stream.close()
        raise _classify_portaudio_error(e) from e
    return stream


class AudioCaptureController:
    """Owns the microphone and emits one ``AudioSegment`` per fixed interval.

    Threading model (two contexts):

    1. **Audio callback**: runs in sounddevice's internal C audio thread.
       May ONLY append to the buffer. No I/O, no logging, no heavy allocation.
       The stream's finished callback also runs there and bridges to the
       event loop with ``call_soon_threadsafe``.

    2. **Event loop**: the emission task polls the buffer, cuts complete
       segments and hands them to ``on_segment`` in capture order. Async
       consumers are started as tasks and not awaited, so back-to-back
       segments can be analysed concurrently; stopping capture does not
       cancel them.

    Use as ``async with controller:`` to guarantee the device is released on
    every exit path.
    """

    def __init__(
        self,
        on_segment: SegmentConsumer,
        on_failure: FailureHandler | None = None,
        *,
        sample_rate: int | None = None,
        segment_seconds: float | None = None,
        poll_interval: float | None = None,
        stream_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.sample_rate = sample_rate or settings.sample_rate
        self.segment_seconds = segment_seconds or settings.segment_seconds
        self.samples_per_segment = int(self.sample_rate * self.segment_seconds)
        self.poll_interval = poll_interval or settings.capture_poll_seconds
        self._stream_factory = stream_factory or open_input_stream
        self._on_segment = on_segment
        self._on_failure = on_failure

        # Audio buffer, guarded by _lock
        self._frames: list[np.ndarray] = []
        self._lock = threading.Lock()

        # Segment state, only touched on the event loop
        self._segment_index = 0
        self._emitted_samples = 0

        # Lifecycle
        self._active = False
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._emitter: asyncio.Task | None = None
        self._consumers: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def segments_emitted(self) -> int:
        return self._segment_index

    def start(self) -> None:
        """Acquire the microphone and begin emitting segments. No-op while active."""
        if self._active:
            return
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._frames = []
        self._segment_index = 0
        self._emitted_samples = 0

        try:
            self._stream = self._stream_factory(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=1024,
                callback=self._audio_callback,
                finished_callback=self._stream_finished,
            )
        except CaptureError as e:
            self._report(e)
            raise

        self._active = True
        self._emitter = self._loop.create_task(self._emit_loop())
        logger.info(
            "Audio capture started (%s Hz, %ss segments)",
            self.sample_rate, self.segment_seconds,
        )

    def stop(self) -> None:
        """Stop emitting and release the microphone. No-op while inactive.

        Leftover audio shorter than one segment is discarded.
        """
        if not self._active:
            return
        self._active = False
        if self._emitter is not None:
            self._emitter.cancel()
            self._emitter = None
        stream, self._stream = self._stream, None
        try:
            stream.stop()
        finally:
            stream.close()
            with self._lock:
                self._frames = []
        logger.info("Audio capture stopped after %d segments", self._segment_index)

    async def __aenter__(self) -> "AudioCaptureController":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    async def wait_consumers(self) -> None:
        """Wait for every consumer task launched so far."""
        if self._consumers:
            await asyncio.gather(*list(self._consumers), return_exceptions=True)

    # ------------------------------------------------------------------
    # Audio thread
    # ------------------------------------------------------------------

    def _audio_callback(self, indata: np.ndarray, frames: int, timeinfo, status) -> None:  # noqa: ANN001
        """sounddevice callback. Buffer only, no I/O."""
        with self._lock:
            self._frames.append(indata.copy())

    def _stream_finished(self) -> None:
        """Runs when the stream ends; only unexpected while still active."""
        if self._active and self._loop is not None:
            self._loop.call_soon_threadsafe(self._device_lost)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _device_lost(self) -> None:
        if not self._active:
            return
        logger.error("Audio input stream ended unexpectedly")
        try:
            self.stop()
        except Exception:
            logger.exception("Could not stop the lost input stream cleanly")
        self._report(HardwareUnavailable("Audio input device stopped unexpectedly"))

    def _report(self, error: CaptureError) -> None:
        logger.warning("Audio capture failed (%s): %s", error.kind, error)
        if self._on_failure is not None:
            self._on_failure(error)

    async def _emit_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.poll_interval)
            self._emit_ready()

    def _emit_ready(self) -> None:
        with self._lock:
            frames, self._frames = self._frames, []
        chunks, remainder = take_chunks(frames, self.samples_per_segment)
        with self._lock:
            self._frames[:0] = remainder

        for samples in chunks:
            start = self._emitted_samples
            self._emitted_samples += len(samples)
            segment = AudioSegment(
                index=self._segment_index,
                samples=samples,
                sample_rate=self.sample_rate,
                start_time=round(start / self.sample_rate, 2),
                end_time=round(self._emitted_samples / self.sample_rate, 2),
            )
            self._segment_index += 1
            self._deliver(segment)

    def _deliver(self, segment: AudioSegment) -> None:
        try:
            result = self._on_segment(segment)
        except Exception:
            logger.exception("Segment consumer failed on segment %d", segment.index)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._consumers.add(task)
            task.add_done_callback(self._consumer_done)

    def _consumer_done(self, task: asyncio.Task) -> None:
        self._consumers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Segment consumer crashed", exc_info=task.exception())
