"""
Microphone capture for live meeting transcription.

Uses sounddevice (PortAudio) to read 16 kHz mono int16 audio. The PortAudio
callback runs on the driver thread and only hands samples to the event loop;
all session state lives on the loop.
Produces two lazy streams: fixed-cadence AudioChunks for transcription and
latest-wins AmplitudeFrames for level meters.
"""

import asyncio
import time
import numpy as np
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Tuple, Union

from .logger import console_print, log_debug, log_error


def _sounddevice():
    # Imported lazily: the module raises OSError on hosts without PortAudio.
    import sounddevice as sd
    return sd


@dataclass(frozen=True)
class AudioChunk:
    """A block of captured PCM audio ready to send."""
    data: bytes           # int16 little-endian mono PCM
    sequence: int         # 1-based, monotonic per capture session
    captured_at: float    # time.time() when the chunk was completed


@dataclass(frozen=True)
class AmplitudeFrame:
    """Intensity snapshot for visualization (0-255 per bin)."""
    values: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class InputDevice:
    """An audio input device as shown in device pickers."""
    id: str
    label: str


class CaptureError(Exception):
    """Raised when the input device cannot be opened (busy, denied, missing)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Audio capture failed: {reason}")


# Analyser-style scaling (matches a browser AnalyserNode's defaults)
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


def compute_amplitude_frame(samples: np.ndarray, bins: int = 128) -> AmplitudeFrame:
    """
    Compute a byte-scaled frequency magnitude frame from int16 samples.

    Args:
        samples: int16 (or float in [-1, 1]) mono samples
        bins: Number of output bins; the FFT window is 2 * bins samples

    Returns:
        AmplitudeFrame with exactly `bins` values in 0-255
    """
    window_size = bins * 2
    if samples.dtype == np.int16:
        audio = samples.astype(np.float32) / 32768.0
    else:
        audio = samples.astype(np.float32)

    audio = audio[-window_size:]
    if len(audio) < window_size:
        audio = np.concatenate([np.zeros(window_size - len(audio), dtype=np.float32), audio])

    spectrum = np.abs(np.fft.rfft(audio * np.hanning(window_size)))[:bins] / window_size
    decibels = 20.0 * np.log10(spectrum + 1e-12)
    scaled = (decibels - MIN_DECIBELS) * (255.0 / (MAX_DECIBELS - MIN_DECIBELS))
    values = np.clip(scaled, 0, 255).astype(np.uint8)
    return AmplitudeFrame(values=tuple(int(v) for v in values))


def list_devices(query: Optional[Callable[[], list]] = None) -> List[InputDevice]:
    """
    List input-capable audio devices in PortAudio order.

    Args:
        query: Optional replacement for sounddevice.query_devices

    Returns:
        List of InputDevice; id is the PortAudio device index as a string
    """
    if query is None:
        query = _sounddevice().query_devices
    devices = []
    for index, dev in enumerate(query()):
        if dev.get('max_input_channels', 0) > 0:
            devices.append(InputDevice(id=str(index), label=dev['name']))
    return devices


def _resolve_device(device_id: Optional[str]) -> Optional[Union[int, str]]:
    """Map a stored device id to what PortAudio accepts (index, name substring or default)."""
    if device_id is None:
        return None
    device_id = str(device_id).strip()
    if not device_id:
        return None
    if device_id.isdigit():
        return int(device_id)
    return device_id


class AudioCaptureSession:
    """Owns the microphone stream while recording."""

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_ms: int = 250,
        block_size: int = 1024,
        frame_bins: int = 128,
        frame_interval: float = 1 / 30,
        max_pending_chunks: int = 8,
        stream_factory: Optional[Callable[..., object]] = None,
        device_query: Optional[Callable[[], list]] = None,
    ):
        self.sample_rate = sample_rate
        self.chunk_frames = int(sample_rate * chunk_ms / 1000)
        self.block_size = block_size
        self.frame_bins = frame_bins
        self.frame_interval = frame_interval
        self.max_pending_chunks = max_pending_chunks
        self._stream_factory = stream_factory
        self._device_query = device_query

        self._active = False
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._chunks: Optional[asyncio.Queue] = None
        self._frame_ready: Optional[asyncio.Event] = None
        self._latest_frame: Optional[AmplitudeFrame] = None

        # Driver-thread accumulation buffer (touched only by _callback)
        self._pending: List[np.ndarray] = []
        self._pending_frames = 0

        self._sequence = 0
        self.dropped_chunks = 0

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def latest_frame(self) -> Optional[AmplitudeFrame]:
        return self._latest_frame

    def list_devices(self) -> List[InputDevice]:
        return list_devices(self._device_query)

    async def start(self, device_id: Optional[str] = None) -> "AudioCaptureSession":
        """
        Open the input device and begin producing chunks and frames.

        Args:
            device_id: Optional device id from list_devices() (or name substring)

        Returns:
            self, for chaining into chunks() / frames()

        Raises:
            CaptureError: If the device cannot be opened; nothing is left open
        """
        if self._active:
            return self

        self._loop = asyncio.get_running_loop()
        self._chunks = asyncio.Queue(maxsize=self.max_pending_chunks)
        self._frame_ready = asyncio.Event()
        self._latest_frame = None
        self._pending = []
        self._pending_frames = 0
        self._sequence = 0
        self.dropped_chunks = 0

        factory = self._stream_factory or _sounddevice().InputStream
        stream = None
        try:
            stream = factory(
                device=_resolve_device(device_id),
                samplerate=self.sample_rate,
                channels=1,
                dtype='int16',
                blocksize=self.block_size,
                callback=self._callback,
            )
            # Set before start() so the first callback is not discarded
            self._active = True
            stream.start()
        except Exception as e:
            self._active = False
            if stream is not None:
                self._close_stream(stream)
            raise CaptureError(str(e)) from e

        self._stream = stream
        console_print(f"[Capture] Microphone started (device={device_id or 'default'})")
        return self

    def stop(self):
        """Release the input device. Safe to call repeatedly."""
        if not self._active and self._stream is None:
            return

        self._active = False
        stream, self._stream = self._stream, None
        if stream is not None:
            self._close_stream(stream)

        # Pending chunks are dropped, not replayed
        if self._chunks is not None:
            while not self._chunks.empty():
                self._chunks.get_nowait()
            self._chunks.put_nowait(None)
        if self._frame_ready is not None:
            self._frame_ready.set()

        console_print("[Capture] Microphone stopped")

    @staticmethod
    def _close_stream(stream):
        try:
            stream.stop()
        except Exception as e:
            log_error("Failed to stop input stream", e)
        try:
            stream.close()
        except Exception as e:
            log_error("Failed to close input stream", e)

    def _callback(self, indata, frames, time_info, status):
        """PortAudio callback (driver thread)."""
        if not self._active:
            return

        samples = np.asarray(indata).reshape(-1).astype(np.int16, copy=True)
        frame = compute_amplitude_frame(samples, self.frame_bins)

        self._pending.append(samples)
        self._pending_frames += len(samples)
        chunk_data = None
        if self._pending_frames >= self.chunk_frames:
            chunk_data = np.concatenate(self._pending).tobytes()
            self._pending = []
            self._pending_frames = 0

        try:
            self._loop.call_soon_threadsafe(self._deliver, frame, chunk_data)
        except RuntimeError:
            # Loop closed while the driver was still delivering
            pass

    def _deliver(self, frame: AmplitudeFrame, chunk_data: Optional[bytes]):
        """Runs on the event loop thread."""
        if not self._active:
            return

        self._latest_frame = frame
        self._frame_ready.set()

        if chunk_data is None:
            return
        self._sequence += 1
        chunk = AudioChunk(data=chunk_data, sequence=self._sequence, captured_at=time.time())
        try:
            self._chunks.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped_chunks += 1
            log_debug(f"Dropped audio chunk {chunk.sequence}: consumer not keeping up")

    async def chunks(self) -> AsyncIterator[AudioChunk]:
        """Yield AudioChunks until the session stops."""
        queue = self._chunks
        if queue is None:
            return
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            yield chunk

    async def frames(self) -> AsyncIterator[AmplitudeFrame]:
        """Yield the latest AmplitudeFrame at most once per frame_interval."""
        ready = self._frame_ready
        if ready is None:
            return
        while self._active:
            await ready.wait()
            ready.clear()
            if not self._active:
                return
            if self._latest_frame is not None:
                yield self._latest_frame
            await asyncio.sleep(self.frame_interval)
