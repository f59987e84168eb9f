"""
Transcription Client

Streams microphone audio to the Deepgram live transcription API over a
websocket and turns the replies into transcript events.

For a different endpoint (proxy, self-hosted), set DEEPGRAM_LISTEN_URL:
    export DEEPGRAM_LISTEN_URL=wss://proxy.example.com/v1/listen
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlencode, urlparse

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed as SocketClosed, WebSocketException

from .capture import AudioChunk
from .logger import console_print, log_debug, log_error, log_exception

DEFAULT_LISTEN_URL = os.environ.get("DEEPGRAM_LISTEN_URL", "wss://api.deepgram.com/v1/listen")


class ConnectionState(Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"


@dataclass(frozen=True)
class TranscriptEvent:
    """A partial or final recognition result."""
    text: str
    is_final: bool
    speaker: Optional[str] = None
    emitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    code: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class ConnectionFailed:
    detail: str


SessionEvent = Union[ConnectionOpened, TranscriptEvent, ConnectionClosed, ConnectionFailed]

# (url, headers) -> open websocket
Connector = Callable[[str, Dict[str, str]], Awaitable[object]]


class MissingCredential(Exception):
    """Raised when no transcription API key is configured."""


class StreamConnectionError(Exception):
    """Raised when the transcription websocket cannot be opened."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


def _validate_listen_url(url: str) -> str:
    """Validate the listen URL has a websocket scheme and a host.

    Raises:
        ValueError: If URL is malformed
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("ws", "wss"):
        raise ValueError(f"Invalid listen URL: must start with ws:// or wss:// (got '{url}')")
    if not parsed.netloc or not parsed.hostname:
        raise ValueError(f"Invalid listen URL: missing host (got '{url}')")
    return url.rstrip("/")


def parse_transcript_message(raw) -> Optional[TranscriptEvent]:
    """
    Convert one inbound websocket message into a TranscriptEvent.

    Returns None for anything that is not a non-empty recognition result
    (metadata, speech-started, utterance-end, binary or undecodable frames).
    """
    if isinstance(raw, (bytes, bytearray)):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        log_debug(f"Ignoring undecodable transcription message: {raw[:80]!r}")
        return None
    if not isinstance(data, dict) or data.get("type", "Results") != "Results":
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    best = alternatives[0]
    text = (best.get("transcript") or "").strip()
    if not text:
        return None

    speaker = None
    words = best.get("words") or []
    if words and isinstance(words[0], dict) and isinstance(words[0].get("speaker"), int):
        speaker = f"Speaker {words[0]['speaker'] + 1}"

    return TranscriptEvent(text=text, is_final=bool(data.get("is_final")), speaker=speaker)


async def _open_websocket(url: str, headers: Dict[str, str]):
    return await websocket_connect(url, additional_headers=headers)


_END_OF_EVENTS = object()


class TranscriptionSession:
    """
    One duplex connection to the streaming transcription backend.

    State machine: CLOSED -> CONNECTING -> OPEN -> CLOSED, with ERROR reachable
    from CONNECTING or OPEN and always followed by CLOSED. Exactly one
    ConnectionClosed event is emitted per session; the event stream ends after it.
    """

    def __init__(
        self,
        url: str = DEFAULT_LISTEN_URL,
        model: str = "nova-2",
        language: str = "en-US",
        sample_rate: int = 16000,
        smart_format: bool = True,
        diarize: bool = True,
        keepalive_seconds: float = 8.0,
        connector: Optional[Connector] = None,
    ):
        self.url = _validate_listen_url(url)
        self.model = model
        self.language = language
        self.sample_rate = sample_rate
        self.smart_format = smart_format
        self.diarize = diarize
        self.keepalive_seconds = keepalive_seconds
        self._connector = connector or _open_websocket

        self._state = ConnectionState.CLOSED
        self._ws = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._closed_emitted = False
        self._reader: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def build_url(self) -> str:
        """Full listen URL with the audio format and recognition options."""
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "interim_results": "true",
            "smart_format": "true" if self.smart_format else "false",
            "diarize": "true" if self.diarize else "false",
        }
        return f"{self.url}?{urlencode(params)}"

    async def connect(self, credential: Optional[str]):
        """
        Open the connection; returns once OPEN (or once closed while connecting).

        Args:
            credential: Deepgram API key

        Raises:
            MissingCredential: If no key is given (before any network action)
            StreamConnectionError: If the handshake fails
        """
        if not credential:
            raise MissingCredential("Deepgram API key is not configured (DEEPGRAM_API_KEY)")
        if self._state is not ConnectionState.CLOSED or self._closed_emitted:
            log_debug(f"connect() ignored in state {self._state.value}")
            return

        self._state = ConnectionState.CONNECTING
        console_print("[Transcription] Connecting...")
        try:
            ws = await self._connector(self.build_url(), {"Authorization": f"Token {credential}"})
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            if self._state is not ConnectionState.CONNECTING:
                return
            detail = f"Could not connect to transcription service: {e}"
            log_error(detail)
            self._terminate(error=detail)
            raise StreamConnectionError(detail) from e

        if self._state is not ConnectionState.CONNECTING:
            # close() ran while the handshake was in flight
            await self._close_socket(ws, send_close_stream=False)
            return

        self._ws = ws
        self._state = ConnectionState.OPEN
        self._emit(ConnectionOpened())
        console_print("[Transcription] Connected")

        self._reader = asyncio.create_task(self._read_loop(ws))
        if self.keepalive_seconds and self.keepalive_seconds > 0:
            self._keepalive = asyncio.create_task(self._keepalive_loop(ws))

    async def send(self, chunk: AudioChunk):
        """Send one audio chunk; a no-op unless the connection is OPEN."""
        if self._state is not ConnectionState.OPEN:
            return
        try:
            await self._ws.send(chunk.data)
        except SocketClosed as e:
            self._terminate(*_close_info(e))

    async def close(self):
        """Close the connection. Idempotent; emits ConnectionClosed at most once."""
        if self._closed_emitted:
            return
        ws, self._ws = self._ws, None
        was_open = self._state is ConnectionState.OPEN
        self._state = ConnectionState.CLOSED
        self._cancel_tasks()
        if ws is not None:
            await self._close_socket(ws, send_close_stream=was_open)
        self._emit_closed(1000, "closed by client")

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield lifecycle and transcript events until the session is closed."""
        while True:
            event = await self._events.get()
            if event is _END_OF_EVENTS:
                return
            yield event

    # --- internals ---

    def _emit(self, event):
        if not self._closed_emitted:
            self._events.put_nowait(event)

    def _emit_closed(self, code: Optional[int], reason: str):
        if self._closed_emitted:
            return
        self._events.put_nowait(ConnectionClosed(code=code, reason=reason))
        self._closed_emitted = True
        self._events.put_nowait(_END_OF_EVENTS)
        console_print(f"[Transcription] Connection closed ({code}) {reason}".rstrip())

    def _terminate(self, code: Optional[int] = None, reason: str = "", error: Optional[str] = None):
        """Move to CLOSED after a remote close or failure."""
        if self._closed_emitted:
            return
        if error is not None:
            self._state = ConnectionState.ERROR
            self._emit(ConnectionFailed(detail=error))
        self._state = ConnectionState.CLOSED
        self._ws = None
        self._cancel_tasks()
        self._emit_closed(code, reason)

    def _cancel_tasks(self):
        current = asyncio.current_task()
        for task in (self._reader, self._keepalive):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader = None
        self._keepalive = None

    async def _close_socket(self, ws, send_close_stream: bool):
        try:
            if send_close_stream:
                await ws.send(json.dumps({"type": "CloseStream"}))
            await ws.close()
        except (WebSocketException, OSError) as e:
            log_debug(f"Ignoring error while closing transcription socket: {e}")

    async def _read_loop(self, ws):
        try:
            async for message in ws:
                if self._state is not ConnectionState.OPEN:
                    return
                event = parse_transcript_message(message)
                if event is not None:
                    self._emit(event)
        except SocketClosed as e:
            self._terminate(*_close_info(e))
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(e, "in transcription reader")
            self._terminate(error=f"Transcription stream failed: {e}")
            return
        self._terminate(getattr(ws, "close_code", None), getattr(ws, "close_reason", None) or "")

    async def _keepalive_loop(self, ws):
        message = json.dumps({"type": "KeepAlive"})
        while self._state is ConnectionState.OPEN:
            await asyncio.sleep(self.keepalive_seconds)
            if self._state is not ConnectionState.OPEN:
                return
            try:
                await ws.send(message)
            except SocketClosed as e:
                self._terminate(*_close_info(e))
                return


def _close_info(exc: SocketClosed):
    """(code, reason) from a ConnectionClosed exception."""
    frame = exc.rcvd or exc.sent
    if frame is None:
        return None, ""
    return frame.code, frame.reason
