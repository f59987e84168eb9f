"""
Live meeting session.

MeetingSession ties the pipeline together: it opens the transcription
connection, starts the microphone only once the connection is open, feeds
transcript events into the aggregator and runs the insight scheduler while
listening. Stopping tears all of it down together.
"""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Set

from .capture import AudioCaptureSession, CaptureError
from .insights import FEED_LIMIT, InsightFeed, InsightScheduler
from .logger import console_print, log_debug, log_error, log_exception
from .meeting_store import PersistenceGateway, TranscriptRow
from .providers import Insight, ProviderGateway
from .transcript import TranscriptAggregator, TranscriptSegment
from .transcription_client import (
    ConnectionClosed,
    ConnectionFailed,
    ConnectionState,
    MissingCredential,
    StreamConnectionError,
    TranscriptEvent,
    TranscriptionSession,
)


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    STOPPING = "stopping"
    CLOSED = "closed"


class MeetingSession:
    """Supervises capture, transcription and insight analysis for one meeting."""

    def __init__(
        self,
        gateway: ProviderGateway,
        credential: Optional[str],
        device_id: Optional[str] = None,
        mode="general",
        capture: Optional[AudioCaptureSession] = None,
        transcription_factory: Optional[Callable[[], TranscriptionSession]] = None,
        analysis_period: float = 5.0,
        feed_limit: int = FEED_LIMIT,
        on_segment: Optional[Callable[[TranscriptSegment], None]] = None,
        on_insights: Optional[Callable[[List[Insight]], None]] = None,
        on_state: Optional[Callable[[SessionState], None]] = None,
    ):
        """
        Args:
            gateway: Provider gateway for insight analysis
            credential: Transcription API key (None/empty fails on start)
            device_id: Input device id, or None for the system default
            mode: Persona name (general, sales, pitch, interview)
            capture: Audio capture session (a default one if omitted)
            transcription_factory: Builds a TranscriptionSession per start()
            analysis_period: Seconds between insight ticks
            feed_limit: Maximum insights kept in the feed
            on_segment: Called with every created or updated segment
            on_insights: Called with every new batch of insights
            on_state: Called on every state change

        Raises:
            ValueError: If mode is unknown
        """
        self.gateway = gateway
        self.credential = credential
        self.device_id = device_id
        self.capture = capture or AudioCaptureSession()
        self._transcription_factory = transcription_factory or TranscriptionSession
        self.on_segment = on_segment
        self.on_state = on_state

        self.aggregator = TranscriptAggregator()
        self.feed = InsightFeed(feed_limit)
        # One scheduler for the whole meeting so the cursor survives a restart
        self.scheduler = InsightScheduler(
            self.aggregator,
            gateway,
            mode=mode,
            period=analysis_period,
            feed=self.feed,
            on_insights=on_insights,
        )

        self.transcription: Optional[TranscriptionSession] = None
        self.error: Optional[str] = None
        self.duration = 0.0
        self._state = SessionState.IDLE
        # Bumped on every start/teardown; work tagged with an older id is stale
        self._run_id = 0
        self._tasks: Set[asyncio.Task] = set()
        self._listening_since: Optional[float] = None
        # Set once a teardown reaches Closed; a concurrent stop() waits on it
        self._closed: Optional[asyncio.Event] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self):
        return self.scheduler.mode

    @property
    def is_recording(self) -> bool:
        return self._state in (SessionState.CONNECTING, SessionState.LISTENING, SessionState.STOPPING)

    def has_credential(self) -> bool:
        """True if the selected insight provider has a key (else mock insights)."""
        return self.gateway.has_credential()

    def _set_state(self, state: SessionState):
        if state is self._state:
            return
        self._state = state
        log_debug(f"Session state -> {state.value}")
        if self.on_state is not None:
            self.on_state(state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _is_current(self, run_id: int) -> bool:
        return run_id == self._run_id and self._state is not SessionState.CLOSED

    async def start(self):
        """
        Connect, then start the microphone, then start insight analysis.

        Returns once listening, or once stopped while connecting.

        Raises:
            MissingCredential: No transcription key configured
            StreamConnectionError: The transcription connection could not be opened
            CaptureError: The microphone could not be opened
        """
        if self._state not in (SessionState.IDLE, SessionState.CLOSED):
            log_debug(f"start() ignored in state {self._state.value}")
            return

        self._run_id += 1
        run_id = self._run_id
        self.error = None
        self._set_state(SessionState.CONNECTING)
        console_print("[Session] Starting...")

        transcription = self._transcription_factory()
        self.transcription = transcription
        self._spawn(self._consume_events(transcription, run_id))

        try:
            await transcription.connect(self.credential)
        except MissingCredential as e:
            await self._fail(run_id, str(e))
            raise
        except StreamConnectionError as e:
            await self._fail(run_id, e.detail)
            raise

        if not self._is_current(run_id):
            log_debug("Session stopped while connecting")
            return
        if transcription.state is not ConnectionState.OPEN:
            await self._fail(run_id, self.error or "Transcription connection closed while connecting")
            return

        # Microphone starts only after the connection is open so no audio is lost
        try:
            await self.capture.start(self.device_id)
        except CaptureError as e:
            await self._fail(run_id, f"Microphone unavailable: {e.reason}")
            raise

        if not self._is_current(run_id):
            self.capture.stop()
            return

        self._listening_since = time.monotonic()
        self._set_state(SessionState.LISTENING)
        self._spawn(self._pump_audio(transcription, run_id))
        self.scheduler.start()
        console_print("[Session] Listening")

    async def stop(self):
        """
        Stop capture, connection and analysis together. Idempotent.

        Returns once the session is Closed, also when another teardown is
        already in progress.
        """
        if self._state is SessionState.STOPPING and self._closed is not None:
            await self._closed.wait()
            return
        await self._teardown()

    async def _fail(self, run_id: int, message: str):
        if run_id != self._run_id:
            return
        self.error = message
        log_error(f"Session failed: {message}")
        console_print(f"[Session] Error: {message}")
        await self._teardown()

    async def _teardown(self):
        if self._state in (SessionState.IDLE, SessionState.STOPPING, SessionState.CLOSED):
            return
        self._run_id += 1
        self._closed = asyncio.Event()
        self._set_state(SessionState.STOPPING)
        try:
            await self._release()
        finally:
            self._set_state(SessionState.CLOSED)
            self._closed.set()
        console_print("[Session] Stopped")

    async def _release(self):
        self.scheduler.stop()
        self.capture.stop()
        if self._listening_since is not None:
            self.duration += time.monotonic() - self._listening_since
            self._listening_since = None

        if self.transcription is not None:
            await self.transcription.close()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _pump_audio(self, transcription: TranscriptionSession, run_id: int):
        async for chunk in self.capture.chunks():
            if run_id != self._run_id:
                return
            await transcription.send(chunk)

    async def _consume_events(self, transcription: TranscriptionSession, run_id: int):
        try:
            async for event in transcription.events():
                if run_id != self._run_id:
                    # Late event from a connection that has been torn down
                    return
                if isinstance(event, TranscriptEvent):
                    segment = self.aggregator.apply(event)
                    if self.on_segment is not None:
                        self.on_segment(segment)
                elif isinstance(event, ConnectionFailed):
                    self.error = event.detail
                elif isinstance(event, ConnectionClosed):
                    if self._state is SessionState.LISTENING:
                        message = self.error or f"Transcription connection closed ({event.code}) {event.reason}".rstrip()
                        await self._fail(run_id, message)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_exception(e, "in transcript event handling")
            await self._fail(run_id, f"Transcript handling failed: {e}")

    def save(self, store: PersistenceGateway, title: Optional[str] = None) -> int:
        """
        Persist the final transcript as a new meeting.

        Args:
            store: Persistence gateway
            title: Meeting title (defaults to "Meeting - <date>")

        Returns:
            The new meeting id

        Raises:
            RuntimeError: If the session is still recording
        """
        if self.is_recording:
            raise RuntimeError("Stop the session before saving")

        title = title or f"Meeting - {datetime.now().strftime('%Y-%m-%d')}"
        meeting_id = store.create_meeting(title)
        segments = self.aggregator.final_segments()
        store.append_transcripts(meeting_id, [
            TranscriptRow(segment.speaker, segment.text, segment.timestamp_ms) for segment in segments
        ])
        store.update_meeting(meeting_id, duration=int(round(self.duration)))
        console_print(f"[Session] Saved meeting {meeting_id} ({len(segments)} lines)")
        return meeting_id
