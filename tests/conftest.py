"""
Pytest fixtures for Meeting Copilot tests.

Fakes stand in for the network and the audio driver so the live pipeline can
be driven from plain tests with asyncio.run().
"""

import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

# Keep test runs from writing into the repository's logs/ directory
os.environ.setdefault("MEETING_COPILOT_LOG_DIR", tempfile.mkdtemp(prefix="meeting_copilot_logs_"))

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from meeting_copilot.providers import InsightProvider, ProviderConfig, ProviderGateway  # noqa: E402


def deepgram_result(text, is_final, speaker=None):
    """A Deepgram "Results" message as sent over the websocket."""
    words = []
    if speaker is not None:
        words = [{"word": text.split()[0] if text else "", "speaker": speaker}]
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text, "words": words}]},
    })


async def settle(rounds=10):
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


_CLEAN_CLOSE = object()


class FakeWebSocket:
    """Scriptable stand-in for a websockets client connection."""

    def __init__(self, messages=(), close_delay=0.0):
        self.sent = []
        self.close_delay = close_delay
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self._incoming = asyncio.Queue()
        for message in messages:
            self._incoming.put_nowait(message)

    def push(self, message):
        self._incoming.put_nowait(message)

    def remote_close(self, code=1011, reason="server error"):
        """Make the next read fail as if the server dropped the connection."""
        self._incoming.put_nowait(Close(code, reason))

    def end_stream(self, code=1000, reason=""):
        """Make iteration end cleanly (server sent a normal close)."""
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLEAN_CLOSE)

    @property
    def audio_sent(self):
        return [m for m in self.sent if isinstance(m, bytes)]

    @property
    def text_sent(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedError(None, Close(1000, ""))
        self.sent.append(data)

    async def close(self):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLEAN_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLEAN_CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Close):
            self.closed = True
            raise ConnectionClosedError(item, None)
        return item


class FakeConnector:
    """Connector returning a FakeWebSocket; can hold or fail the handshake."""

    def __init__(self, ws=None, error=None):
        self.ws = ws
        self.error = error
        self.gate = None
        self.calls = []

    def hold(self):
        """Block the handshake until release() (call inside the event loop)."""
        self.gate = asyncio.Event()

    def release(self):
        self.gate.set()

    async def __call__(self, url, headers):
        self.calls.append((url, headers))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.ws is None:
            self.ws = FakeWebSocket()
        return self.ws


class FakeStream:
    """Stand-in for sounddevice.InputStream."""

    def __init__(self, start_error=None, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.start_error = start_error
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def stop(self):
        self.stop_calls += 1

    def close(self):
        self.close_calls += 1

    def feed(self, samples):
        """Deliver one block as the driver would."""
        samples = np.asarray(samples, dtype=np.int16).reshape(-1, 1)
        self.callback(samples, len(samples), None, None)


class FakeStreamFactory:
    """Records every stream it opens."""

    def __init__(self, start_error=None):
        self.start_error = start_error
        self.streams = []

    @property
    def last(self):
        return self.streams[-1]

    def __call__(self, **kwargs):
        stream = FakeStream(start_error=self.start_error, **kwargs)
        self.streams.append(stream)
        return stream


class ScriptedProvider(InsightProvider):
    """Provider returning scripted raw responses (or raising scripted errors)."""

    PROVIDER_ID = "scripted"
    PROVIDER_NAME = "Scripted"
    DEFAULT_MODEL = "scripted-model"

    def __init__(self, responses=(), api_key="test-key", model=None):
        super().__init__(api_key, model)
        self.responses = list(responses)
        self.calls = []
        self.gate = None

    async def complete(self, system_prompt, text):
        self.calls.append((system_prompt, text))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if self.responses else '{"insights": []}'
        if isinstance(response, Exception):
            raise response
        return response


def insights_json(*pairs):
    return json.dumps({"insights": [{"type": t, "content": c} for t, c in pairs]})


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def stream_factory():
    return FakeStreamFactory()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(scripted_provider):
    """Gateway with a key configured, backed by the scripted provider."""
    config = ProviderConfig(provider="openai", api_keys={"openai": "test-key"})
    return ProviderGateway(config, provider=scripted_provider)


@pytest.fixture
def silence():
    """One 250 ms chunk worth of silent int16 samples at 16 kHz."""
    return np.zeros(4000, dtype=np.int16)
