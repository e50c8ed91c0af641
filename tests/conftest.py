import asyncio
from typing import Optional

import pytest

from guessify.exceptions import MediaError, PlaybackRejected
from guessify.models.room import Track
from guessify.services.playback import PlaybackSession
from guessify.services.rounds import RoundLifecycleController


class FakeHandle:
    def __init__(self, backend, source, duration=None):
        self._backend = backend
        self.source = source
        self.volume = 1.0
        self.muted = False
        self._duration = duration or 30.0
        self.loaded = False
        self.playing = False
        self.released = False
        self.position = 0.0

    @property
    def duration(self) -> Optional[float]:
        return self._duration if self.loaded else None

    async def load(self):
        if self.source in self._backend.broken:
            raise MediaError(self.source, "failed to load: 404")
        gate = self._backend.gates.get(self.source)
        if gate is not None:
            await gate.wait()
        self.loaded = True

    async def play(self):
        if self._backend.reject and not self.muted:
            raise PlaybackRejected("locked")
        self.playing = True
        self._backend.played.append(self.source)

    def seek(self, position):
        self.position = position

    def pause(self):
        self.playing = False

    def release(self):
        self.pause()
        self.released = True


class FakeAudioBackend:
    """Audio output that never makes a sound. Loads can be held open or made to fail."""

    def __init__(self):
        self.handles = []
        self.played = []
        self.gates = {}
        self.broken = set()
        self.reject = False
        self.resumed = 0

    def open(self, source, duration=None):
        handle = FakeHandle(self, source, duration)
        self.handles.append(handle)
        return handle

    async def resume(self):
        self.resumed += 1

    def hold(self, source) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[source] = gate
        return gate

    @property
    def audible(self):
        return [h for h in self.handles if h.playing and not h.released and not h.muted]


class RecordingEmitter:
    def __init__(self, on_emit=None):
        self.sent = []
        self._on_emit = on_emit

    async def __call__(self, event, payload):
        self.sent.append((event, payload))
        if self._on_emit is not None:
            await self._on_emit(event, payload)

    def names(self):
        return [event for event, _ in self.sent]

    def payloads(self, event):
        return [payload for name, payload in self.sent if name == event]


class YieldingEmitter(RecordingEmitter):
    """Gives other tasks a turn on every emit, like a real socket write."""

    async def __call__(self, event, payload):
        await super().__call__(event, payload)
        await asyncio.sleep(0)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_track(i: int, **kwargs) -> Track:
    data = {
        "id": str(i),
        "title": f"Song {i}",
        "artist": f"Artist {i}",
        "preview_url": f"https://cdn.test/previews/{i}.mp3",
    }
    data.update(kwargs)
    return Track(**data)


def room_info(mode="Single Song", rounds=3, guess_time=20, snippet=None, tracks=10, code="ABC123"):
    config = {"genre": "pop", "gameMode": mode, "rounds": rounds, "guessTimeSec": guess_time}
    if snippet is not None:
        config["snippetDurationSec"] = snippet
    return {
        "code": code,
        "config": config,
        "playlist": [make_track(i).to_wire() for i in range(tracks)],
    }


@pytest.fixture
def backend():
    return FakeAudioBackend()


@pytest.fixture
def session(backend):
    return PlaybackSession(backend)


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def playlist():
    return [make_track(i) for i in range(10)]


@pytest.fixture
async def make_controller(session, emitter, clock):
    created = []

    def factory(**kwargs):
        options = {
            "code": "ABC123",
            "emit": emitter,
            "clock": clock,
            "tick_interval": 3600,
            "settle_sec": 0,
            "snippet_delay_sec": 0,
        }
        options.update(kwargs)
        code = options.pop("code")
        controller = RoundLifecycleController(session, options.pop("player_name", "Ana"), code, **options)
        created.append(controller)
        return controller

    yield factory
    for controller in created:
        controller.close()
    # Let cancelled round tasks unwind before the loop goes away
    await asyncio.sleep(0)
