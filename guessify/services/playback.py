"""
Playback session: exclusive ownership of audio output.

Every play request takes a new ownership token. Loading audio is slow and
asynchronous, so by the time a request's audio is ready a newer request may
already own the output; the older request then releases what it acquired and
returns quietly. Only the holder of the latest token can become audible or
announce a track change.
"""
import asyncio
import base64
import binascii
import logging
import secrets
import time
from typing import Callable, List, Optional, Protocol, Sequence

import httpx

from guessify.config import DEFAULT_VOLUME, HTTP_TIMEOUT_SEC, PREVIEW_DURATION_SEC
from guessify.exceptions import MediaError, PlaybackRejected
from guessify.models.room import Track

logger = logging.getLogger(__name__)

MAX_SIMULTANEOUS = 3

# 36 bytes of silent mp3 frame, used to prime the output on unlock
SILENT_CLIP = "data:audio/mp3;base64,//uQZAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"

TrackListener = Callable[[Track, int], None]
MuteListener = Callable[[bool], None]


class AudioHandle(Protocol):
    source: str
    volume: float
    muted: bool

    @property
    def duration(self) -> Optional[float]: ...

    async def load(self) -> None:
        """Resolve once the media can play. Raises MediaError."""
        ...

    async def play(self) -> None:
        """Start output. Raises PlaybackRejected if the platform refuses."""
        ...

    def seek(self, position: float) -> None: ...

    def pause(self) -> None: ...

    def release(self) -> None:
        """Pause, detach the source and drop buffers. Idempotent."""
        ...


class AudioBackend(Protocol):
    def open(self, source: str, duration: Optional[float] = None) -> AudioHandle: ...

    async def resume(self) -> None:
        """Resume the output context after a user gesture."""
        ...


def random_start_offset(max_offset: float) -> float:
    """Whole second in [0, max_offset]."""
    return float(secrets.randbelow(int(max_offset) + 1))


class StreamedAudioHandle:
    """
    Preview clip buffered over HTTP. Position is kept like a shared player
    state: a timestamp plus the clock time playback (re)started.
    """

    def __init__(self, backend: "StreamedAudioBackend", source: str, duration: Optional[float] = None):
        self._backend = backend
        self.source = source
        self.volume = 1.0
        self.muted = False
        self._duration = duration
        self._buffer: Optional[bytes] = None
        self._released = False
        self._is_playing = False
        self._timestamp = 0.0
        self._start_time = 0.0

    @property
    def duration(self) -> Optional[float]:
        if self._buffer is None:
            return None
        return self._duration or self._backend.preview_duration

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def position(self) -> float:
        if not self._is_playing:
            return self._timestamp
        pos = time.monotonic() - self._start_time
        return min(pos, self.duration or pos)

    async def load(self) -> None:
        if self._released:
            raise MediaError(self.source, "was released")
        if self.source.startswith("data:"):
            self._buffer = _decode_data_uri(self.source)
        else:
            try:
                response = await self._backend.client.get(self.source)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise MediaError(self.source, f"failed to load: {e}") from e
            self._buffer = response.content
        if not self._buffer:
            raise MediaError(self.source, "is empty")

    async def play(self) -> None:
        if self._released or self._buffer is None:
            raise PlaybackRejected(f"{self.source} is not loaded")
        # Muted output is allowed before unlock, audible output is not
        if self._backend.require_gesture and not self._backend.unlocked and not self.muted:
            raise PlaybackRejected("Audio output is locked until a user gesture")
        self._start_time = time.monotonic() - self._timestamp
        self._is_playing = True

    def seek(self, position: float) -> None:
        limit = self.duration or 0.0
        self._timestamp = max(0.0, min(position, limit))
        if self._is_playing:
            self._start_time = time.monotonic() - self._timestamp

    def pause(self) -> None:
        if self._is_playing:
            self._timestamp = self.position
            self._is_playing = False

    def release(self) -> None:
        self.pause()
        self._timestamp = 0.0
        self._buffer = None
        self._released = True


class StreamedAudioBackend:
    """Headless output: fetches previews with httpx and keeps time."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        require_gesture: bool = True,
        preview_duration: float = PREVIEW_DURATION_SEC,
    ):
        self._client = client
        self._owns_client = client is None
        self.require_gesture = require_gesture
        self.preview_duration = preview_duration
        self.unlocked = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC, follow_redirects=True)
        return self._client

    def open(self, source: str, duration: Optional[float] = None) -> StreamedAudioHandle:
        return StreamedAudioHandle(self, source, duration)

    async def resume(self) -> None:
        self.unlocked = True

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if ";base64" not in header:
        return payload.encode()
    try:
        return base64.b64decode(payload)
    except (binascii.Error, ValueError) as e:
        raise MediaError(uri[:32], f"has a bad data URI: {e}") from e


class PlaybackSession:
    def __init__(self, backend: AudioBackend, volume: float = DEFAULT_VOLUME, muted: bool = False):
        self._backend = backend
        self._single: Optional[AudioHandle] = None
        self._multi: List[AudioHandle] = []
        self._token = 0
        self._pending = 0 # Operations waiting on media readiness
        self._volume = _clamp_volume(volume)
        self._muted = muted
        self._unlocked = False
        self._unlocked_event = asyncio.Event()
        self._track_listeners: List[TrackListener] = []
        self._mute_listeners: List[MuteListener] = []

    # --- state ---

    @property
    def token(self) -> int:
        return self._token

    @property
    def current_single(self) -> Optional[AudioHandle]:
        return self._single

    @property
    def current_multi(self) -> tuple:
        return tuple(self._multi)

    @property
    def is_active(self) -> bool:
        return self._single is not None or bool(self._multi)

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def unlocked(self) -> bool:
        return self._unlocked

    # --- subscriptions ---

    def on_track_change(self, listener: TrackListener) -> Callable[[], None]:
        self._track_listeners.append(listener)
        return lambda: _remove(self._track_listeners, listener)

    def on_mute_change(self, listener: MuteListener) -> Callable[[], None]:
        self._mute_listeners.append(listener)
        return lambda: _remove(self._mute_listeners, listener)

    # --- playback ---

    async def play_single(self, track: Track, at_time: Optional[float] = None) -> bool:
        """Play one track's preview. Returns False if nothing ended up playing."""
        token = self._take_ownership()
        if not track.has_source:
            logger.warning(f"Track {track.id} ({track.title}) has no preview, nothing to play")
            return False

        handle = self._open(track)
        self._single = handle
        started = False
        self._pending += 1
        try:
            await handle.load()
            if not self._owns(token):
                logger.debug(f"Dropping stale play of {track.title} (token {token} < {self._token})")
                return False
            if at_time is not None:
                handle.seek(at_time)
            await handle.play()
            started = self._owns(token)
        except MediaError as e:
            logger.warning(f"Could not load {track.title}: {e}")
        except PlaybackRejected as e:
            logger.warning(f"Playback of {track.title} rejected: {e}")
        finally:
            self._pending -= 1
            if not started:
                self._discard(handle)

        if started:
            self._notify_track(track, token)
        return started

    async def play_snippet(
        self,
        track: Track,
        duration_sec: float,
        offset_policy: Callable[[float], float] = random_start_offset,
    ) -> bool:
        """
        Play `duration_sec` of the track from a random offset, then stop.
        Snippets ignore the mute setting. Returns once the snippet is over
        (or was superseded).
        """
        token = self._take_ownership()
        if not track.has_source:
            logger.warning(f"Track {track.id} ({track.title}) has no preview, no snippet to play")
            return False

        self._apply_muted(False)
        handle = self._open(track)
        self._single = handle
        started = False
        self._pending += 1
        try:
            await handle.load()
            if not self._owns(token):
                logger.debug(f"Dropping stale snippet of {track.title}")
                return False
            max_offset = max(0.0, (handle.duration or 0.0) - duration_sec)
            handle.seek(offset_policy(max_offset))
            await handle.play()
            started = self._owns(token)
        except MediaError as e:
            logger.warning(f"Could not load snippet of {track.title}: {e}")
        except PlaybackRejected as e:
            logger.warning(f"Snippet of {track.title} rejected: {e}")
        finally:
            self._pending -= 1
            if not started:
                self._discard(handle)

        if not started:
            return False

        self._notify_track(track, token)
        try:
            await asyncio.sleep(duration_sec)
        finally:
            # Only stop what we own; a newer snippet must not be cut short
            if self._owns(token):
                self._release_all()
        return True

    async def play_simultaneous(self, tracks: Sequence[Track]) -> bool:
        token = self._take_ownership()
        playable = [t for t in tracks if t.has_source][:MAX_SIMULTANEOUS]
        skipped = [t.title for t in tracks if not t.has_source]
        if skipped:
            logger.warning(f"Skipping tracks without preview: {skipped}")
        if not playable:
            logger.warning("No playable tracks for simultaneous playback")
            return False

        self._apply_muted(False)
        handles = [self._open(t) for t in playable]
        self._multi = list(handles)
        started: List[AudioHandle] = []
        self._pending += 1
        try:
            results = await asyncio.gather(
                *(self._load_and_play(h, token) for h in handles),
                return_exceptions=True,
            )
            for handle, track, result in zip(handles, playable, results):
                if isinstance(result, (MediaError, PlaybackRejected)):
                    logger.warning(f"Failed to play {track.title}: {result}")
                elif isinstance(result, BaseException):
                    raise result
                elif result and self._owns(token):
                    started.append(handle)
        finally:
            self._pending -= 1
            for handle in handles:
                if handle not in started:
                    self._discard(handle)

        if not self._owns(token):
            logger.debug("Dropping stale simultaneous playback")
        return bool(started)

    async def _load_and_play(self, handle: AudioHandle, token: int) -> bool:
        await handle.load()
        if not self._owns(token):
            return False
        await handle.play()
        return True

    def stop(self) -> None:
        """Silence everything and cancel pending plays. Safe to call repeatedly."""
        if not self.is_active and not self._pending:
            return
        self._token += 1
        self._release_all()

    def close(self) -> None:
        self._token += 1
        self._release_all()

    # --- volume ---

    def set_volume(self, volume: float) -> None:
        self._volume = _clamp_volume(volume)
        for handle in self._handles():
            handle.volume = self._volume

    def set_muted(self, muted: bool) -> None:
        self._apply_muted(muted)

    # --- unlock gate ---

    async def unlock(self) -> None:
        """Call from a user gesture. Failures are ignored; the next gesture retries."""
        if self._unlocked:
            return
        try:
            await self._backend.resume()
            primer = self._backend.open(SILENT_CLIP)
            primer.muted = True
            try:
                await primer.load()
                await primer.play()
            except (MediaError, PlaybackRejected) as e:
                logger.debug(f"Silent primer did not play: {e}")
            finally:
                primer.pause()
                primer.release()
            self._unlocked = True
            self._unlocked_event.set()
            logger.info("Audio output unlocked")
        except Exception as e:
            logger.debug(f"Audio unlock failed, waiting for another gesture: {e}")

    async def when_unlocked(self) -> None:
        if self._unlocked:
            return
        await self._unlocked_event.wait()

    # --- internals ---

    def _take_ownership(self) -> int:
        self._token += 1
        self._release_all()
        return self._token

    def _owns(self, token: int) -> bool:
        return token == self._token

    def _open(self, track: Track) -> AudioHandle:
        handle = self._backend.open(track.preview_url, duration=track.duration)
        handle.volume = self._volume
        handle.muted = self._muted
        return handle

    def _handles(self) -> List[AudioHandle]:
        return ([self._single] if self._single is not None else []) + self._multi

    def _release_all(self) -> None:
        for handle in self._handles():
            handle.release()
        self._single = None
        self._multi = []

    def _discard(self, handle: AudioHandle) -> None:
        handle.release()
        if self._single is handle:
            self._single = None
        if handle in self._multi:
            self._multi.remove(handle)

    def _apply_muted(self, muted: bool) -> None:
        self._muted = muted
        for handle in self._handles():
            handle.muted = muted
        for listener in list(self._mute_listeners):
            try:
                listener(muted)
            except Exception as e:
                logger.error(f"Mute listener failed: {e}", exc_info=True)

    def _notify_track(self, track: Track, token: int) -> None:
        for listener in list(self._track_listeners):
            try:
                listener(track, token)
            except Exception as e:
                logger.error(f"Track listener failed: {e}", exc_info=True)


def _clamp_volume(volume: float) -> float:
    return max(0.0, min(1.0, float(volume)))


def _remove(listeners: list, listener) -> None:
    if listener in listeners:
        listeners.remove(listener)
