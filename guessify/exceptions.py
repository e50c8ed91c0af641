"""
Client-side errors.

None of these are fatal to a game: playback errors degrade a round to silence
and protocol errors degrade it to "no round content".
"""


class GuessifyError(Exception):
    """Base class for all client errors"""
    pass


class MediaError(GuessifyError):
    """A track has no playable source or its audio could not be loaded"""
    def __init__(self, source, reason="unavailable"):
        self.source = source
        self.reason = reason
        super().__init__(f"Media {source!r} {reason}")


class PlaybackRejected(GuessifyError):
    """The output refused to start playback (e.g. not unlocked by a user gesture)"""
    pass


class ProtocolError(GuessifyError):
    """An inbound event is missing fields or references content we don't have"""
    def __init__(self, event, detail):
        self.event = event
        self.detail = detail
        super().__init__(f"Malformed {event} event: {detail}")


class CatalogError(GuessifyError):
    """The track catalog could not be reached or answered with an error"""
    pass
