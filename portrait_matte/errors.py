from __future__ import annotations

from typing import Optional


class MattingError(RuntimeError):
    """Base class for every failure surfaced to engine callers."""


class ConfigurationError(MattingError):
    pass


class NoModelSources(ConfigurationError):
    def __init__(self, message: str = "no model URLs configured (set RMBG_MODEL_URL or ?model=)"):
        super().__init__(message)


class ModelLoadFailed(MattingError):
    """All model sources were tried and none produced a session."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class SegmentTimeout(MattingError):
    pass


class SegmentationFailed(MattingError):
    pass


class AdaptiveFallbackExhausted(MattingError):
    """Rebuilding the session on the portable provider failed."""


_KINDS = {
    cls.__name__: cls
    for cls in (
        MattingError,
        ConfigurationError,
        NoModelSources,
        ModelLoadFailed,
        SegmentTimeout,
        SegmentationFailed,
        AdaptiveFallbackExhausted,
    )
}


def error_kind(err: BaseException) -> str:
    """Name used on the wire so the controller can rebuild the typed error."""
    if isinstance(err, MattingError):
        return type(err).__name__
    return SegmentationFailed.__name__


def error_from_kind(kind: Optional[str], message: str) -> MattingError:
    cls = _KINDS.get(kind or "", SegmentationFailed)
    if cls is NoModelSources:
        return NoModelSources(message)
    return cls(message)
